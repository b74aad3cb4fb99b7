import itertools
import secrets
from collections import Counter

import pytest

from sep_engine.assignment import (
    ALPHABET,
    SymbolLayout,
    identity_layout,
    rand_int,
    resolve,
    shuffle_layout,
    symbol_for_byte,
)
from sep_engine.errors import SEPError
from sep_engine.stats import chi_square_uniform


def test_modulo_mapping_scenario_is_independent_of_byte_magnitude():
    layout = identity_layout()
    subject = [0, 5, 10, 15, 20]
    decoy = [1, 1, 1, 1, 1]
    results = [resolve(s, d, layout) for s, d in zip(subject, decoy)]
    assert [r.subject_index for r in results] == [0, 0, 0, 0, 0]
    assert [r.decoy_index for r in results] == [1, 1, 1, 1, 1]
    assert {r.subject_symbol for r in results} == {"circle"}
    assert {r.decoy_symbol for r in results} == {"plus"}


def test_resolve_is_pure():
    layout = SymbolLayout(("star", "waves", "circle", "plus", "square"))
    assert resolve(203, 77, layout) == resolve(203, 77, layout)


def test_permuting_layout_moves_index_with_symbol():
    base = identity_layout()
    a = resolve(3, 4, base)
    for perm in itertools.islice(itertools.permutations(ALPHABET), 0, 120, 17):
        layout = SymbolLayout(perm)
        b = resolve(3, 4, layout)
        assert b.subject_symbol == a.subject_symbol == "square"
        assert b.subject_index == perm.index("square")
        assert b.decoy_index == perm.index("star")


def test_equal_bytes_give_equal_indices():
    layout = shuffle_layout()
    r = resolve(42, 42, layout)
    assert r.subject_index == r.decoy_index
    assert r.subject_symbol == r.decoy_symbol


def test_byte_mod_five_is_uniform_over_large_sample():
    sample = secrets.token_bytes(10000)
    counts = Counter(b % 5 for b in sample)
    chi = chi_square_uniform([counts[i] for i in range(5)])
    # residue 0 covers 52 of the 256 byte values, the others 51
    assert chi.p > 1e-5


def test_shuffle_layout_is_a_permutation_and_roughly_uniform():
    first_positions = Counter()
    for _ in range(2000):
        layout = shuffle_layout()
        assert sorted(layout.symbols) == sorted(ALPHABET)
        first_positions[layout.symbols[0]] += 1
    chi = chi_square_uniform([first_positions[s] for s in ALPHABET])
    assert chi.p > 1e-4


def test_shuffle_with_scripted_rng_is_deterministic():
    draws = itertools.cycle([0, 1, 2, 3])
    a = shuffle_layout(ALPHABET, lambda: next(draws))
    draws = itertools.cycle([0, 1, 2, 3])
    b = shuffle_layout(ALPHABET, lambda: next(draws))
    assert a == b


def test_rand_int_rejects_biased_region():
    # For n=3, the largest multiple of 3 below 2**32 is 2**32 - 1; that draw must be rejected.
    draws = iter([(1 << 32) - 1, 7])
    assert rand_int(3, lambda: next(draws)) == 7 % 3

    with pytest.raises(SEPError):
        rand_int(0)
    with pytest.raises(SEPError):
        rand_int(5, lambda: -1)


def test_symbol_for_byte_validates_range():
    assert symbol_for_byte(255) == ALPHABET[255 % 5]
    for bad in (-1, 256, True, 1.5):
        with pytest.raises(SEPError):
            symbol_for_byte(bad)


def test_layout_must_match_alphabet():
    with pytest.raises(SEPError):
        SymbolLayout(("circle", "circle", "plus", "waves", "star"))
    with pytest.raises(SEPError):
        resolve(1, 2, SymbolLayout(("circle", "plus", "waves")))
    # smaller alphabets resolve against their own layout
    r = resolve(7, 8, SymbolLayout(("plus", "circle", "waves")), ALPHABET[:3])
    assert r.subject_symbol == "plus" and r.subject_index == 0
    assert r.decoy_symbol == "waves" and r.decoy_index == 2
