import hashlib

import pytest

from sep_engine.assignment import identity_layout, resolve
from sep_engine.errors import SEPError, SEP_E_REMAP_TOKEN, SEP_E_REMAP_UNCONFIGURED
from sep_engine.remap import (
    HmacRemap,
    IdentityRemap,
    RemapContext,
    RemapKeyAuthority,
    compute_remap,
    derive_block_key,
    strategy_for,
    verify_key_commit,
    verify_remap_row,
)

MASTER = b"unit-test-master-secret"
OPTIONS = ["star", "waves", "circle", "plus", "square"]


def _ctx(**kw):
    base = dict(session_id="sess-1", block="full_stack", trial_index=3, selected_index=2, options=OPTIONS, raw_byte=77)
    base.update(kw)
    return RemapContext(**base)


def test_commit_then_reveal_matches_hash():
    authority = RemapKeyAuthority(MASTER)
    ticket = authority.issue_commit("sess-1", "full_stack")
    reveal = authority.reveal(ticket.commit_token, "sess-1", "full_stack")
    key = bytes.fromhex(reveal.key_hex)
    assert len(key) == 32
    assert reveal.commit_hash == ticket.commit_hash == hashlib.sha256(key).hexdigest()
    assert verify_key_commit(key, ticket.commit_hash)
    assert not verify_key_commit(b"\x00" * 32, ticket.commit_hash)


def test_remap_value_recomputes_offline_from_revealed_key():
    authority = RemapKeyAuthority(MASTER)
    ticket = authority.issue_commit("sess-1", "full_stack")
    value = authority.remap(ticket.commit_token, _ctx())
    key = bytes.fromhex(authority.reveal(ticket.commit_token, "sess-1", "full_stack").key_hex)
    assert 0 <= value.r < 5
    assert len(value.proof) == 16
    assert compute_remap(key, _ctx()) == value
    # any change to the context changes the proof
    assert compute_remap(key, _ctx(selected_index=3)).proof != value.proof


def test_each_commit_gets_a_fresh_key():
    authority = RemapKeyAuthority(MASTER)
    a = authority.issue_commit("sess-1", "full_stack")
    b = authority.issue_commit("sess-1", "full_stack")
    assert a.commit_hash != b.commit_hash


def test_tampered_token_is_rejected():
    authority = RemapKeyAuthority(MASTER)
    token = authority.issue_commit("sess-1", "full_stack").commit_token
    body, sig = token.split(".")
    flipped = ("0" if sig[0] != "0" else "1") + sig[1:]
    for bad in (f"{body}.{flipped}", "no-dot", f"{body}x.{sig}", ""):
        with pytest.raises(SEPError) as exc_info:
            authority.remap(bad, _ctx())
        assert exc_info.value.code == SEP_E_REMAP_TOKEN


def test_token_claims_must_match_context():
    authority = RemapKeyAuthority(MASTER)
    token = authority.issue_commit("sess-1", "full_stack").commit_token
    with pytest.raises(SEPError):
        authority.remap(token, _ctx(block="spoon_love"))
    with pytest.raises(SEPError):
        authority.reveal(token, "sess-2", "full_stack")
    other = RemapKeyAuthority(b"another-secret")
    with pytest.raises(SEPError):
        other.reveal(token, "sess-1", "full_stack")


def test_expired_token_refuses_remap_but_still_reveals():
    now = [1_000_000.0]
    authority = RemapKeyAuthority(MASTER, clock=lambda: now[0])
    ticket = authority.issue_commit("sess-1", "full_stack")
    now[0] += 2 * 60 * 60 + 1
    with pytest.raises(SEPError) as exc_info:
        authority.remap(ticket.commit_token, _ctx())
    assert "expired" in exc_info.value.message
    assert authority.reveal(ticket.commit_token, "sess-1", "full_stack").commit_hash == ticket.commit_hash


def test_remap_requires_full_option_list():
    authority = RemapKeyAuthority(MASTER)
    token = authority.issue_commit("sess-1", "full_stack").commit_token
    with pytest.raises(SEPError):
        authority.remap(token, _ctx(options=OPTIONS[:4]))


def test_missing_master_secret(monkeypatch):
    monkeypatch.delenv("SEP_HMAC_MASTER_SECRET", raising=False)
    with pytest.raises(SEPError) as exc_info:
        RemapKeyAuthority.from_env()
    assert exc_info.value.code == SEP_E_REMAP_UNCONFIGURED
    assert exc_info.value.http_status == 500
    with pytest.raises(SEPError):
        strategy_for("hmac")
    assert isinstance(strategy_for("identity"), IdentityRemap)
    with pytest.raises(SEPError):
        strategy_for("xor")


def test_key_derivation_is_deterministic():
    a = derive_block_key(MASTER, "s", "b", "n1")
    assert a == derive_block_key(MASTER, "s", "b", "n1")
    assert a != derive_block_key(MASTER, "s", "b", "n2")


def test_hmac_strategy_rotates_both_indices_and_row_verifies():
    strategy = HmacRemap(RemapKeyAuthority(MASTER))
    strategy.begin_block("sess-1", "full_stack")
    layout = identity_layout()
    assignment = resolve(77, 9, layout)
    ctx = _ctx(options=layout.to_list(), selected_index=1)
    outcome = strategy.apply(assignment, ctx)
    assert outcome.target_index == (assignment.subject_index + outcome.r) % 5
    assert outcome.decoy_index == (assignment.decoy_index + outcome.r) % 5

    key = bytes.fromhex(strategy.end_block("sess-1", "full_stack").key_hex)
    row = {
        "session_id": "sess-1",
        "block_type": "full_stack",
        "trial_index": 3,
        "selected_index": 1,
        "options": layout.to_list(),
        "raw_byte": 77,
        "ghost_raw_byte": 9,
        "target_index_0based": outcome.target_index,
        "ghost_index_0based": outcome.decoy_index,
        "remap_proof": outcome.proof,
    }
    assert verify_remap_row(key, row).ok

    forged = dict(row, target_index_0based=(outcome.target_index + 1) % 5)
    check = verify_remap_row(key, forged)
    assert not check.ok and check.reason == "index_mismatch"
    check = verify_remap_row(key, dict(row, remap_proof="00" * 8))
    assert not check.ok and check.reason == "proof_mismatch"
    assert verify_remap_row(key, dict(row, options=["circle"])).reason == "bad_options"


def test_apply_without_begin_block_fails():
    strategy = HmacRemap(RemapKeyAuthority(MASTER))
    with pytest.raises(SEPError):
        strategy.apply(resolve(1, 2, identity_layout()), _ctx())
    assert strategy.end_block("sess-1", "full_stack") is None
