import secrets

import pytest

from sep_engine.diagnostics import (
    autocorrelation,
    bit_tests,
    byte_entropy,
    bytes_to_bits,
    group_summary,
    hit_streaks,
    integrity_scan,
    longest_run_test,
    monobit_test,
    response_time_analysis,
    runs_test,
    sequential_dependency,
    target_symbol_bias,
    trial_position_bins,
)
from sep_engine.records import normalize_trial


def _trial(i, hit, **extra):
    row = {
        "trial_index": i,
        "target_index_0based": 0,
        "ghost_index_0based": 1,
        "selected_index": 0 if hit else 2,
        "raw_byte": (7 * i) % 256,
        "ghost_raw_byte": (11 * i) % 256,
        "options": ["circle", "plus", "waves", "square", "star"],
    }
    row.update(extra)
    return normalize_trial(row, "full_stack")


def test_byte_entropy_bounds():
    assert byte_entropy([]) == 0.0
    assert byte_entropy([5] * 100) == 0.0
    assert byte_entropy(list(range(256))) == pytest.approx(8.0)


def test_autocorrelation_lag_zero_is_one():
    data = [1, 5, 2, 8, 3, 9, 4]
    ac = autocorrelation(data, 3)
    assert ac[0]["correlation"] == pytest.approx(1.0)
    assert [a["lag"] for a in ac] == [0, 1, 2, 3]
    assert autocorrelation([3]) == []
    # alternating series is perfectly anti-correlated at lag 1
    assert autocorrelation([0, 1] * 10, 1)[1]["correlation"] == pytest.approx(-1.0)


def test_hit_streaks():
    s = hit_streaks([1, 1, 0, 0, 0, 1])
    assert s == {"n": 6, "runs": 3, "longest_hit_streak": 2, "longest_miss_streak": 3}


def test_target_symbol_bias_counts_displayed_target():
    trials = [_trial(i, True) for i in range(1, 11)]
    rows = {r["symbol"]: r for r in target_symbol_bias(trials)}
    assert rows["circle"]["count"] == 10
    assert rows["circle"]["z"] > 3
    assert rows["plus"]["count"] == 0


def test_sequential_dependency_expected_rate():
    trials = [_trial(i, i % 2 == 0) for i in range(1, 21)]
    lags = sequential_dependency(trials, 2, p0=0.2)
    assert lags[0]["joint_hit_rate"] == 0.0
    assert lags[1]["joint_hit_rate"] == pytest.approx(9 / 18)
    assert lags[0]["expected"] == pytest.approx(0.04)


def test_response_time_terciles_and_buckets():
    trials = [_trial(i, i > 6, response_time_ms=100.0 * i) for i in range(1, 10)]
    rt = response_time_analysis(trials, bucket_ms=300)
    assert rt["n"] == 9
    assert [t["label"] for t in rt["terciles"]] == ["fast", "medium", "slow"]
    assert rt["terciles"][2]["hit_rate"] == 1.0
    assert rt["terciles"][0]["hit_rate"] == 0.0
    assert [b["rt_ms"] for b in rt["buckets"]] == [0, 300, 600, 900]
    assert rt["correlation"] > 0.5
    assert response_time_analysis([])["n"] == 0


def test_trial_position_bins():
    trials = [_trial(i, i <= 5) for i in range(1, 13)]
    bins = trial_position_bins(trials, 5)
    assert [(b["start"], b["end"]) for b in bins] == [(1, 5), (6, 10), (11, 12)]
    assert bins[0]["hit_rate"] == 1.0 and bins[1]["hit_rate"] == 0.0


def test_group_summary_by_source():
    trials = [_trial(i, True, rng_source="quantum-proxy") for i in range(1, 4)]
    trials += [_trial(i, False, rng_source="local-secure-random") for i in range(1, 6)]
    groups = group_summary(trials, "rng_source")
    assert groups[0]["rng_source"] == "local-secure-random" and groups[0]["count"] == 5
    assert groups[1]["hit_rate"] == 1.0


def test_nist_checks_pass_on_secure_bytes():
    results = bit_tests(list(secrets.token_bytes(4096)))
    assert [r["test"] for r in results] == ["monobit", "runs", "longest_run"]
    assert all(r["p"] is not None for r in results)


def test_nist_checks_fail_on_constant_stream():
    bits = bytes_to_bits([0xFF] * 64)
    assert not monobit_test(bits)["pass"]
    assert not runs_test(bits)["pass"]
    assert not longest_run_test(bits)["pass"]
    assert longest_run_test([1] * 10)["p"] is None
    assert monobit_test([])["p"] is None


def test_bytes_to_bits_msb_first():
    assert bytes_to_bits([0b10000001]) == [1, 0, 0, 0, 0, 0, 0, 1]


def test_integrity_scan_flags_bad_records():
    trials = [
        _trial(1, True),
        normalize_trial({"trial_index": 2, "target_index_0based": 7, "ghost_index_0based": 1, "selected_index": 0}, "full_stack"),
        _trial(3, True, rng_source="Math.random"),
    ]
    issues = integrity_scan(trials, {"full_stack": "hardware-proxy"})
    kinds = [i["issue"] for i in issues]
    assert "missing raw byte" in kinds
    assert "target_index out of range" in kinds
    assert kinds.count("unexpected rng source") == 1
