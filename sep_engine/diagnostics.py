"""Implementation-health diagnostics over trial records and raw byte streams.

None of these test the experimental hypothesis. They exist to catch a biased
shuffle, a broken index mapping, a degraded byte source, or a participant who
is button-mashing. Every function takes already-normalised trials
(``records.NormalizedTrial``) or plain byte lists and returns JSON-ready dicts.
"""

from __future__ import annotations

import math
from collections import Counter, OrderedDict
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from scipy import stats as _sp
from scipy.special import erfc

from .assignment import ALPHABET
from .records import NormalizedTrial
from .stats import binom_z_against, chi_square_uniform, mean, required_hits_for_significance, two_sided_p

NIST_ALPHA = 0.01


def _finite_bytes(values: Iterable[Optional[int]]) -> List[int]:
    return [int(v) for v in values if v is not None and 0 <= int(v) <= 255]


def subject_bytes(trials: Sequence[NormalizedTrial]) -> List[int]:
    return _finite_bytes(t.raw_byte for t in trials)


def byte_entropy(data: Sequence[int]) -> float:
    """Shannon entropy in bits over the 256 byte values; 8.0 is the maximum."""
    if not data:
        return 0.0
    counts = Counter(data)
    n = len(data)
    return -math.fsum((c / n) * math.log2(c / n) for c in counts.values() if c)


def autocorrelation(data: Sequence[float], max_lag: int = 5) -> List[Dict[str, float]]:
    """Lag-k autocorrelation for ``k = 0..max_lag``, normalised by the variance.

    Lag 0 is 1.0 for any non-constant series.
    """
    n = len(data)
    if n <= 1:
        return []
    mu = mean(data)
    var = math.fsum((x - mu) ** 2 for x in data) / n
    out = []
    for lag in range(0, max_lag + 1):
        count = n - lag
        if count <= 0:
            break
        cov = math.fsum((data[i] - mu) * (data[i + lag] - mu) for i in range(count)) / count
        out.append({"lag": lag, "correlation": cov / var if var > 0 else 0.0, "count": count})
    return out


def hit_streaks(hits: Sequence[int]) -> Dict[str, Any]:
    """Run-length summary of a hit/miss sequence."""
    longest_hit = longest_miss = cur = 0
    runs = 0
    prev = None
    for h in hits:
        h = 1 if h else 0
        if h == prev:
            cur += 1
        else:
            runs += 1
            cur = 1
        prev = h
        if h:
            longest_hit = max(longest_hit, cur)
        else:
            longest_miss = max(longest_miss, cur)
    return {"n": len(hits), "runs": runs, "longest_hit_streak": longest_hit, "longest_miss_streak": longest_miss}


def position_bias(trials: Sequence[NormalizedTrial], k: int = len(ALPHABET)) -> Dict[str, Any]:
    """Distribution of ``selected_index`` over ``0..k-1`` with a chi-square against uniform."""
    counts = [0] * k
    for t in trials:
        if t.selected_index is not None and 0 <= t.selected_index < k:
            counts[t.selected_index] += 1
    chi = chi_square_uniform(counts)
    return {"counts": counts, "chi_square": chi.statistic, "df": chi.df, "p": chi.p}


def target_symbol_bias(trials: Sequence[NormalizedTrial], alphabet: Sequence[str] = ALPHABET) -> List[Dict[str, Any]]:
    """How often each symbol was the target, with a z against ``N/K``."""
    counts = Counter(t.target_symbol for t in trials if t.target_symbol in alphabet)
    n = sum(counts.values())
    k = len(alphabet)
    expected = n / k if k else 0.0
    sd = math.sqrt(expected * (1.0 - 1.0 / k)) if k else 0.0
    rows = []
    for sym in alphabet:
        c = counts.get(sym, 0)
        z = (c - expected) / sd if sd > 0 else 0.0
        rows.append({"symbol": sym, "count": c, "expected": expected, "z": z, "p": two_sided_p(z)})
    return rows


def sequential_dependency(trials: Sequence[NormalizedTrial], max_lag: int = 5, p0: float = 0.2) -> List[Dict[str, Any]]:
    """Joint hit rate of trial ``i`` and ``i+lag``; ``p0**2`` under independence."""
    hits = [1 if t.subject_hit else 0 for t in trials]
    expected = p0 * p0
    out = []
    for lag in range(1, max_lag + 1):
        count = len(hits) - lag
        if count <= 0:
            break
        joint = sum(hits[i] * hits[i + lag] for i in range(count)) / count
        out.append({"lag": lag, "joint_hit_rate": joint, "expected": expected, "deviation": joint - expected, "count": count})
    return out


def _pearson(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    if len(xs) < 3:
        return None
    mx, my = mean(xs), mean(ys)
    sxy = math.fsum((x - mx) * (y - my) for x, y in zip(xs, ys))
    sxx = math.fsum((x - mx) ** 2 for x in xs)
    syy = math.fsum((y - my) ** 2 for y in ys)
    if sxx <= 0 or syy <= 0:
        return None
    return sxy / math.sqrt(sxx * syy)


def response_time_analysis(trials: Sequence[NormalizedTrial], bucket_ms: int = 100) -> Dict[str, Any]:
    """Accuracy by RT tercile and by fixed-width RT bucket, plus the RT/hit correlation."""
    rows = [(t.response_time_ms, 1 if t.subject_hit else 0) for t in trials if t.response_time_ms is not None and t.response_time_ms >= 0]
    if not rows:
        return {"n": 0, "terciles": [], "buckets": [], "correlation": None}
    rows.sort(key=lambda r: r[0])
    n = len(rows)
    terciles = []
    for i, label in enumerate(("fast", "medium", "slow")):
        part = rows[(i * n) // 3:((i + 1) * n) // 3]
        if not part:
            continue
        terciles.append({
            "label": label,
            "n": len(part),
            "mean_rt_ms": mean([r for r, _ in part]),
            "hit_rate": sum(h for _, h in part) / len(part),
        })
    buckets: Dict[int, List[int]] = OrderedDict()
    for rt, h in rows:
        buckets.setdefault(int(rt // bucket_ms) * bucket_ms, []).append(h)
    return {
        "n": n,
        "terciles": terciles,
        "buckets": [{"rt_ms": k, "n": len(v), "hit_rate": sum(v) / len(v)} for k, v in buckets.items()],
        "correlation": _pearson([r for r, _ in rows], [h for _, h in rows]),
    }


def trial_position_bins(trials: Sequence[NormalizedTrial], bin_size: Optional[int] = None) -> List[Dict[str, Any]]:
    """Hit rate by position within the block, to spot fatigue or warm-up effects."""
    n = len(trials)
    if n == 0:
        return []
    size = bin_size or max(5, n // 10)
    out = []
    for start in range(0, n, size):
        part = trials[start:start + size]
        out.append({
            "start": start + 1,
            "end": start + len(part),
            "n": len(part),
            "hit_rate": sum(1 for t in part if t.subject_hit) / len(part),
        })
    return out


def group_summary(trials: Sequence[NormalizedTrial], key: str) -> List[Dict[str, Any]]:
    """Per-group hit rate and byte health, grouped by a trial attribute (``rng_source``, ``redundancy_mode``)."""
    groups: Dict[str, List[NormalizedTrial]] = {}
    for t in trials:
        groups.setdefault(getattr(t, key, None) or "unknown", []).append(t)
    rows = []
    for label, part in groups.items():
        data = subject_bytes(part)
        mu = mean(data)
        rows.append({
            key: label,
            "count": len(part),
            "hit_rate": sum(1 for t in part if t.subject_hit) / len(part),
            "ghost_hit_rate": sum(1 for t in part if t.decoy_hit) / len(part),
            "entropy": byte_entropy(data),
            "autocorr": autocorrelation(data, 5),
            "mean_byte": mu,
            "variance": (math.fsum((b - mu) ** 2 for b in data) / len(data)) if data else 0.0,
        })
    rows.sort(key=lambda r: r["count"], reverse=True)
    return rows


# ---------------------------------------------------------------------------
# Bit-level checks (NIST SP 800-22 monobit, runs, longest run of ones)
# ---------------------------------------------------------------------------


def bytes_to_bits(data: Iterable[int]) -> List[int]:
    bits: List[int] = []
    for b in data:
        bits.extend((int(b) >> (7 - i)) & 1 for i in range(8))
    return bits


def _result(name: str, statistic: Optional[float], p: Optional[float], note: str = "", **extra: Any) -> Dict[str, Any]:
    out = {"test": name, "statistic": statistic, "p": p, "pass": p is not None and p >= NIST_ALPHA}
    if note:
        out["note"] = note
    out.update(extra)
    return out


def monobit_test(bits: Sequence[int]) -> Dict[str, Any]:
    n = len(bits)
    if n == 0:
        return _result("monobit", None, None, "empty sequence")
    ones = sum(bits)
    s_obs = abs(2 * ones - n) / math.sqrt(n)
    return _result("monobit", s_obs, float(erfc(s_obs / math.sqrt(2.0))), ones=ones, n=n)


def runs_test(bits: Sequence[int]) -> Dict[str, Any]:
    n = len(bits)
    if n < 2:
        return _result("runs", None, None, "sequence too short")
    pi = sum(bits) / n
    if abs(pi - 0.5) >= 2.0 / math.sqrt(n):
        return _result("runs", None, 0.0, "monobit pre-test failed", proportion=pi)
    v_obs = 1 + sum(1 for i in range(n - 1) if bits[i] != bits[i + 1])
    num = abs(v_obs - 2.0 * n * pi * (1.0 - pi))
    den = 2.0 * math.sqrt(2.0 * n) * pi * (1.0 - pi)
    stat = num / den
    return _result("runs", float(v_obs), float(erfc(stat / math.sqrt(2.0))), proportion=pi)


# (block length M, longest-run class upper bounds, class probabilities)
_LONGEST_RUN_TABLES = (
    (8, (1, 2, 3), (0.2148, 0.3672, 0.2305, 0.1875)),
    (128, (4, 5, 6, 7, 8), (0.1174, 0.2430, 0.2493, 0.1752, 0.1027, 0.1124)),
    (10000, (10, 11, 12, 13, 14, 15), (0.0882, 0.2092, 0.2483, 0.1933, 0.1208, 0.0675, 0.0727)),
)


def longest_run_test(bits: Sequence[int]) -> Dict[str, Any]:
    n = len(bits)
    if n < 128:
        return _result("longest_run", None, None, "sequence too short (need >= 128 bits)")
    if n < 6272:
        m, bounds, pis = _LONGEST_RUN_TABLES[0]
    elif n < 750000:
        m, bounds, pis = _LONGEST_RUN_TABLES[1]
    else:
        m, bounds, pis = _LONGEST_RUN_TABLES[2]
    blocks = n // m
    v = [0] * len(pis)
    for i in range(blocks):
        longest = cur = 0
        for b in bits[i * m:(i + 1) * m]:
            cur = cur + 1 if b else 0
            longest = max(longest, cur)
        cls = len(bounds)
        for j, ub in enumerate(bounds):
            if longest <= ub:
                cls = j
                break
        v[cls] += 1
    chi = math.fsum((v[i] - blocks * pis[i]) ** 2 / (blocks * pis[i]) for i in range(len(pis)))
    df = len(pis) - 1
    return _result("longest_run", chi, float(_sp.chi2.sf(chi, df)), blocks=blocks, block_size=m, categories=v, df=df)


def bit_tests(data: Sequence[int]) -> List[Dict[str, Any]]:
    bits = bytes_to_bits(data)
    return [monobit_test(bits), runs_test(bits), longest_run_test(bits)]


# ---------------------------------------------------------------------------
# Data integrity
# ---------------------------------------------------------------------------


def integrity_scan(
    trials: Sequence[NormalizedTrial],
    expected_sources: Optional[Mapping[str, str]] = None,
    k: int = len(ALPHABET),
) -> List[Dict[str, Any]]:
    """List records with missing bytes, out-of-range indices or an unexpected RNG source."""
    issues = []
    for i, t in enumerate(trials):
        where = {"block": t.block, "trial_index": t.trial_index if t.trial_index is not None else i + 1}
        if t.raw_byte is None or t.ghost_raw_byte is None:
            issues.append({**where, "issue": "missing raw byte"})
        for name in ("target_index", "decoy_index", "selected_index"):
            v = getattr(t, name)
            if v is None:
                issues.append({**where, "issue": f"missing {name}"})
            elif not 0 <= v < k:
                issues.append({**where, "issue": f"{name} out of range", "value": v})
        if expected_sources and t.block in expected_sources and t.rng_source:
            want = expected_sources[t.block]
            if t.rng_source != want:
                issues.append({**where, "issue": "unexpected rng source", "value": t.rng_source, "expected": want})
    return issues


def ghost_vs_chance(trials: Sequence[NormalizedTrial], p0: float = 0.2) -> Dict[str, Any]:
    n = len(trials)
    k = sum(1 for t in trials if t.decoy_hit)
    z = binom_z_against(p0, k, n)
    return {"n": n, "hits": k, "z": z, "p": two_sided_p(z)}


def diagnostics_report(
    trials: Sequence[NormalizedTrial],
    *,
    p0: float = 0.2,
    alpha: float = 0.05,
    expected_sources: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Every diagnostic over one pooled list of valid trials."""
    data = subject_bytes(trials)
    ghost = _finite_bytes(t.ghost_raw_byte for t in trials)
    k = len(ALPHABET)
    return {
        "n": len(trials),
        "required_hits": required_hits_for_significance(len(trials), p0, alpha),
        "byte_entropy": byte_entropy(data),
        "ghost_byte_entropy": byte_entropy(ghost),
        "autocorrelation": autocorrelation(data, 5),
        "mod_uniformity": asdict(chi_square_uniform([sum(1 for b in data if b % k == j) for j in range(k)])),
        "streaks": hit_streaks([t.subject_hit or 0 for t in trials]),
        "position_bias": position_bias(trials),
        "target_symbol_bias": target_symbol_bias(trials),
        "sequential_dependency": sequential_dependency(trials, 5, p0),
        "response_time": response_time_analysis(trials),
        "trial_position": trial_position_bins(trials),
        "by_source": group_summary(trials, "rng_source"),
        "by_redundancy": group_summary(trials, "redundancy_mode"),
        "bit_tests": bit_tests(data + ghost),
        "integrity_issues": integrity_scan(trials, expected_sources),
    }
