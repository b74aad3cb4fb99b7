"""Significance tests used by participant feedback and the audit engine.

The exact one-sided binomial tail (``scipy.stats.binom``) is the primary
significance report: ``n`` is small per block, so it is never approximated.
Normal-theory z tests cover pooled comparisons; Student t p-values cover
participant-level means.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from scipy import stats as _sp


def binom_p_at_or_above(hits: int, n: int, p0: float) -> float:
    """Exact one-sided ``P(X >= hits)`` for ``X ~ Binomial(n, p0)``."""
    if n <= 0 or hits <= 0:
        return 1.0
    if hits > n:
        return 0.0
    return float(min(1.0, max(0.0, _sp.binom.sf(hits - 1, n, p0))))


def required_hits_for_significance(n: int, p0: float = 0.2, alpha: float = 0.05) -> Optional[int]:
    """Smallest ``k`` with ``P(X >= k) <= alpha``; ``None`` if even ``n`` hits is not enough."""
    for k in range(0, n + 1):
        if binom_p_at_or_above(k, n, p0) <= alpha:
            return k
    return None


def two_sided_p(z: float) -> float:
    if not math.isfinite(z):
        return 0.0
    return float(min(1.0, 2.0 * _sp.norm.sf(abs(z))))


def binom_z_against(p0: float, k: int, n: int) -> float:
    """Normal-approximation z of ``k`` successes in ``n`` against ``p0``."""
    if n <= 0:
        return 0.0
    sd = math.sqrt(n * p0 * (1.0 - p0))
    return (k - n * p0) / sd if sd > 0 else 0.0


def two_proportion_z(k1: int, n1: int, k2: int, n2: int) -> float:
    """Pooled-variance z for ``k1/n1`` vs ``k2/n2``."""
    if n1 <= 0 or n2 <= 0:
        return 0.0
    pooled = (k1 + k2) / (n1 + n2)
    se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n1 + 1.0 / n2))
    return (k1 / n1 - k2 / n2) / se if se > 0 else 0.0


def symmetry_z(n10: int, n01: int) -> float:
    """z for ``n10`` vs the expected half of the ``n10 + n01`` discordant trials."""
    m = n10 + n01
    if m <= 0:
        return 0.0
    return (n10 - m / 2.0) / math.sqrt(m / 4.0)


def mean(values: Sequence[float]) -> float:
    return math.fsum(values) / len(values) if values else 0.0


def sample_variance(values: Sequence[float], mu: Optional[float] = None) -> float:
    n = len(values)
    if n < 2:
        return 0.0
    m = mean(values) if mu is None else mu
    return math.fsum((v - m) ** 2 for v in values) / (n - 1)


@dataclass(frozen=True)
class TTest:
    t: float
    df: int
    p: float
    mean: float
    n: int

    def to_dict(self) -> Dict[str, float]:
        return {"t": self.t, "df": self.df, "p": self.p, "mean": self.mean, "n": self.n}


def one_sample_t(values: Sequence[float], mu0: float) -> TTest:
    """Two-sided one-sample t test of ``mean(values)`` against ``mu0``."""
    n = len(values)
    m = mean(values)
    df = max(1, n - 1)
    se = math.sqrt(sample_variance(values, m) / n) if n > 1 else 0.0
    if se == 0.0:
        return TTest(0.0, df, 1.0, m, n)
    t = (m - mu0) / se
    return TTest(t, df, float(2.0 * _sp.t.sf(abs(t), df)), m, n)


def paired_t(a: Sequence[float], b: Sequence[float]) -> TTest:
    if len(a) != len(b):
        raise ValueError("paired_t requires equal-length samples")
    return one_sample_t([x - y for x, y in zip(a, b)], 0.0)


@dataclass(frozen=True)
class ChiSquare:
    statistic: float
    df: int
    p: float


def chi_square_uniform(counts: Sequence[int]) -> ChiSquare:
    """Goodness of fit of ``counts`` against equal expected frequencies."""
    k = len(counts)
    total = sum(counts)
    if k < 2 or total == 0:
        return ChiSquare(0.0, max(0, k - 1), 1.0)
    expected = total / k
    stat = math.fsum((c - expected) ** 2 / expected for c in counts)
    return ChiSquare(stat, k - 1, float(_sp.chi2.sf(stat, k - 1)))


@dataclass(frozen=True)
class RoundScore:
    wins: int
    completed_rounds: int
    total_rounds: int
    hits_per_round: List[int]


def score_rounds(hits: Sequence[int], round_size: int = 5, win_hits: int = 3) -> RoundScore:
    """Group consecutive trials into rounds; a completed round with ``>= win_hits`` hits is a win.

    ``total_rounds`` is ``ceil(N / round_size)``; a trailing partial round is
    reported but never counted as a win.
    """
    n = len(hits)
    per_round = [sum(1 for h in hits[i:i + round_size] if h) for i in range(0, n, round_size)]
    completed = n // round_size
    wins = sum(1 for h in per_round[:completed] if h >= win_hits)
    return RoundScore(wins, completed, math.ceil(n / round_size) if round_size else 0, per_round)
