"""Statistical Audit Engine.

Turns session documents into a per-session table plus aggregate tests. Two
aggregation policies are supported and never mixed in one report:

``pooled``
    every valid trial of every selected session counts once; z tests on the
    pooled hit counts.

``session-weighted``
    only the first session per participant (by timestamp) is kept, each
    participant contributes one hit percentage, and t tests run across
    participants.

Integrity warnings (decoy off chance, symmetry failure, alternation or
qrng-code anomalies) are reported as flagged rows; they never raise.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import EngineConfig
from .crypto import parse_iso_utc
from .diagnostics import diagnostics_report
from .logs import logger
from .records import (
    NormalizedTrial,
    exit_reason_raw,
    is_completer,
    normalize_exit_reason,
    session_trials,
    valid_trials,
)
from .stats import (
    binom_z_against,
    mean,
    one_sample_t,
    paired_t,
    symmetry_z,
    two_proportion_z,
    two_sided_p,
)

MODE_POOLED = "pooled"
MODE_SESSION_WEIGHTED = "session-weighted"
AUDIT_MODES = (MODE_POOLED, MODE_SESSION_WEIGHTED)

WARN_ALTERNATION = "primary_pos alternation broken"
WARN_QRNG_CODE = "qrng_code invalid values"
WARN_RNG_BIAS = "decoy hit rate deviates from chance (possible RNG bias)"
WARN_SYMMETRY = "n10/n01 asymmetry (check layout and index mapping)"

_TIME_FIELDS = ("timestamp", "created_at", "created_iso", "server_time", "started_at", "session_start")

TrialGetter = Callable[[Mapping[str, Any]], List[NormalizedTrial]]


@dataclass
class SessionRow:
    session_id: str
    participant_id: Optional[str]
    n: int
    hits_primary: int
    hits_ghost: int
    n10: int
    n01: int
    alternating_ok: bool = True
    qrng_ok: bool = True
    excluded: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def pct_primary(self) -> float:
        return 100.0 * self.hits_primary / self.n if self.n else 0.0

    @property
    def pct_ghost(self) -> float:
        return 100.0 * self.hits_ghost / self.n if self.n else 0.0

    @property
    def delta(self) -> float:
        return self.pct_primary - self.pct_ghost

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "participant_id": self.participant_id,
            "N": self.n,
            "hitsPrimary": self.hits_primary,
            "hitsGhost": self.hits_ghost,
            "pctPrimary": self.pct_primary,
            "pctGhost": self.pct_ghost,
            "delta": self.delta,
            "n10": self.n10,
            "n01": self.n01,
            "alternatingOK": self.alternating_ok,
            "qrngOK": self.qrng_ok,
            "excluded": self.excluded,
            "warnings": list(self.warnings),
        }


def session_row(doc: Mapping[str, Any], trials: Sequence[NormalizedTrial], fallback_id: str) -> SessionRow:
    """Tally one session. Records with a missing index are counted in ``excluded`` only."""
    good = valid_trials(trials)
    row = SessionRow(
        session_id=str(doc.get("session_id") or fallback_id),
        participant_id=participant_key(doc),
        n=len(good),
        hits_primary=0,
        hits_ghost=0,
        n10=0,
        n01=0,
        excluded=len(trials) - len(good),
    )
    last_pos = None
    for t in good:
        p = 1 if t.subject_hit else 0
        g = 1 if t.decoy_hit else 0
        row.hits_primary += p
        row.hits_ghost += g
        if p and not g:
            row.n10 += 1
        elif g and not p:
            row.n01 += 1
        if t.primary_pos in (1, 2):
            if last_pos is not None and t.primary_pos == last_pos:
                row.alternating_ok = False
            last_pos = t.primary_pos
        if t.qrng_code is not None and t.qrng_code not in (1, 2):
            row.qrng_ok = False
    if not row.alternating_ok:
        row.warnings.append(WARN_ALTERNATION)
    if not row.qrng_ok:
        row.warnings.append(WARN_QRNG_CODE)
    return row


def participant_key(doc: Mapping[str, Any]) -> str:
    return str(doc.get("participant_id") or doc.get("uid") or "UNKNOWN")


def session_time(doc: Mapping[str, Any]) -> Optional[float]:
    """Epoch milliseconds from the first usable time field, or None."""
    for key in _TIME_FIELDS:
        v = doc.get(key)
        if v is None:
            continue
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(v)
        if isinstance(v, datetime):
            return v.timestamp() * 1000.0
        dt = parse_iso_utc(str(v))
        if dt is not None:
            return dt.timestamp() * 1000.0
    return None


def first_session_per_participant(docs: Iterable[Mapping[str, Any]], get_trials: TrialGetter) -> List[Mapping[str, Any]]:
    """Keep each participant's earliest session, ties going to the smaller session id.

    Sessions without a usable time never displace one already kept.
    """
    first: Dict[str, Mapping[str, Any]] = {}
    for doc in docs:
        if not get_trials(doc):
            continue
        pid = participant_key(doc)
        prev = first.get(pid)
        if prev is None:
            first[pid] = doc
            continue
        t_prev, t_cur = session_time(prev), session_time(doc)
        if t_prev is None or t_cur is None:
            continue
        if (t_cur, str(doc.get("session_id") or "")) < (t_prev, str(prev.get("session_id") or "")):
            first[pid] = doc
    return list(first.values())


def _rows(docs: Sequence[Mapping[str, Any]], get_trials: TrialGetter) -> List[SessionRow]:
    rows = []
    for idx, doc in enumerate(docs):
        trials = get_trials(doc)
        if not trials:
            continue
        row = session_row(doc, trials, f"row_{idx}")
        if row.n:
            rows.append(row)
    return rows


def _flag_warnings(rows: Sequence[SessionRow]) -> List[Dict[str, Any]]:
    return [{"session": r.session_id, "warnings": list(r.warnings)} for r in rows if r.warnings]


def _totals(rows: Sequence[SessionRow]) -> Dict[str, Any]:
    n = sum(r.n for r in rows)
    kp = sum(r.hits_primary for r in rows)
    kg = sum(r.hits_ghost for r in rows)
    return {"trials": n, "primaryRight": kp, "ghostRight": kg, "excluded": sum(r.excluded for r in rows)}


def _symmetry(rows: Sequence[SessionRow]) -> Dict[str, Any]:
    n10 = sum(r.n10 for r in rows)
    n01 = sum(r.n01 for r in rows)
    z = symmetry_z(n10, n01)
    return {"z": z, "p": two_sided_p(z), "n10": n10, "n01": n01}


def pooled_report(docs: Sequence[Mapping[str, Any]], get_trials: TrialGetter, *, p0: float = 0.2, alpha: float = 0.05) -> Dict[str, Any]:
    rows = _rows(docs, get_trials)
    totals = _totals(rows)
    n, kp, kg = totals["trials"], totals["primaryRight"], totals["ghostRight"]
    pct_p = 100.0 * kp / n if n else None
    pct_g = 100.0 * kg / n if n else None
    totals.update({
        "pctPrimary": pct_p,
        "pctGhost": pct_g,
        "deltaPct": (pct_p - pct_g) if n else None,
    })
    z_ghost = binom_z_against(p0, kg, n)
    z_primary = binom_z_against(p0, kp, n)
    z_pp = two_proportion_z(kp, n, kg, n)
    tests = {
        "rngBiasGhost": {"z": z_ghost, "p": two_sided_p(z_ghost), "p0": p0},
        "primaryVsChance": {"z": z_primary, "p": two_sided_p(z_primary), "p0": p0},
        "primaryVsGhost": {"z": z_pp, "p": two_sided_p(z_pp), "method": "two-proportion z (pooled)"},
        "symmetryN10vsN01": _symmetry(rows),
    }
    return _finish(MODE_POOLED, rows, totals, tests, alpha)


def session_weighted_report(
    docs: Sequence[Mapping[str, Any]], get_trials: TrialGetter, *, p0: float = 0.2, alpha: float = 0.05
) -> Dict[str, Any]:
    rows = _rows(first_session_per_participant(docs, get_trials), get_trials)
    totals = _totals(rows)
    chance_pct = 100.0 * p0
    primary = [r.pct_primary for r in rows]
    ghost = [r.pct_ghost for r in rows]
    totals.update({
        "participants": len(rows),
        "pctPrimary": mean(primary),
        "pctGhost": mean(ghost),
        "deltaPct": mean([r.delta for r in rows]),
    })
    t_ghost = one_sample_t(ghost, chance_pct)
    t_primary = one_sample_t(primary, chance_pct)
    t_paired = paired_t(primary, ghost)
    tests = {
        "rngBiasGhost": {**t_ghost.to_dict(), "type": "one-sample t", "p0": p0},
        "primaryVsChance": {**t_primary.to_dict(), "type": "one-sample t", "p0": p0},
        "primaryVsGhost": {**t_paired.to_dict(), "type": "paired t"},
        "symmetryN10vsN01": _symmetry(rows),
    }
    return _finish(MODE_SESSION_WEIGHTED, rows, totals, tests, alpha)


def _finish(mode: str, rows: Sequence[SessionRow], totals: Dict[str, Any], tests: Dict[str, Any], alpha: float) -> Dict[str, Any]:
    warnings = _flag_warnings(rows)
    flags = []
    if totals["trials"] and tests["rngBiasGhost"]["p"] < alpha:
        flags.append(WARN_RNG_BIAS)
    if tests["symmetryN10vsN01"]["n10"] + tests["symmetryN10vsN01"]["n01"] and tests["symmetryN10vsN01"]["p"] < alpha:
        flags.append(WARN_SYMMETRY)
    if flags:
        warnings.append({"session": "*", "warnings": flags})
    for w in warnings:
        logger.info("integrity warning: mode=%s session=%s %s", mode, w["session"], "; ".join(w["warnings"]))
    return {
        "mode": mode,
        "per": [r.to_dict() for r in rows],
        "totals": totals,
        "tests": tests,
        "warnings": warnings,
    }


def exit_breakdown(docs: Sequence[Mapping[str, Any]], minimums: Mapping[str, int]) -> Dict[str, Any]:
    """Completer count and normalised early-exit reasons."""
    reasons: Dict[str, int] = {}
    completers = exited = 0
    for doc in docs:
        if is_completer(doc, minimums):
            completers += 1
            continue
        if doc.get("exitedEarly") or exit_reason_raw(doc):
            exited += 1
            label = normalize_exit_reason(exit_reason_raw(doc)) or "unspecified"
            reasons[label] = reasons.get(label, 0) + 1
    return {
        "sessions": len(docs),
        "completers": completers,
        "exited_early": exited,
        "reasons": dict(sorted(reasons.items(), key=lambda kv: (-kv[1], kv[0]))),
    }


def _getter(blocks: Sequence[str]) -> TrialGetter:
    def get(doc: Mapping[str, Any]) -> List[NormalizedTrial]:
        return session_trials(doc, blocks)

    return get


def audit_sessions(
    docs: Sequence[Mapping[str, Any]],
    *,
    mode: str = MODE_POOLED,
    cfg: Optional[EngineConfig] = None,
    blocks: Optional[Sequence[str]] = None,
    completers_only: bool = False,
    include_diagnostics: bool = False,
) -> Dict[str, Any]:
    """Full report: overall tests, one report per block, exits, and optional diagnostics."""
    if mode not in AUDIT_MODES:
        raise ValueError(f"unknown audit mode: {mode}")
    cfg = cfg or EngineConfig()
    block_ids = list(blocks or cfg.trials_per_block.keys())
    minimums = {b: cfg.trials_per_block.get(b, 1) for b in block_ids}
    docs = [d for d in docs if isinstance(d, Mapping)]
    selected = [d for d in docs if is_completer(d, minimums)] if completers_only else docs

    build = pooled_report if mode == MODE_POOLED else session_weighted_report
    p0, alpha = cfg.chance, cfg.significance_alpha
    report = {
        "mode": mode,
        "completers_only": completers_only,
        "overall": build(selected, _getter(block_ids), p0=p0, alpha=alpha),
        "by_block": {b: build(selected, _getter([b]), p0=p0, alpha=alpha) for b in block_ids},
        "exits": exit_breakdown(docs, minimums),
    }
    if include_diagnostics:
        pool: List[NormalizedTrial] = []
        for d in selected:
            pool.extend(valid_trials(session_trials(d, block_ids)))
        report["diagnostics"] = diagnostics_report(pool, p0=p0, alpha=alpha, expected_sources=cfg.block_sources)
    return report


def _fmt(v: Any, spec: str = ".2f") -> str:
    if v is None:
        return "n/a"
    if isinstance(v, float):
        return format(v, spec)
    return str(v)


def _test_line(name: str, t: Mapping[str, Any]) -> str:
    stat = "t" if "t" in t else "z"
    extra = f" df={t['df']}" if "df" in t else ""
    return f"  {name:<18} {stat}={_fmt(t.get(stat))} p={_fmt(t.get('p'), '.4f')}{extra}"


def render_text(report: Mapping[str, Any]) -> str:
    """Plain-text rendering of ``audit_sessions`` output."""
    lines: List[str] = []
    overall = report["overall"]
    lines.append(f"SEP audit ({report['mode']}{', completers only' if report.get('completers_only') else ''})")
    lines.append("")
    lines.append(f"{'session':<36} {'N':>4} {'hits':>5} {'ghost':>5} {'%P':>6} {'%G':>6} {'delta':>7}  flags")
    for row in overall["per"]:
        flags = ",".join(row["warnings"]) if row["warnings"] else ""
        lines.append(
            f"{row['session_id'][:36]:<36} {row['N']:>4} {row['hitsPrimary']:>5} {row['hitsGhost']:>5} "
            f"{row['pctPrimary']:>6.1f} {row['pctGhost']:>6.1f} {row['delta']:>7.1f}  {flags}"
        )
    totals = overall["totals"]
    lines.append("")
    lines.append(
        f"totals: trials={totals['trials']} primary={_fmt(totals['pctPrimary'], '.1f')}% "
        f"ghost={_fmt(totals['pctGhost'], '.1f')}% delta={_fmt(totals['deltaPct'], '.1f')}"
    )
    for name, t in overall["tests"].items():
        lines.append(_test_line(name, t))
    for block, sub in report.get("by_block", {}).items():
        st = sub["totals"]
        lines.append(
            f"block {block}: trials={st['trials']} primary={_fmt(st['pctPrimary'], '.1f')}% "
            f"ghost={_fmt(st['pctGhost'], '.1f')}% p(chance)={_fmt(sub['tests']['primaryVsChance']['p'], '.4f')}"
        )
    exits = report.get("exits") or {}
    if exits:
        lines.append("")
        lines.append(f"sessions={exits['sessions']} completers={exits['completers']} exited_early={exits['exited_early']}")
        for label, count in exits["reasons"].items():
            lines.append(f"  exit: {label} ({count})")
    if overall["warnings"]:
        lines.append("")
        lines.append("warnings:")
        for w in overall["warnings"]:
            lines.append(f"  {w['session']}: {'; '.join(w['warnings'])}")
    return "\n".join(lines)
