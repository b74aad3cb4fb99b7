"""Trial records, session aggregates and legacy-field normalisation.

Persisted trial documents use one canonical set of field names. Historical
documents used several aliases (``matched`` for ``subject_hit``,
``demon_hit`` for ``ghost_hit``, trials nested under different keys); those
are resolved once, in ``normalize_trial`` / ``extract_block_trials``, so the
statistics layer only ever sees ``NormalizedTrial``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .assignment import TrialAssignment
from .crypto import now_iso
from .stats import binom_p_at_or_above, score_rounds


@dataclass(frozen=True)
class BlockSummary:
    """Written onto the last trial record of a block."""

    hits: int
    n: int
    percent: float
    p_value: float
    significant: bool
    rounds_won: int
    total_rounds: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize_block(
    hits_sequence: Sequence[int],
    *,
    p0: float = 0.2,
    alpha: float = 0.05,
    round_size: int = 5,
    win_hits: int = 3,
) -> BlockSummary:
    n = len(hits_sequence)
    hits = sum(1 for h in hits_sequence if h)
    p = binom_p_at_or_above(hits, n, p0)
    rounds = score_rounds(hits_sequence, round_size, win_hits)
    return BlockSummary(
        hits=hits,
        n=n,
        percent=(100.0 * hits / n) if n else 0.0,
        p_value=p,
        significant=bool(n) and p <= alpha,
        rounds_won=rounds.wins,
        total_rounds=rounds.total_rounds,
    )


@dataclass(frozen=True)
class TrialRecord:
    """One participant response. Indices and hit flags never change once built."""

    session_id: str
    block_id: str
    trial_index: int
    assignment: TrialAssignment
    target_index: int
    decoy_index: int
    selected_index: int
    options: Sequence[str]
    response_time_ms: Optional[float] = None
    rng_source: Optional[str] = None
    batch_id: Optional[str] = None
    sealed_envelope_id: Optional[str] = None
    redundancy_mode: str = "single"
    redundancy_count: int = 1
    flash_onsets_ms: Sequence[int] = ()
    flash_orders: Sequence[Sequence[str]] = ()
    remap_mode: str = "identity"
    remap_r: int = 0
    remap_proof: Optional[str] = None
    press_bucket_ms: int = 0
    created_iso: str = field(default_factory=now_iso)
    block_summary: Optional[BlockSummary] = None

    @property
    def subject_hit(self) -> int:
        return int(self.selected_index == self.target_index)

    @property
    def decoy_hit(self) -> int:
        return int(self.selected_index == self.decoy_index)

    def with_summary(self, summary: BlockSummary) -> "TrialRecord":
        return replace(self, block_summary=summary)

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "session_id": self.session_id,
            "block_type": self.block_id,
            "trial_index": self.trial_index,
            "raw_byte": self.assignment.subject_byte,
            "ghost_raw_byte": self.assignment.decoy_byte,
            "primary_symbol_id": self.assignment.subject_symbol,
            "ghost_symbol_id": self.assignment.decoy_symbol,
            "base_target_index": self.assignment.subject_index,
            "base_ghost_index": self.assignment.decoy_index,
            "target_index_0based": self.target_index,
            "ghost_index_0based": self.decoy_index,
            "selected_index": self.selected_index,
            "subject_hit": self.subject_hit,
            "ghost_hit": self.decoy_hit,
            "options": list(self.options),
            "response_time_ms": self.response_time_ms,
            "rng_source": self.rng_source,
            "batch_id": self.batch_id,
            "sealed_envelope_id": self.sealed_envelope_id,
            "redundancy_mode": self.redundancy_mode,
            "redundancy_count": self.redundancy_count,
            "redundancy_timestamps": list(self.flash_onsets_ms),
            "redundancy_orders": [list(o) for o in self.flash_orders],
            "remap_mode": self.remap_mode,
            "remap_r": self.remap_r,
            "remap_proof": self.remap_proof,
            "press_bucket_ms": self.press_bucket_ms,
            "created_iso": self.created_iso,
        }
        if self.block_summary is not None:
            doc["block_summary"] = self.block_summary.to_dict()
        return doc


def _first(row: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        v = row.get(k)
        if v is not None:
            return v
    return None


def _as_int(v: Any) -> Optional[int]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float) and v.is_integer():
        return int(v)
    if isinstance(v, str) and v.strip().lstrip("-").isdigit():
        return int(v.strip())
    return None


def _as_float(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if f == f else None


@dataclass(frozen=True)
class NormalizedTrial:
    """Analytics view of one trial document, aliases already resolved."""

    block: Optional[str]
    trial_index: Optional[int]
    target_index: Optional[int]
    decoy_index: Optional[int]
    selected_index: Optional[int]
    subject_hit: Optional[int]
    decoy_hit: Optional[int]
    raw_byte: Optional[int] = None
    ghost_raw_byte: Optional[int] = None
    response_time_ms: Optional[float] = None
    rng_source: Optional[str] = None
    redundancy_mode: Optional[str] = None
    target_symbol: Optional[str] = None
    primary_pos: Optional[int] = None
    qrng_code: Optional[int] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_valid(self) -> bool:
        return None not in (self.target_index, self.selected_index, self.decoy_index)


def normalize_trial(row: Mapping[str, Any], block: Optional[str] = None) -> NormalizedTrial:
    target = _as_int(_first(row, ("target_index_0based", "target_index")))
    decoy = _as_int(_first(row, ("ghost_index_0based", "demon_index_0based", "ghost_index")))
    selected = _as_int(_first(row, ("selected_index", "choice_index")))

    subject_hit = _as_int(_first(row, ("subject_hit", "matched")))
    if subject_hit is None and target is not None and selected is not None:
        subject_hit = int(selected == target)
    decoy_hit = _as_int(_first(row, ("demon_hit", "ghost_hit")))
    if decoy_hit is None and decoy is not None and selected is not None:
        decoy_hit = int(selected == decoy)

    options = _first(row, ("options", "option_ids", "display_order"))
    # Displayed symbol at the target index; differs from primary_symbol_id under remap.
    if isinstance(options, list) and target is not None and 0 <= target < len(options):
        target_symbol = options[target]
    else:
        target_symbol = row.get("primary_symbol_id")

    return NormalizedTrial(
        block=block or _first(row, ("block_type", "block_id", "block")),
        trial_index=_as_int(row.get("trial_index")),
        target_index=target,
        decoy_index=decoy,
        selected_index=selected,
        subject_hit=(1 if subject_hit else 0) if subject_hit is not None else None,
        decoy_hit=(1 if decoy_hit else 0) if decoy_hit is not None else None,
        raw_byte=_as_int(row.get("raw_byte")),
        ghost_raw_byte=_as_int(row.get("ghost_raw_byte")),
        response_time_ms=_as_float(_first(row, ("response_time_ms", "rt_ms", "reaction_time_ms"))),
        rng_source=_first(row, ("rng_source", "source")),
        redundancy_mode=row.get("redundancy_mode"),
        target_symbol=target_symbol,
        primary_pos=_as_int(row.get("primary_pos")),
        qrng_code=_as_int(row.get("qrng_code")),
        raw=dict(row),
    )


def extract_block_trials(doc: Mapping[str, Any], block: str) -> List[Dict[str, Any]]:
    """Trial rows for ``block`` from any of the known session document shapes."""
    nested = doc.get(block)
    if isinstance(nested, Mapping) and isinstance(nested.get("trialResults"), list):
        return list(nested["trialResults"])
    flat = doc.get(f"{block}_trials")
    if isinstance(flat, list):
        return list(flat)
    details = (doc.get("details") or {}).get("trialDetails") or {}
    nested = details.get(f"{block}_trials")
    if isinstance(nested, list):
        return list(nested)
    return []


def session_trials(doc: Mapping[str, Any], blocks: Sequence[str]) -> List[NormalizedTrial]:
    out: List[NormalizedTrial] = []
    for b in blocks:
        out.extend(normalize_trial(r, b) for r in extract_block_trials(doc, b) if isinstance(r, Mapping))
    return out


def valid_trials(trials: Iterable[NormalizedTrial]) -> List[NormalizedTrial]:
    return [t for t in trials if t.is_valid]


_EXIT_KEYS = (
    ("exit_reason",),
    ("exitReason",),
    ("exit", "reason"),
    ("meta", "exit_reason"),
    ("meta", "exitReason"),
    ("survey", "exit_reason"),
    ("assignment", "exit_reason"),
)


def exit_reason_raw(doc: Mapping[str, Any]) -> Optional[str]:
    for path in _EXIT_KEYS:
        cur: Any = doc
        for key in path:
            cur = cur.get(key) if isinstance(cur, Mapping) else None
        if cur is not None:
            return str(cur)
    return None


def normalize_exit_reason(reason: Optional[str]) -> Optional[str]:
    """Collapse free-text exit reasons onto short labels."""
    if not reason:
        return None
    s = str(reason).strip().lower()
    if not s:
        return None
    if "timeout" in s or "time out" in s:
        return "timeout"
    if any(w in s for w in ("broke", "bug", "error")):
        return "technical"
    if any(w in s for w in ("no consent", "decline", "consent")):
        return "no consent"
    if "attention" in s or "check" in s:
        return "attention check fail"
    if any(w in s for w in ("quit", "exit", "left")):
        return "quit"
    if "mobile" in s or "device" in s:
        return "device"
    if "duplicate" in s or "repeat" in s:
        return "duplicate"
    return s[:40] + "…" if len(s) > 40 else s


def is_completer(doc: Mapping[str, Any], minimums: Mapping[str, int]) -> bool:
    """Every block reached its minimum trial count."""
    return all(len(extract_block_trials(doc, b)) >= int(n) for b, n in minimums.items())


@dataclass
class BlockTally:
    trials: int = 0
    hits: int = 0
    decoy_hits: int = 0
    commit_status: str = "pending"
    reveal_status: str = "pending"
    completed: bool = False


@dataclass
class SessionAggregate:
    """Per-run document, updated as blocks progress."""

    session_id: str
    run_id: Optional[str] = None
    participant_id: Optional[str] = None
    created_iso: str = field(default_factory=now_iso)
    redundancy_order: Optional[str] = None
    remap_mode: str = "identity"
    blocks: Dict[str, BlockTally] = field(default_factory=dict)
    exited_early: bool = False
    exit_reason: Optional[str] = None
    exit_reason_notes: Optional[str] = None
    completed: bool = False

    def tally(self, block_id: str) -> BlockTally:
        return self.blocks.setdefault(block_id, BlockTally())

    def recount(self, block_id: str, records: Sequence[TrialRecord]) -> BlockTally:
        """Recompute a block's tallies from its records (valid records only)."""
        t = self.tally(block_id)
        rows = [r for r in records if r.block_id == block_id]
        t.trials = len(rows)
        t.hits = sum(r.subject_hit for r in rows)
        t.decoy_hits = sum(r.decoy_hit for r in rows)
        return t

    @property
    def total_trials(self) -> int:
        return sum(t.trials for t in self.blocks.values())

    @property
    def total_hits(self) -> int:
        return sum(t.hits for t in self.blocks.values())

    @property
    def total_decoy_hits(self) -> int:
        return sum(t.decoy_hits for t in self.blocks.values())

    def to_document(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "participant_id": self.participant_id,
            "created_iso": self.created_iso,
            "timestamp": self.created_iso,
            "redundancy_order": self.redundancy_order,
            "remap_mode": self.remap_mode,
            "blocks": {b: asdict(t) for b, t in self.blocks.items()},
            "total_trials": self.total_trials,
            "total_hits": self.total_hits,
            "total_ghost_hits": self.total_decoy_hits,
            "exitedEarly": self.exited_early,
            "exit_reason": self.exit_reason,
            "exit_reason_notes": self.exit_reason_notes,
            "completed": self.completed,
        }
