"""Single vs repeated-flash presentation.

Each run draws a ``redundancy_order``. A block is split into two halves aligned
to round boundaries; one half shows each trial's layout once, the other
flashes it ``R >= 2`` times (on ``flash_duration_ms``, blank
``inter_stimulus_interval_ms`` between flashes). Motion-safe mode always
uses one flash.

The layout is shuffled once per trial and reused for every flash of that trial.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from .assignment import SymbolLayout
from .config import EngineConfig

SINGLE_THEN_REDUNDANT = "single_then_redundant"
REDUNDANT_THEN_SINGLE = "redundant_then_single"
REDUNDANCY_ORDERS = (SINGLE_THEN_REDUNDANT, REDUNDANT_THEN_SINGLE)

MODE_SINGLE = "single"
MODE_REDUNDANT = "redundant"


def draw_redundancy_order() -> str:
    return REDUNDANCY_ORDERS[secrets.randbelow(2)]


def redundancy_condition(trial_index0: int, total: int, order: str, round_size: int = 5) -> Tuple[str, int]:
    """Condition for a 0-based trial index and the aligned half length.

    The first half is ``floor(floor(total/2) / round_size) * round_size`` trials,
    or ``floor(total/2)`` when that rounds down to zero. Any remainder lands in
    the second half.
    """
    per_half = total // 2
    half_aligned = (per_half // round_size) * round_size or per_half
    first = MODE_SINGLE if order == SINGLE_THEN_REDUNDANT else MODE_REDUNDANT
    second = MODE_REDUNDANT if first == MODE_SINGLE else MODE_SINGLE
    return (first if trial_index0 < half_aligned else second), half_aligned


@dataclass(frozen=True)
class FlashPlan:
    mode: str
    count: int
    flash_ms: int
    isi_ms: int
    motion_safe: bool = False

    def to_dict(self):
        return {
            "redundancy_mode": self.mode,
            "redundancy_count": self.count,
            "punctuation": {"flash_ms": self.flash_ms, "isi_ms": self.isi_ms},
            "motion_safe": self.motion_safe,
        }


def plan_for_trial(cfg: EngineConfig, trial_index0: int, total: int, order: str) -> FlashPlan:
    condition, _ = redundancy_condition(trial_index0, total, order, cfg.round_size)
    if cfg.motion_safe:
        return FlashPlan(MODE_SINGLE, 1, cfg.flash_duration_ms, 0, motion_safe=True)
    count = cfg.redundant_flash_count if condition == MODE_REDUNDANT else 1
    return FlashPlan(condition, count, cfg.flash_duration_ms, cfg.inter_stimulus_interval_ms)


@dataclass
class FlashLog:
    onsets_ms: List[int] = field(default_factory=list)
    orders: List[List[str]] = field(default_factory=list)


async def run_flashes(
    plan: FlashPlan,
    layout: SymbolLayout,
    is_current: Callable[[], bool],
    *,
    show: Optional[Callable[[Optional[SymbolLayout]], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.perf_counter,
) -> Optional[FlashLog]:
    """Present ``layout`` ``plan.count`` times.

    ``is_current`` is checked after every suspension; when it turns false the
    loop stops and ``None`` is returned so the caller discards the trial.
    ``show`` receives the layout for a flash and ``None`` for a blank.
    """
    log = FlashLog()
    t0 = clock()
    for i in range(plan.count):
        if show is not None:
            show(layout)
        log.onsets_ms.append(int(round((clock() - t0) * 1000)))
        log.orders.append(layout.to_list())
        await sleep(plan.flash_ms / 1000.0)
        if not is_current():
            return None
        if i < plan.count - 1 and not plan.motion_safe:
            if show is not None:
                show(None)
            await sleep(plan.isi_ms / 1000.0)
            if not is_current():
                return None
    if show is not None:
        show(layout)
    return log
