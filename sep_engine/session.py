"""Session engine: block lifecycle, trial preparation and early exit.

Block state machine::

    idle -> committed -> trial_loop -> revealed -> closed
                \\            \\
                 `------------`--> abandoned   (participant exits early)

A block only leaves ``idle`` once its tape has been drawn and its digest
written (or, under ``commit_policy="flag"``, the write failure recorded as
"unverifiable"). Bytes are consumed strictly in trial order.

Every ``prepare_trial`` call takes a new preparation id. After each
suspension (entropy, store writes, flash delays) it compares its id with the
latest one and returns ``None`` if a newer preparation has started, so a
slow, stale preparation never overwrites a newer trial.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .assignment import ALPHABET, SymbolLayout, TrialAssignment, resolve, shuffle_layout
from .commitment import publish_commitment, reveal_path, reveal_tape
from .config import EngineConfig
from .entropy import EntropyAdapter
from .errors import (
    SEPError,
    sep_error,
    SEP_E_BAD_REQUEST,
    SEP_E_BLOCK_STATE,
    SEP_E_COMMIT_WRITE,
)
from .logs import logger
from .metrics import record_reveal, record_stale_preparation
from .records import BlockSummary, SessionAggregate, TrialRecord, summarize_block
from .redundancy import FlashLog, FlashPlan, draw_redundancy_order, plan_for_trial, run_flashes
from .remap import IdentityRemap, RemapContext, RemapStrategy
from .store import DocumentStore, document_path
from .tape import CommitmentTape, EnvelopeBatch, TapeCursor

IDLE = "idle"
COMMITTED = "committed"
TRIAL_LOOP = "trial_loop"
REVEALED = "revealed"
CLOSED = "closed"
ABANDONED = "abandoned"

COMMIT_PUBLISHED = "published"
COMMIT_UNVERIFIABLE = "unverifiable"


class SingleFlight:
    """Create one resource on first use; concurrent callers share the same in-flight creation."""

    def __init__(self, factory: Callable[[], Awaitable[str]]):
        self._factory = factory
        self._task: Optional[asyncio.Future] = None

    async def get(self) -> str:
        if self._task is None:
            self._task = asyncio.ensure_future(self._factory())
        task = self._task
        try:
            return await asyncio.shield(task)
        except Exception:
            # A failed creation may be retried by the next caller.
            if self._task is task and task.done():
                self._task = None
            raise


@dataclass
class PreparedTrial:
    block_id: str
    trial_index: int
    prep_id: int
    layout: SymbolLayout
    assignment: TrialAssignment
    plan: FlashPlan
    flashes: FlashLog
    rng_source: str
    batch_id: Optional[str]
    server_time: Optional[str]
    sealed_envelope_id: Optional[str]


@dataclass
class Block:
    block_id: str
    total: int
    source: str
    state: str = IDLE
    tape: Optional[CommitmentTape] = None
    cursor: Optional[TapeCursor] = None
    commit_status: Optional[str] = None
    remap_commit_hash: Optional[str] = None
    records: List[TrialRecord] = field(default_factory=list)
    pending: Optional[PreparedTrial] = None
    summary: Optional[BlockSummary] = None

    @property
    def trials_done(self) -> int:
        return len(self.records)


class SessionEngine:
    """One participant run against a document store and an entropy adapter."""

    def __init__(
        self,
        store: DocumentStore,
        entropy: EntropyAdapter,
        cfg: Optional[EngineConfig] = None,
        *,
        session_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        remap: Optional[RemapStrategy] = None,
        redundancy_order: Optional[str] = None,
        rand32: Optional[Callable[[], int]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
        show: Optional[Callable[[Optional[SymbolLayout]], None]] = None,
    ):
        self.cfg = cfg or EngineConfig()
        self.store = store
        self.entropy = entropy
        self.session_id = session_id or uuid.uuid4().hex
        self.remap = remap or IdentityRemap()
        if self.cfg.symbol_count > len(ALPHABET):
            raise sep_error(SEP_E_BAD_REQUEST, "symbol_count exceeds the alphabet", symbol_count=self.cfg.symbol_count)
        self.alphabet = ALPHABET[: self.cfg.symbol_count]
        self.aggregate = SessionAggregate(
            session_id=self.session_id,
            participant_id=participant_id,
            redundancy_order=redundancy_order or draw_redundancy_order(),
            remap_mode=self.remap.mode,
        )
        self.blocks: Dict[str, Block] = {}
        self._rand32 = rand32
        self._sleep = sleep
        self._clock = clock
        self._show = show
        self._prep_seq = 0
        self._exited = False
        self._unsaved: List[TrialRecord] = []
        self._run_doc = SingleFlight(self._create_run_doc)

    # ------------------------------------------------------------------
    # Run document
    # ------------------------------------------------------------------

    async def _create_run_doc(self) -> str:
        doc = self.aggregate.to_document()
        run_id = await asyncio.to_thread(self.store.add, "runs", doc)
        self.aggregate.run_id = run_id
        logger.info("run document created: session=%s run=%s", self.session_id, run_id)
        return run_id

    async def ensure_run_doc(self) -> str:
        """Idempotent, concurrency-safe creation of the parent run document."""
        return await self._run_doc.get()

    async def _save_aggregate(self) -> None:
        run_id = await self.ensure_run_doc()
        try:
            await asyncio.to_thread(self.store.set, document_path("runs", run_id), self.aggregate.to_document(), merge=True)
        except SEPError as e:
            logger.warning("aggregate write failed: session=%s run=%s error=%s", self.session_id, run_id, e)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def block(self, block_id: str) -> Block:
        b = self.blocks.get(block_id)
        if b is None:
            raise sep_error(SEP_E_BLOCK_STATE, f"block not started: {block_id}", block=block_id)
        return b

    def _check_live(self) -> None:
        if self._exited:
            raise sep_error(SEP_E_BLOCK_STATE, "session has exited", session=self.session_id)

    async def start_block(self, block_id: str, *, total: Optional[int] = None) -> Block:
        """Draw the block's tape and publish its commitment.

        Entropy failure leaves the block ``idle`` with nothing published.
        """
        self._check_live()
        existing = self.blocks.get(block_id)
        if existing is not None and existing.state != IDLE:
            raise sep_error(SEP_E_BLOCK_STATE, f"block already started: {block_id}", block=block_id, state=existing.state)
        n = int(total) if total is not None else self.cfg.trials_for(block_id)
        source = self.cfg.source_for(block_id)
        blk = existing or Block(block_id=block_id, total=n, source=source)
        self.blocks[block_id] = blk

        try:
            batch = await self.entropy.afetch_bytes(2 * n, source)
        except SEPError as e:
            logger.error("block not started, entropy unavailable: session=%s block=%s source=%s code=%s", self.session_id, block_id, source, e.code)
            raise
        envelopes = EnvelopeBatch.from_batch(batch, block_id=block_id, total=n)
        tape = envelopes.to_tape(salt_bytes=self.cfg.salt_bytes)

        run_id = await self.ensure_run_doc()
        blk.remap_commit_hash = self.remap.begin_block(self.session_id, block_id)
        tally = self.aggregate.tally(block_id)
        try:
            await asyncio.to_thread(publish_commitment, self.store, run_id, tape, session_id=self.session_id)
            blk.commit_status = COMMIT_PUBLISHED
        except SEPError as e:
            if e.code != SEP_E_COMMIT_WRITE or self.cfg.commit_policy == "fail_closed":
                tally.commit_status = "failed"
                raise
            blk.commit_status = COMMIT_UNVERIFIABLE
            logger.warning("block continues without verifiable commitment: session=%s block=%s source=%s", self.session_id, block_id, source)
        if blk.remap_commit_hash is not None and blk.commit_status == COMMIT_PUBLISHED:
            await self._write_quietly(
                document_path("runs", run_id, "commits", block_id),
                {"remap_commit_hash": blk.remap_commit_hash, "remap_mode": self.remap.mode},
                merge=True,
                what="remap commit",
            )

        blk.tape = tape
        blk.cursor = TapeCursor(tape)
        blk.state = COMMITTED
        tally.commit_status = blk.commit_status
        await self._save_aggregate()
        return blk

    # ------------------------------------------------------------------
    # Trials
    # ------------------------------------------------------------------

    def _is_current(self, prep_id: int, blk: Block, trial_index: int) -> bool:
        if prep_id != self._prep_seq or self._exited:
            return False
        # a trial answered meanwhile moves the tape past this preparation
        assert blk.cursor is not None
        return blk.trials_done == trial_index - 1 and blk.cursor.consumed == trial_index - 1

    def _stale(self, block_id: str, trial_index: int) -> None:
        record_stale_preparation()
        logger.debug("stale trial preparation dropped: session=%s block=%s trial=%d", self.session_id, block_id, trial_index)

    async def prepare_trial(self, block_id: str) -> Optional[PreparedTrial]:
        """Prepare the next trial of ``block_id``; ``None`` if superseded."""
        self._check_live()
        blk = self.block(block_id)
        if blk.state not in (COMMITTED, TRIAL_LOOP):
            raise sep_error(SEP_E_BLOCK_STATE, "block is not accepting trials", block=block_id, state=blk.state)
        assert blk.cursor is not None and blk.tape is not None

        self._prep_seq += 1
        prep_id = self._prep_seq
        trial_index = blk.trials_done + 1
        subject_byte, decoy_byte = blk.cursor.peek()

        run_id = await self.ensure_run_doc()
        if not self._is_current(prep_id, blk, trial_index):
            self._stale(block_id, trial_index)
            return None

        sealed_id: Optional[str] = f"{self.session_id}-{block_id}-{trial_index}"
        sealed_doc = {
            "session_id": self.session_id,
            "block_type": block_id,
            "trial_index": trial_index,
            "rng_source": blk.tape.source,
            "batch_id": blk.tape.batch_id,
            "server_time": blk.tape.created_iso,
            "k_options": len(self.alphabet),
            "raw_byte": subject_byte,
            "ghost_raw_byte": decoy_byte,
            "primary_symbol_id": self.alphabet[subject_byte % len(self.alphabet)],
            "ghost_symbol_id": self.alphabet[decoy_byte % len(self.alphabet)],
        }
        ok = await self._write_quietly(
            document_path("runs", run_id, "sealed_envelope", sealed_id), sealed_doc, merge=False, what="sealed envelope",
            block_id=block_id, trial_index=trial_index,
        )
        if not ok:
            sealed_id = None
        if not self._is_current(prep_id, blk, trial_index):
            self._stale(block_id, trial_index)
            return None

        # One layout per trial, reused for every flash.
        layout = shuffle_layout(self.alphabet, self._rand32)
        plan = plan_for_trial(self.cfg, trial_index - 1, blk.total, self.aggregate.redundancy_order or "")
        flashes = await run_flashes(
            plan, layout, lambda: self._is_current(prep_id, blk, trial_index), show=self._show, sleep=self._sleep, clock=self._clock
        )
        if flashes is None:
            self._stale(block_id, trial_index)
            return None

        prepared = PreparedTrial(
            block_id=block_id,
            trial_index=trial_index,
            prep_id=prep_id,
            layout=layout,
            assignment=resolve(subject_byte, decoy_byte, layout, self.alphabet),
            plan=plan,
            flashes=flashes,
            rng_source=blk.tape.source,
            batch_id=blk.tape.batch_id,
            server_time=blk.tape.created_iso,
            sealed_envelope_id=sealed_id,
        )
        blk.pending = prepared
        blk.state = TRIAL_LOOP
        return prepared

    async def respond(
        self,
        block_id: str,
        selected_index: int,
        *,
        response_time_ms: Optional[float] = None,
        press_bucket_ms: int = 0,
    ) -> TrialRecord:
        """Record the participant's choice for the pending trial."""
        self._check_live()
        blk = self.block(block_id)
        prepared = blk.pending
        if prepared is None or blk.state != TRIAL_LOOP:
            raise sep_error(SEP_E_BLOCK_STATE, "no prepared trial to answer", block=block_id)
        if isinstance(selected_index, bool) or not isinstance(selected_index, int) or not 0 <= selected_index < len(self.alphabet):
            raise sep_error(SEP_E_BAD_REQUEST, "selected_index out of range", block=block_id, selected_index=selected_index)
        assert blk.cursor is not None
        expected = (prepared.assignment.subject_byte, prepared.assignment.decoy_byte)
        if prepared.trial_index != blk.trials_done + 1 or blk.cursor.peek() != expected:
            blk.pending = None
            raise sep_error(SEP_E_BLOCK_STATE, "prepared trial does not match tape position", block=block_id, trial=prepared.trial_index)

        ctx = RemapContext(
            session_id=self.session_id,
            block=block_id,
            trial_index=prepared.trial_index,
            selected_index=selected_index,
            options=prepared.layout.to_list(),
            raw_byte=prepared.assignment.subject_byte,
            press_bucket_ms=int(press_bucket_ms),
        )
        outcome = self.remap.apply(prepared.assignment, ctx)

        blk.cursor.next_pair()
        blk.pending = None

        record = TrialRecord(
            session_id=self.session_id,
            block_id=block_id,
            trial_index=prepared.trial_index,
            assignment=prepared.assignment,
            target_index=outcome.target_index,
            decoy_index=outcome.decoy_index,
            selected_index=selected_index,
            options=prepared.layout.to_list(),
            response_time_ms=response_time_ms,
            rng_source=prepared.rng_source,
            batch_id=prepared.batch_id,
            sealed_envelope_id=prepared.sealed_envelope_id,
            redundancy_mode=prepared.plan.mode,
            redundancy_count=prepared.plan.count,
            flash_onsets_ms=tuple(prepared.flashes.onsets_ms),
            flash_orders=tuple(tuple(o) for o in prepared.flashes.orders),
            remap_mode=outcome.mode,
            remap_r=outcome.r,
            remap_proof=outcome.proof,
            press_bucket_ms=int(press_bucket_ms),
        )
        last = blk.trials_done + 1 >= blk.total
        if last:
            hits = [r.subject_hit for r in blk.records] + [record.subject_hit]
            blk.summary = summarize_block(
                hits,
                p0=self.cfg.chance,
                alpha=self.cfg.significance_alpha,
                round_size=self.cfg.round_size,
                win_hits=self.cfg.round_win_hits,
            )
            record = record.with_summary(blk.summary)
        blk.records.append(record)
        await self._persist_record(record)

        self.aggregate.recount(block_id, blk.records)
        if last:
            await self._complete_block(blk)
        else:
            await self._save_aggregate()
        return record

    async def _persist_record(self, record: TrialRecord) -> None:
        run_id = await self.ensure_run_doc()
        path = document_path("runs", run_id, "logs", f"{record.block_id}-{record.trial_index:04d}")
        try:
            await asyncio.to_thread(self.store.set, path, record.to_document())
        except SEPError as e:
            self._unsaved.append(record)
            logger.error(
                "trial record write failed, kept for retry: session=%s block=%s trial=%d error=%s",
                self.session_id, record.block_id, record.trial_index, e,
            )

    async def flush(self) -> int:
        """Retry writing trial records whose first write failed. Returns how many remain unsaved."""
        pending, self._unsaved = self._unsaved, []
        for record in pending:
            await self._persist_record(record)
        return len(self._unsaved)

    async def _complete_block(self, blk: Block) -> None:
        assert blk.tape is not None
        run_id = await self.ensure_run_doc()
        tally = self.aggregate.tally(blk.block_id)
        tally.completed = True
        result = await asyncio.to_thread(reveal_tape, self.store, run_id, blk.tape)
        if result.ok:
            blk.state = REVEALED
            tally.reveal_status = "revealed"
            key = self.remap.end_block(self.session_id, blk.block_id)
            if key is not None:
                await self._write_quietly(
                    reveal_path(run_id, blk.block_id),
                    {"remap_key_hex": key.key_hex, "remap_commit_hash": key.commit_hash},
                    merge=True,
                    what="remap key reveal",
                )
        else:
            tally.reveal_status = "failed"
        blk.state = CLOSED
        await self._save_aggregate()

    async def retry_reveal(self, block_id: str) -> bool:
        """Retry a failed reveal for a completed block."""
        blk = self.block(block_id)
        if blk.tape is None or not self.aggregate.tally(block_id).completed:
            raise sep_error(SEP_E_BLOCK_STATE, "only completed blocks can be revealed", block=block_id)
        if blk.tape.revealed:
            return True
        run_id = await self.ensure_run_doc()
        result = await asyncio.to_thread(reveal_tape, self.store, run_id, blk.tape)
        if result.ok:
            self.aggregate.tally(block_id).reveal_status = "revealed"
            await self._save_aggregate()
        return result.ok

    async def _write_quietly(
        self,
        path: str,
        data: Dict[str, Any],
        *,
        merge: bool,
        what: str,
        block_id: Optional[str] = None,
        trial_index: Optional[int] = None,
    ) -> bool:
        try:
            await asyncio.to_thread(self.store.set, path, data, merge=merge)
        except SEPError as e:
            logger.warning("%s write failed: session=%s block=%s trial=%s error=%s", what, self.session_id, block_id, trial_index, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Session end
    # ------------------------------------------------------------------

    async def exit_early(self, reason: str, notes: Optional[str] = None) -> SessionAggregate:
        """Stop the run: no further fetches, keep every record, no reveal of unfinished blocks."""
        if self.aggregate.completed:
            raise sep_error(SEP_E_BLOCK_STATE, "session already finished", session=self.session_id)
        self._prep_seq += 1
        self._exited = True
        for blk in self.blocks.values():
            blk.pending = None
            if blk.state in (IDLE, COMMITTED, TRIAL_LOOP):
                blk.state = ABANDONED
                self.aggregate.tally(blk.block_id).reveal_status = "skipped"
                record_reveal("skipped")
            self.aggregate.recount(blk.block_id, blk.records)
        await self.flush()
        self.aggregate.exited_early = True
        self.aggregate.exit_reason = reason
        self.aggregate.exit_reason_notes = notes
        await self._save_aggregate()
        logger.info(
            "session exited early: session=%s reason=%s trials=%d", self.session_id, reason, self.aggregate.total_trials
        )
        return self.aggregate

    async def finish(self) -> SessionAggregate:
        self._check_live()
        open_blocks = [b.block_id for b in self.blocks.values() if b.state not in (CLOSED, REVEALED)]
        if open_blocks:
            raise sep_error(SEP_E_BLOCK_STATE, "blocks still open", blocks=open_blocks)
        await self.flush()
        self.aggregate.completed = True
        self._exited = True
        await self._save_aggregate()
        return self.aggregate

    def session_document(self) -> Dict[str, Any]:
        """Aggregate plus per-block trial rows, in the shape the audit engine reads."""
        doc = self.aggregate.to_document()
        for block_id, blk in self.blocks.items():
            doc[block_id] = {"trialResults": [r.to_document() for r in blk.records]}
        return doc
