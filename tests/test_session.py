import asyncio
from dataclasses import replace

import pytest

from conftest import FailingStore, ScriptedSource, no_wait
from sep_engine.entropy import SOURCE_LOCAL, EntropyAdapter
from sep_engine.errors import SEPError, SEP_E_BLOCK_STATE, SEP_E_COMMIT_WRITE, SEP_E_ENTROPY_UNAVAILABLE
from sep_engine.redundancy import SINGLE_THEN_REDUNDANT
from sep_engine.remap import HmacRemap, RemapKeyAuthority, verify_key_commit, verify_remap_row
from sep_engine.session import ABANDONED, COMMIT_UNVERIFIABLE, IDLE, REVEALED, SessionEngine
from sep_engine.store import MemoryStore
from sep_engine.tape import verify_reveal


def _engine(store, adapter, cfg, **kw):
    kw.setdefault("sleep", no_wait)
    kw.setdefault("redundancy_order", SINGLE_THEN_REDUNDANT)
    return SessionEngine(store, adapter, cfg, participant_id="p-001", **kw)


async def _answer(engine, block_id, n, choose=lambda prepared: prepared.assignment.subject_index):
    records = []
    for _ in range(n):
        prepared = await engine.prepare_trial(block_id)
        assert prepared is not None
        records.append(await engine.respond(block_id, choose(prepared), response_time_ms=450.0))
    return records


@pytest.mark.asyncio
async def test_concurrent_ensure_run_doc_creates_one_document(store, adapter, small_cfg):
    engine = _engine(store, adapter, small_cfg)
    ids = await asyncio.gather(*[engine.ensure_run_doc() for _ in range(10)])
    assert len(set(ids)) == 1
    assert [rid for rid, _ in store.list("runs")] == [ids[0]]


@pytest.mark.asyncio
async def test_full_block_commits_before_trials_and_reveals_after(store, adapter, small_cfg, scripted_source):
    engine = _engine(store, adapter, small_cfg)
    blk = await engine.start_block("full_stack")
    run_id = await engine.ensure_run_doc()

    commit = store.get(f"runs/{run_id}/commits/full_stack")
    assert commit is not None
    assert commit["commit_hash_hex"] == blk.tape.digest
    assert store.get(f"runs/{run_id}/reveal/full_stack") is None
    # one fetch of 2N bytes for the whole block
    assert scripted_source.calls == [20]

    records = await _answer(engine, "full_stack", 10)
    assert [r.trial_index for r in records] == list(range(1, 11))
    assert all(r.subject_hit == 1 for r in records)

    reveal = store.get(f"runs/{run_id}/reveal/full_stack")
    check = verify_reveal(reveal, published_digest=commit["commit_hash_hex"])
    assert check.ok
    assert [(r.assignment.subject_byte, r.assignment.decoy_byte) for r in records] == list(check.pairs)
    assert engine.block("full_stack").state in (REVEALED, "closed")

    logs = [doc for _, doc in store.list(f"runs/{run_id}/logs")]
    assert len(logs) == 10
    assert "block_summary" in logs[-1]
    assert logs[-1]["block_summary"]["hits"] == 10
    assert all("block_summary" not in d for d in logs[:-1])

    sealed = store.get(f"runs/{run_id}/sealed_envelope/{engine.session_id}-full_stack-1")
    assert sealed["raw_byte"] == records[0].assignment.subject_byte
    assert sealed["ghost_raw_byte"] == records[0].assignment.decoy_byte

    agg = store.get(f"runs/{run_id}")
    assert agg["blocks"]["full_stack"]["trials"] == 10
    assert agg["blocks"]["full_stack"]["reveal_status"] == "revealed"
    assert agg["blocks"]["full_stack"]["commit_status"] == "published"


@pytest.mark.asyncio
async def test_redundancy_halves_follow_round_boundaries(store, adapter, small_cfg):
    engine = _engine(store, adapter, small_cfg)
    await engine.start_block("full_stack")
    records = await _answer(engine, "full_stack", 10)
    assert [r.redundancy_mode for r in records] == ["single"] * 5 + ["redundant"] * 5
    assert [r.redundancy_count for r in records] == [1] * 5 + [2] * 5
    assert all(len(r.flash_onsets_ms) == r.redundancy_count for r in records)
    # one layout per trial, repeated for every flash
    assert all(set(map(tuple, r.flash_orders)) == {tuple(r.options)} for r in records)


@pytest.mark.asyncio
async def test_early_exit_keeps_records_and_skips_reveal(store, adapter, small_cfg):
    cfg = replace(small_cfg, trials_per_block={"full_stack": 30})
    engine = _engine(store, adapter, cfg)
    await engine.start_block("full_stack")
    records = await _answer(engine, "full_stack", 12, choose=lambda p: (p.assignment.subject_index + 1) % 5)
    agg = await engine.exit_early("participant quit", notes="closed tab")

    assert agg.exited_early
    assert agg.total_trials == 12
    assert agg.total_hits == sum(r.subject_hit for r in records) == 0
    assert agg.total_decoy_hits == sum(r.decoy_hit for r in records)

    run_id = await engine.ensure_run_doc()
    doc = store.get(f"runs/{run_id}")
    assert doc["exitedEarly"] is True
    assert doc["exit_reason"] == "participant quit"
    assert doc["total_trials"] == 12
    assert doc["blocks"]["full_stack"]["reveal_status"] == "skipped"
    assert store.get(f"runs/{run_id}/reveal/full_stack") is None
    assert len(store.list(f"runs/{run_id}/logs")) == 12
    assert engine.block("full_stack").state == ABANDONED

    with pytest.raises(SEPError) as exc_info:
        await engine.prepare_trial("full_stack")
    assert exc_info.value.code == SEP_E_BLOCK_STATE


@pytest.mark.asyncio
async def test_stale_preparation_is_dropped(store, adapter, small_cfg):
    engine = _engine(store, adapter, small_cfg)
    await engine.start_block("full_stack")
    first, second = await asyncio.gather(engine.prepare_trial("full_stack"), engine.prepare_trial("full_stack"))
    assert first is None
    assert second is not None and second.trial_index == 1

    record = await engine.respond("full_stack", 0)
    assert record.trial_index == 1
    assert engine.block("full_stack").trials_done == 1


@pytest.mark.asyncio
async def test_answer_during_overlapping_preparation_keeps_tape_order(store, adapter, small_cfg):
    hold = {"on": False}
    entered = asyncio.Event()
    gate = asyncio.Event()

    async def sleep(_s):
        if hold["on"]:
            entered.set()
            await gate.wait()

    engine = _engine(store, adapter, small_cfg, sleep=sleep)
    blk = await engine.start_block("full_stack")
    pairs = list(blk.tape.pairs)

    first = await engine.prepare_trial("full_stack")
    hold["on"] = True
    overlapping = asyncio.ensure_future(engine.prepare_trial("full_stack"))
    await entered.wait()
    hold["on"] = False

    # participant answers trial 1 while trial 1 is being re-flashed
    record = await engine.respond("full_stack", first.assignment.subject_index)
    gate.set()
    assert await overlapping is None
    assert engine.block("full_stack").cursor.consumed == 1

    records = [record] + await _answer(engine, "full_stack", 9)
    assert [r.trial_index for r in records] == list(range(1, 11))
    assert [(r.assignment.subject_byte, r.assignment.decoy_byte) for r in records] == pairs


@pytest.mark.asyncio
async def test_mismatched_pending_trial_does_not_consume_tape(store, adapter, small_cfg):
    engine = _engine(store, adapter, small_cfg)
    await engine.start_block("full_stack")
    await engine.prepare_trial("full_stack")
    blk = engine.block("full_stack")
    blk.cursor.next_pair()

    with pytest.raises(SEPError) as exc_info:
        await engine.respond("full_stack", 0)
    assert exc_info.value.code == SEP_E_BLOCK_STATE
    assert blk.cursor.consumed == 1
    assert blk.pending is None
    assert blk.records == []


@pytest.mark.asyncio
async def test_entropy_failure_leaves_block_idle_and_unpublished(store, small_cfg):
    source = ScriptedSource([1, 2, 3], fail=True)
    engine = _engine(store, EntropyAdapter({SOURCE_LOCAL: source}), small_cfg)
    with pytest.raises(SEPError) as exc_info:
        await engine.start_block("full_stack")
    assert exc_info.value.code == SEP_E_ENTROPY_UNAVAILABLE
    assert engine.block("full_stack").state == IDLE
    for rid, _ in store.list("runs"):
        assert store.list(f"runs/{rid}/commits") == []

    # the block may be retried once the source recovers
    source.fail = False
    blk = await engine.start_block("full_stack")
    assert blk.tape is not None and blk.tape.length == 10


@pytest.mark.asyncio
async def test_commit_failure_is_flagged_under_flag_policy(adapter, small_cfg):
    store = FailingStore(fail_on=["/commits/"])
    engine = _engine(store, adapter, small_cfg)
    blk = await engine.start_block("full_stack")
    assert blk.commit_status == COMMIT_UNVERIFIABLE
    await _answer(engine, "full_stack", 10)
    run_id = await engine.ensure_run_doc()
    assert store.get(f"runs/{run_id}")["blocks"]["full_stack"]["commit_status"] == COMMIT_UNVERIFIABLE


@pytest.mark.asyncio
async def test_commit_failure_stops_block_under_fail_closed(adapter, small_cfg):
    store = FailingStore(fail_on=["/commits/"])
    engine = _engine(store, adapter, replace(small_cfg, commit_policy="fail_closed"))
    with pytest.raises(SEPError) as exc_info:
        await engine.start_block("full_stack")
    assert exc_info.value.code == SEP_E_COMMIT_WRITE
    with pytest.raises(SEPError):
        await engine.prepare_trial("full_stack")


@pytest.mark.asyncio
async def test_reveal_failure_is_non_fatal_and_retryable(adapter, small_cfg):
    store = FailingStore(fail_on=["/reveal/"])
    engine = _engine(store, adapter, small_cfg)
    await engine.start_block("full_stack")
    await _answer(engine, "full_stack", 10)
    run_id = await engine.ensure_run_doc()
    assert store.get(f"runs/{run_id}")["blocks"]["full_stack"]["reveal_status"] == "failed"

    store.fail_on = []
    assert await engine.retry_reveal("full_stack")
    assert store.get(f"runs/{run_id}/reveal/full_stack") is not None
    assert store.get(f"runs/{run_id}")["blocks"]["full_stack"]["reveal_status"] == "revealed"


@pytest.mark.asyncio
async def test_failed_trial_writes_are_kept_for_flush(adapter, small_cfg):
    store = FailingStore(fail_on=["/logs/"])
    engine = _engine(store, adapter, small_cfg)
    await engine.start_block("full_stack")
    await _answer(engine, "full_stack", 3)
    assert await engine.flush() == 3
    store.fail_on = []
    assert await engine.flush() == 0
    run_id = await engine.ensure_run_doc()
    assert len(store.list(f"runs/{run_id}/logs")) == 3


@pytest.mark.asyncio
async def test_invalid_responses_are_rejected(store, adapter, small_cfg):
    engine = _engine(store, adapter, small_cfg)
    with pytest.raises(SEPError):
        await engine.prepare_trial("full_stack")
    await engine.start_block("full_stack")
    with pytest.raises(SEPError):
        await engine.respond("full_stack", 0)
    await engine.prepare_trial("full_stack")
    for bad in (-1, 5, True):
        with pytest.raises(SEPError):
            await engine.respond("full_stack", bad)
    with pytest.raises(SEPError):
        await engine.start_block("full_stack")
    with pytest.raises(SEPError):
        await engine.finish()


@pytest.mark.asyncio
async def test_finish_after_all_blocks(store, adapter, small_cfg):
    engine = _engine(store, adapter, small_cfg)
    for block_id in small_cfg.trials_per_block:
        await engine.start_block(block_id)
        await _answer(engine, block_id, 10)
    agg = await engine.finish()
    assert agg.completed and not agg.exited_early
    assert agg.total_trials == 20
    doc = engine.session_document()
    assert len(doc["full_stack"]["trialResults"]) == 10
    assert len(doc["client_local"]["trialResults"]) == 10

    with pytest.raises(SEPError) as exc_info:
        await engine.exit_early("participant quit")
    assert exc_info.value.code == SEP_E_BLOCK_STATE
    assert not engine.aggregate.exited_early


@pytest.mark.asyncio
async def test_hmac_remap_session_is_verifiable(store, adapter, small_cfg):
    authority = RemapKeyAuthority(b"test-master-secret")
    engine = _engine(store, adapter, replace(small_cfg, remap_mode="hmac"), remap=HmacRemap(authority))
    await engine.start_block("full_stack")
    records = await _answer(engine, "full_stack", 10)

    run_id = await engine.ensure_run_doc()
    commit = store.get(f"runs/{run_id}/commits/full_stack")
    reveal = store.get(f"runs/{run_id}/reveal/full_stack")
    assert commit["remap_mode"] == "hmac"
    key = bytes.fromhex(reveal["remap_key_hex"])
    assert verify_key_commit(key, commit["remap_commit_hash"])

    for (_, row), record in zip(store.list(f"runs/{run_id}/logs"), records):
        assert row["remap_mode"] == "hmac"
        check = verify_remap_row(key, row)
        assert check.ok, check.reason
        assert row["target_index_0based"] == (record.assignment.subject_index + record.remap_r) % 5
        assert row["ghost_index_0based"] == (record.assignment.decoy_index + record.remap_r) % 5


def test_session_engine_rejects_oversized_alphabet(small_cfg):
    with pytest.raises(SEPError):
        SessionEngine(MemoryStore(), EntropyAdapter(), replace(small_cfg, symbol_count=6))
