import asyncio
import json
from pathlib import Path

from conftest import no_wait
from sep_engine.bundle import build_bundle, write_bundle
from sep_engine.config import EngineConfig
from sep_engine.entropy import EntropyAdapter
from sep_engine.session import SessionEngine
from sep_engine.store import MemoryStore


async def _complete_run(store, cfg):
    engine = SessionEngine(store, EntropyAdapter(), cfg, sleep=no_wait, participant_id="p-9")
    for block_id in cfg.trials_per_block:
        await engine.start_block(block_id)
        for _ in range(cfg.trials_for(block_id)):
            await engine.prepare_trial(block_id)
            await engine.respond(block_id, 0, response_time_ms=350.0)
    await engine.finish()


def _bundle(small_cfg):
    store = MemoryStore()
    asyncio.run(_complete_run(store, small_cfg))
    return build_bundle(store)


def test_schema_validate_bundle_and_its_documents(small_cfg, tmp_path: Path):
    from sep_schema_validate import validate_path

    bundle = _bundle(small_cfg)
    for name in ("bundle.json", "bundle.zip"):
        path = Path(write_bundle(bundle, str(tmp_path / name)))
        ok, msgs = validate_path(path)
        assert ok, [m.detail for m in msgs if not m.ok]
        assert msgs[-1].code == "BUNDLE_DOCUMENTS_OK"


def test_schema_validate_single_documents(small_cfg, tmp_path: Path):
    from sep_schema_validate import validate_path

    run = _bundle(small_cfg)["runs"][0]
    docs = {
        "commit_full_stack.json": run["commits"]["full_stack"],
        "reveal_full_stack.json": run["reveals"]["full_stack"],
        "sealed_1.json": next(iter(run["sealed_envelopes"].values())),
        "trials.json": run["logs"],
        "run.json": run["session"],
        "config.json": EngineConfig().to_dict(),
    }
    for name, doc in docs.items():
        p = tmp_path / name
        p.write_text(json.dumps(doc), encoding="utf-8")
        ok, msgs = validate_path(p)
        assert ok, (name, [m.detail for m in msgs if not m.ok])


def test_commitment_must_not_carry_the_salt(small_cfg, tmp_path: Path):
    from sep_schema_validate import validate_file

    run = _bundle(small_cfg)["runs"][0]
    leaked = dict(run["commits"]["full_stack"], salt_hex=run["reveals"]["full_stack"]["salt_hex"])
    p = tmp_path / "commit.json"
    p.write_text(json.dumps(leaked), encoding="utf-8")
    ok, msgs = validate_file(p)
    assert not ok
    assert all(m.code == "SCHEMA_ERROR" for m in msgs)


def test_schema_validate_rejects_missing_required_fields(tmp_path: Path):
    from sep_schema_validate import validate_file

    # Reveals need the salt, the pairs and the digest
    bad = tmp_path / "reveal.json"
    bad.write_text('{"block_id": "full_stack"}', encoding="utf-8")

    ok, msgs = validate_file(bad, schema_name="reveal")
    assert not ok
    assert any("required" in m.detail.lower() for m in msgs if not m.ok)


def test_shape_detection_and_failure_codes(tmp_path: Path):
    from sep_schema_validate import _detect_schema_name, list_schemas, main, validate_instance, validate_path

    assert _detect_schema_name(Path("x.json"), {"salt_hex": "00"}) == "reveal"
    assert _detect_schema_name(Path("x.json"), {"k_options": 5}) == "sealed_envelope"
    assert _detect_schema_name(Path("x.json"), {"format": "sep-bundle"}) == "bundle"
    assert _detect_schema_name(Path("x.json"), {"unrelated": 1}) is None

    ok, msgs = validate_path(tmp_path / "missing.json")
    assert not ok and msgs[0].code == "NOT_FOUND"
    ok, msgs = validate_path(tmp_path)
    assert not ok and msgs[0].code == "NOT_FOUND"

    broken = tmp_path / "commit.json"
    broken.write_text("{not json", encoding="utf-8")
    ok, msgs = validate_path(broken)
    assert not ok and msgs[0].code == "JSON_PARSE_ERROR"

    unknown = tmp_path / "x.json"
    unknown.write_text('{"unrelated": 1}', encoding="utf-8")
    ok, msgs = validate_path(unknown)
    assert not ok and msgs[0].code == "SCHEMA_UNDETECTED"

    ok, msgs = validate_instance({}, schema_name="nope")
    assert not ok and msgs[0].code == "SCHEMA_LOAD_ERROR"
    ok, msgs = validate_instance({}, schema_name="reveal", schemas_dir=tmp_path)
    assert not ok and msgs[0].code == "SCHEMA_MISSING"

    assert "trial_record" in list_schemas()
    assert main(["--list-schemas"]) == 0
    assert main([str(unknown)]) == 2
