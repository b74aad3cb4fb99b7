import json
from dataclasses import replace

import pytest

from sep_engine.config import EngineConfig, load_config
from sep_engine.errors import SEPError, SEP_E_CONFIG


def test_defaults():
    cfg = EngineConfig()
    assert cfg.chance == pytest.approx(0.2)
    assert cfg.trials_for("full_stack") == 30
    assert cfg.source_for("spoon_love") == "quantum-proxy"
    assert cfg.source_for("unknown-block") == "local-secure-random"
    assert cfg.commit_policy == "flag"
    with pytest.raises(SEPError):
        cfg.trials_for("unknown-block")


@pytest.mark.parametrize(
    "field,value",
    [
        ("symbol_count", 1),
        ("round_win_hits", 6),
        ("significance_alpha", 1.0),
        ("redundant_flash_count", 1),
        ("entropy_chunk_size", 4096),
        ("salt_bytes", 8),
        ("commit_policy", "ignore"),
        ("remap_mode", "xor"),
        ("trials_per_block", {"full_stack": 0}),
    ],
)
def test_invalid_values_are_rejected(field, value):
    with pytest.raises(SEPError) as exc_info:
        replace(EngineConfig(), **{field: value})
    assert exc_info.value.code == SEP_E_CONFIG


def test_from_dict_ignores_unknown_keys():
    cfg = EngineConfig.from_dict({"symbol_count": 4, "trials_per_block": {"a": "12"}, "colour": "blue"})
    assert cfg.symbol_count == 4
    assert cfg.chance == pytest.approx(0.25)
    assert cfg.trials_per_block == {"a": 12}
    assert EngineConfig.from_dict(cfg.to_dict()) == cfg


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SEP_COMMIT_POLICY", "fail_closed")
    monkeypatch.setenv("SEP_MOTION_SAFE", "yes")
    monkeypatch.setenv("SEP_ENTROPY_TIMEOUT_S", "2.5")
    monkeypatch.setenv("SEP_TRIALS_PER_BLOCK", '{"full_stack": 10}')
    cfg = EngineConfig.from_env()
    assert cfg.commit_policy == "fail_closed"
    assert cfg.motion_safe is True
    assert cfg.entropy_timeout_s == 2.5
    assert cfg.trials_per_block == {"full_stack": 10}

    monkeypatch.setenv("SEP_ROUND_SIZE", "five")
    with pytest.raises(SEPError):
        EngineConfig.from_env()


def test_load_config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("SEP_COMMIT_POLICY", raising=False)
    p = tmp_path / "config.json"
    p.write_text(json.dumps({"remap_mode": "hmac", "salt_bytes": 32}), encoding="utf-8")
    cfg = load_config(p)
    assert cfg.remap_mode == "hmac" and cfg.salt_bytes == 32

    assert load_config(tmp_path / "missing.json") == load_config(None)

    p.write_text("{broken", encoding="utf-8")
    with pytest.raises(SEPError) as exc_info:
        load_config(p)
    assert "Invalid JSON" in exc_info.value.message

    p.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(SEPError):
        load_config(p)
