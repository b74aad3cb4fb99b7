"""Engine configuration.

All timing, sizing and significance constants live on one frozen struct that is
passed into the session engine, the audit engine and the service. Values are
loaded from a JSON file, a dict, or ``SEP_*`` environment variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import SEP_E_CONFIG, sep_error


COMMIT_POLICIES = ("flag", "fail_closed")
REMAP_MODES = ("identity", "hmac")

DEFAULT_TRIALS_PER_BLOCK: Dict[str, int] = {
    "full_stack": 30,
    "spoon_love": 30,
    "client_local": 30,
}

# Block id -> entropy source kind used to draw its tape.
DEFAULT_BLOCK_SOURCES: Dict[str, str] = {
    "full_stack": "hardware-proxy",
    "spoon_love": "quantum-proxy",
    "client_local": "local-secure-random",
}


@dataclass(frozen=True)
class EngineConfig:
    symbol_count: int = 5
    round_size: int = 5
    round_win_hits: int = 3
    flash_duration_ms: int = 85
    inter_stimulus_interval_ms: int = 20
    significance_alpha: float = 0.05
    redundant_flash_count: int = 2
    motion_safe: bool = False

    trials_per_block: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TRIALS_PER_BLOCK))
    block_sources: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BLOCK_SOURCES))

    entropy_max_attempts: int = 3
    entropy_backoff_s: float = 0.25
    entropy_timeout_s: float = 5.0
    entropy_chunk_size: int = 1024

    salt_bytes: int = 16
    commit_policy: str = "flag"
    remap_mode: str = "identity"

    def __post_init__(self) -> None:
        if self.symbol_count < 2:
            raise sep_error(SEP_E_CONFIG, "symbol_count must be >= 2", symbol_count=self.symbol_count)
        if self.round_size < 1:
            raise sep_error(SEP_E_CONFIG, "round_size must be >= 1", round_size=self.round_size)
        if not 0 < self.round_win_hits <= self.round_size:
            raise sep_error(SEP_E_CONFIG, "round_win_hits must be in 1..round_size", round_win_hits=self.round_win_hits)
        if not 0.0 < self.significance_alpha < 1.0:
            raise sep_error(SEP_E_CONFIG, "significance_alpha must be in (0, 1)", alpha=self.significance_alpha)
        if self.flash_duration_ms < 0 or self.inter_stimulus_interval_ms < 0:
            raise sep_error(SEP_E_CONFIG, "flash timings must be non-negative")
        if self.redundant_flash_count < 2:
            raise sep_error(SEP_E_CONFIG, "redundant_flash_count must be >= 2")
        if self.entropy_max_attempts < 1:
            raise sep_error(SEP_E_CONFIG, "entropy_max_attempts must be >= 1")
        if not 1 <= self.entropy_chunk_size <= 1024:
            raise sep_error(SEP_E_CONFIG, "entropy_chunk_size must be in 1..1024")
        if self.salt_bytes < 16:
            raise sep_error(SEP_E_CONFIG, "salt_bytes must be >= 16", salt_bytes=self.salt_bytes)
        if self.commit_policy not in COMMIT_POLICIES:
            raise sep_error(SEP_E_CONFIG, f"commit_policy must be one of {COMMIT_POLICIES}", commit_policy=self.commit_policy)
        if self.remap_mode not in REMAP_MODES:
            raise sep_error(SEP_E_CONFIG, f"remap_mode must be one of {REMAP_MODES}", remap_mode=self.remap_mode)
        for block_id, n in self.trials_per_block.items():
            if int(n) < 1:
                raise sep_error(SEP_E_CONFIG, "trials_per_block values must be >= 1", block=block_id)

    @property
    def chance(self) -> float:
        """Chance baseline p0 = 1/K."""
        return 1.0 / self.symbol_count

    def trials_for(self, block_id: str) -> int:
        if block_id not in self.trials_per_block:
            raise sep_error(SEP_E_CONFIG, f"unknown block id: {block_id}", block=block_id)
        return int(self.trials_per_block[block_id])

    def source_for(self, block_id: str) -> str:
        return self.block_sources.get(block_id, "local-secure-random")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in (data or {}).items() if k in known}
        if "trials_per_block" in kwargs:
            kwargs["trials_per_block"] = {str(k): int(v) for k, v in dict(kwargs["trials_per_block"]).items()}
        if "block_sources" in kwargs:
            kwargs["block_sources"] = {str(k): str(v) for k, v in dict(kwargs["block_sources"]).items()}
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise sep_error(SEP_E_CONFIG, f"invalid configuration: {e}") from e

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """Overlay SEP_* environment variables onto ``base`` (or defaults)."""
        cfg = base or cls()
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f"SEP_{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            raw = raw.strip()
            current = getattr(cfg, f.name)
            try:
                if isinstance(current, bool):
                    overrides[f.name] = raw.lower() in ("1", "true", "yes", "on")
                elif isinstance(current, int):
                    overrides[f.name] = int(raw)
                elif isinstance(current, float):
                    overrides[f.name] = float(raw)
                elif isinstance(current, dict):
                    overrides[f.name] = json.loads(raw)
                else:
                    overrides[f.name] = raw
            except (ValueError, json.JSONDecodeError) as e:
                raise sep_error(SEP_E_CONFIG, f"invalid value for SEP_{f.name.upper()}: {raw!r}") from e
        if not overrides:
            return cfg
        return replace(cfg, **overrides)


def load_config(config_path: Optional[Path]) -> EngineConfig:
    """Load configuration from a JSON file, then apply environment overrides.

    On invalid JSON, raises a clear error rather than silently using defaults.
    """
    data: Dict[str, Any] = {}
    if config_path and Path(config_path).exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise sep_error(
                SEP_E_CONFIG,
                f"Invalid JSON in config file '{config_path}': {e}. Please check the config file syntax.",
            ) from e
        if not isinstance(data, dict):
            raise sep_error(SEP_E_CONFIG, f"Config file '{config_path}' must contain a JSON object")
    return EngineConfig.from_env(EngineConfig.from_dict(data))
