"""Sealed Envelope Protocol engine.

Commit-reveal trial assignment for forced-choice experiments:

- Entropy adapter with fail-closed byte sources
- Per-block commitment tapes (SHA-256 over salt + byte pairs)
- Unbiased per-trial layouts and a pure byte -> index resolver
- Optional HMAC index remap with per-trial proofs
- Session engine with staleness detection and early exit
- Statistical audit (pooled and session-weighted) and offline bundles

Convenience imports
------------------
The package avoids heavy import-time side effects (scipy, FastAPI). These are
available as top-level imports and are loaded lazily:

    from sep_engine import SessionEngine, EngineConfig, create_app
    from sep_engine import resolve, shuffle_layout, build_tape, verify_reveal
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


# Prefer repo-local pyproject version (tests), otherwise a hardcoded default.
__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "EngineConfig",
    "SEPError",
    "SessionEngine",
    "EntropyAdapter",
    "MemoryStore",
    "SQLiteStore",
    "build_tape",
    "verify_reveal",
    "resolve",
    "shuffle_layout",
    "audit_sessions",
    "build_bundle",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "EngineConfig": ("sep_engine.config", "EngineConfig"),
    "SEPError": ("sep_engine.errors", "SEPError"),
    "SessionEngine": ("sep_engine.session", "SessionEngine"),
    "EntropyAdapter": ("sep_engine.entropy", "EntropyAdapter"),
    "MemoryStore": ("sep_engine.store", "MemoryStore"),
    "SQLiteStore": ("sep_engine.store", "SQLiteStore"),
    "build_tape": ("sep_engine.tape", "build_tape"),
    "verify_reveal": ("sep_engine.tape", "verify_reveal"),
    "resolve": ("sep_engine.assignment", "resolve"),
    "shuffle_layout": ("sep_engine.assignment", "shuffle_layout"),
    "audit_sessions": ("sep_engine.audit", "audit_sessions"),
    "build_bundle": ("sep_engine.bundle", "build_bundle"),
    "create_app": ("sep_engine.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'sep_engine' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
