"""Stable error taxonomy for the sealed-envelope engine.

This module defines machine-readable error codes and a single exception type
used across the entropy adapter, tape builder, session engine, service and
verifier.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` (block id, trial number, source) for diagnosis.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Entropy sources
SEP_E_ENTROPY_UNAVAILABLE = "SEP_E_ENTROPY_UNAVAILABLE"
SEP_E_ENTROPY_HTTP = "SEP_E_ENTROPY_HTTP"
SEP_E_ENTROPY_MALFORMED = "SEP_E_ENTROPY_MALFORMED"
SEP_E_ENTROPY_FALLBACK = "SEP_E_ENTROPY_FALLBACK"
SEP_E_ENTROPY_SHORT = "SEP_E_ENTROPY_SHORT"

# Tapes / commitments
SEP_E_TAPE_EXHAUSTED = "SEP_E_TAPE_EXHAUSTED"
SEP_E_TAPE_INVALID = "SEP_E_TAPE_INVALID"
SEP_E_COMMIT_WRITE = "SEP_E_COMMIT_WRITE"
SEP_E_REVEAL_WRITE = "SEP_E_REVEAL_WRITE"

# Session / block lifecycle
SEP_E_BLOCK_STATE = "SEP_E_BLOCK_STATE"

# Remap key authority
SEP_E_REMAP_TOKEN = "SEP_E_REMAP_TOKEN"
SEP_E_REMAP_UNCONFIGURED = "SEP_E_REMAP_UNCONFIGURED"

# Generic
SEP_E_BAD_REQUEST = "SEP_E_BAD_REQUEST"
SEP_E_STORE = "SEP_E_STORE"
SEP_E_CONFIG = "SEP_E_CONFIG"


@dataclass
class SEPError(Exception):
    """Base engine exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def sep_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> SEPError:
    return SEPError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def is_entropy_failure(exc: BaseException) -> bool:
    """True for any error raised because bytes could not be obtained."""
    return isinstance(exc, SEPError) and exc.code.startswith("SEP_E_ENTROPY_")
