"""
Hashing, HMAC and encoding helpers shared by the tape builder, the remap key
authority and the offline verifier.

Every digest the engine publishes is SHA-256. HMAC keys are raw bytes; their
hex form is only used on the wire.
"""

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Optional


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as RFC 3339 with millisecond precision and 'Z'."""
    return _now_utc().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    s = str(ts).strip()
    if not s:
        return None
    # Accept RFC 3339 'Z' suffix.
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def hmac_sha256_hex(key: bytes, message: bytes) -> str:
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(str(a).encode("utf-8"), str(b).encode("utf-8"))


def random_salt(n: int = 16) -> bytes:
    if n < 16:
        raise ValueError("salt must be at least 16 bytes")
    return secrets.token_bytes(n)


def b64_encode(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64_decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(bytes(data)).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON for stable hashing and HMAC contexts.

    - sort_keys: deterministic key order
    - separators: no whitespace ambiguity
    - allow_nan=False: strict JSON only
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)

