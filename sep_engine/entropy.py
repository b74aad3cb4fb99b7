"""Entropy Source Adapter.

One contract for every byte generator the engine can draw from:
``fetch_bytes(n, source) -> RawByteBatch`` or a raised ``SEPError``.

Source kinds:
- ``local-secure-random``: the operating system CSPRNG (``secrets``).
- ``hardware-proxy`` / ``quantum-proxy``: an HTTP proxy returning
  ``{"success": true, "bytes": [...], "source": "...", "server_time": "..."}``.

Retry semantics (HTTP sources):
- retryable failures: network errors, HTTP 408/429/5xx
- permanent failures: other non-2xx, malformed payloads, fallback flags
- delay between attempts is ``backoff_s * attempt``

A source never substitutes a weaker generator. A payload that declares itself
a fallback (or degraded / low quality) is a hard failure, not a degraded
success, so the audit trail never records bytes from a source it did not ask for.
"""

from __future__ import annotations

import abc
import asyncio
import json
import os
import secrets
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .crypto import now_iso
from .errors import (
    SEPError,
    sep_error,
    SEP_E_BAD_REQUEST,
    SEP_E_ENTROPY_FALLBACK,
    SEP_E_ENTROPY_HTTP,
    SEP_E_ENTROPY_MALFORMED,
    SEP_E_ENTROPY_SHORT,
    SEP_E_ENTROPY_UNAVAILABLE,
)
from .logs import logger
from .metrics import record_entropy_fetch


SOURCE_HARDWARE = "hardware-proxy"
SOURCE_QUANTUM = "quantum-proxy"
SOURCE_LOCAL = "local-secure-random"
SOURCE_KINDS = (SOURCE_HARDWARE, SOURCE_QUANTUM, SOURCE_LOCAL)

MAX_BYTES_PER_CALL = 1024

# Payload keys that mark bytes as coming from something other than the
# requested generator.
_FALLBACK_FLAGS = ("fallback", "is_fallback", "degraded", "low_quality", "pseudo")


@dataclass(frozen=True)
class RawByteBatch:
    """An immutable batch of raw bytes from one named source."""

    values: Tuple[int, ...]
    source: str
    server_time: Optional[str] = None

    def __len__(self) -> int:
        return len(self.values)

    def to_dict(self) -> Dict[str, Any]:
        return {"bytes": list(self.values), "source": self.source, "server_time": self.server_time}


class EntropySource(abc.ABC):
    """A named generator of raw bytes."""

    kind: str = ""

    @abc.abstractmethod
    def fetch(self, n: int) -> RawByteBatch:
        raise NotImplementedError


class LocalSecureSource(EntropySource):
    """Operating-system CSPRNG."""

    kind = SOURCE_LOCAL

    def fetch(self, n: int) -> RawByteBatch:
        _check_n(n, limit=None)
        return RawByteBatch(tuple(secrets.token_bytes(n)), self.kind, now_iso())


class CircuitBreaker:
    """Open the circuit after ``fail_threshold`` consecutive failures.

    While open, calls are refused for ``open_s`` seconds without touching the
    network. A success closes the circuit.
    """

    def __init__(self, fail_threshold: int = 3, open_s: float = 30.0, clock=time.monotonic):
        self.fail_threshold = int(fail_threshold)
        self.open_s = float(open_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._fails = 0
        self._open_until = 0.0

    def allow(self) -> bool:
        with self._lock:
            return self._clock() >= self._open_until

    def record_success(self) -> None:
        with self._lock:
            self._fails = 0
            self._open_until = 0.0

    def record_failure(self) -> None:
        with self._lock:
            self._fails += 1
            if self._fails >= self.fail_threshold:
                self._open_until = self._clock() + self.open_s
                self._fails = 0


class HttpEntropySource(EntropySource):
    """Entropy proxy reached over HTTP GET ``{url}?n=<count>``."""

    def __init__(
        self,
        url: str,
        *,
        kind: str = SOURCE_QUANTUM,
        timeout_s: float = 5.0,
        max_attempts: int = 3,
        backoff_s: float = 0.25,
        chunk_size: int = MAX_BYTES_PER_CALL,
        breaker: Optional[CircuitBreaker] = None,
    ):
        if kind not in SOURCE_KINDS:
            raise sep_error(SEP_E_BAD_REQUEST, f"unknown source kind: {kind}")
        self.url = url
        self.kind = kind
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_s = float(backoff_s)
        self.chunk_size = max(1, min(MAX_BYTES_PER_CALL, int(chunk_size)))
        self.breaker = breaker or CircuitBreaker()

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status in (408, 429) or (500 <= status <= 599)

    def fetch(self, n: int) -> RawByteBatch:
        _check_n(n, limit=None)
        out: List[int] = []
        server_time: Optional[str] = None
        label = self.kind
        while len(out) < n:
            want = min(self.chunk_size, n - len(out))
            chunk, label, server_time = self._fetch_chunk(want)
            out.extend(chunk)
        return RawByteBatch(tuple(out), label, server_time)

    def _request_url(self, n: int) -> str:
        parts = urllib.parse.urlsplit(self.url)
        query = urllib.parse.parse_qsl(parts.query)
        query.append(("n", str(n)))
        return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))

    def _fetch_chunk(self, n: int) -> Tuple[List[int], str, Optional[str]]:
        if not self.breaker.allow():
            raise sep_error(
                SEP_E_ENTROPY_UNAVAILABLE,
                "entropy source circuit open",
                retryable=True,
                http_status=503,
                source=self.kind,
            )

        url = self._request_url(n)
        last_err: Optional[SEPError] = None
        for attempt in range(1, self.max_attempts + 1):
            req = urllib.request.Request(url, headers={"Accept": "application/json", "Cache-Control": "no-store"})
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                    status = int(getattr(resp, "status", 200))
                    body = resp.read()
                if not 200 <= status <= 299:
                    raise urllib.error.HTTPError(url, status, f"HTTP {status}", None, None)
            except urllib.error.HTTPError as e:
                status = int(getattr(e, "code", 0) or 0)
                retryable = self._is_retryable_status(status)
                last_err = sep_error(
                    SEP_E_ENTROPY_HTTP,
                    f"entropy source returned HTTP {status}",
                    retryable=retryable,
                    http_status=503,
                    source=self.kind,
                    upstream_status=status,
                    attempts=attempt,
                )
                if retryable and attempt < self.max_attempts:
                    logger.warning("entropy fetch attempt %d/%d failed: source=%s status=%d", attempt, self.max_attempts, self.kind, status)
                    time.sleep(self.backoff_s * attempt)
                    continue
                break
            except (urllib.error.URLError, OSError) as e:
                last_err = sep_error(
                    SEP_E_ENTROPY_UNAVAILABLE,
                    "entropy source unreachable",
                    retryable=True,
                    http_status=503,
                    source=self.kind,
                    attempts=attempt,
                    error=str(e),
                )
                if attempt < self.max_attempts:
                    logger.warning("entropy fetch attempt %d/%d failed: source=%s error=%s", attempt, self.max_attempts, self.kind, e)
                    time.sleep(self.backoff_s * attempt)
                    continue
                break

            # Payload problems are never retried: the upstream answered.
            try:
                values, label, server_time = parse_entropy_payload(body, n, source=self.kind)
            except SEPError:
                self.breaker.record_failure()
                raise
            self.breaker.record_success()
            return values, label, server_time

        self.breaker.record_failure()
        assert last_err is not None
        raise last_err


def parse_entropy_payload(body: bytes, n: int, *, source: str) -> Tuple[List[int], str, Optional[str]]:
    """Validate an entropy proxy response and return its first ``n`` bytes."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise sep_error(SEP_E_ENTROPY_MALFORMED, "entropy payload is not JSON", http_status=502, source=source) from e
    if not isinstance(payload, dict):
        raise sep_error(SEP_E_ENTROPY_MALFORMED, "entropy payload must be an object", http_status=502, source=source)

    if payload.get("success") is not True:
        raise sep_error(
            SEP_E_ENTROPY_UNAVAILABLE,
            "entropy source reported failure",
            retryable=True,
            http_status=503,
            source=source,
            error=str(payload.get("error") or payload.get("detail") or "success=false"),
        )
    for flag in _FALLBACK_FLAGS:
        if payload.get(flag):
            raise sep_error(
                SEP_E_ENTROPY_FALLBACK,
                f"entropy source answered with a fallback generator ({flag})",
                http_status=503,
                source=source,
                upstream_source=payload.get("source"),
            )

    raw = payload.get("bytes")
    if not isinstance(raw, list):
        raise sep_error(SEP_E_ENTROPY_MALFORMED, "entropy payload has no bytes array", http_status=502, source=source)
    values: List[int] = []
    for b in raw:
        if isinstance(b, bool) or not isinstance(b, int) or not 0 <= b <= 255:
            raise sep_error(SEP_E_ENTROPY_MALFORMED, "entropy payload byte out of range", http_status=502, source=source, value=repr(b))
        values.append(b)
    if len(values) < n:
        raise sep_error(SEP_E_ENTROPY_SHORT, "entropy payload too short", http_status=503, source=source, have=len(values), need=n)

    label = str(payload.get("source") or source)
    server_time = payload.get("server_time")
    return values[:n], label, (str(server_time) if server_time else None)


def _check_n(n: int, *, limit: Optional[int]) -> None:
    if isinstance(n, bool) or not isinstance(n, int) or n < 1:
        raise sep_error(SEP_E_BAD_REQUEST, "byte count must be a positive integer", n=repr(n))
    if limit is not None and n > limit:
        raise sep_error(SEP_E_BAD_REQUEST, f"byte count must be <= {limit}", n=n)


class EntropyAdapter:
    """Registry of sources keyed by kind.

    ``fetch_bytes`` fails loudly when the requested kind is not configured.
    """

    def __init__(self, sources: Optional[Mapping[str, EntropySource]] = None):
        self._sources: Dict[str, EntropySource] = dict(sources or {})
        if SOURCE_LOCAL not in self._sources:
            self._sources[SOURCE_LOCAL] = LocalSecureSource()

    def register(self, source: EntropySource, kind: Optional[str] = None) -> None:
        self._sources[kind or source.kind] = source

    def kinds(self) -> List[str]:
        return sorted(self._sources)

    def fetch_bytes(self, n: int, source: str) -> RawByteBatch:
        src = self._sources.get(source)
        if src is None:
            record_entropy_fetch(source, "unconfigured")
            raise sep_error(
                SEP_E_ENTROPY_UNAVAILABLE,
                f"entropy source not configured: {source}",
                http_status=503,
                source=source,
            )
        try:
            batch = src.fetch(n)
        except SEPError as e:
            record_entropy_fetch(source, "error")
            logger.error("entropy fetch failed: source=%s n=%d code=%s", source, n, e.code)
            raise
        if len(batch) != n:
            record_entropy_fetch(source, "short")
            raise sep_error(SEP_E_ENTROPY_SHORT, "entropy source returned wrong length", source=source, have=len(batch), need=n)
        record_entropy_fetch(source, "ok", n)
        logger.debug("entropy fetch ok: source=%s n=%d label=%s", source, n, batch.source)
        return batch

    async def afetch_bytes(self, n: int, source: str) -> RawByteBatch:
        """Async wrapper; the blocking fetch runs in a worker thread."""
        return await asyncio.to_thread(self.fetch_bytes, n, source)


def adapter_from_env(cfg=None) -> EntropyAdapter:
    """Build an adapter from ``SEP_HARDWARE_PROXY_URL`` / ``SEP_QUANTUM_PROXY_URL``."""
    kwargs: Dict[str, Any] = {}
    if cfg is not None:
        kwargs = {
            "timeout_s": cfg.entropy_timeout_s,
            "max_attempts": cfg.entropy_max_attempts,
            "backoff_s": cfg.entropy_backoff_s,
            "chunk_size": cfg.entropy_chunk_size,
        }
    adapter = EntropyAdapter()
    for kind, env in ((SOURCE_HARDWARE, "SEP_HARDWARE_PROXY_URL"), (SOURCE_QUANTUM, "SEP_QUANTUM_PROXY_URL")):
        url = (os.getenv(env) or "").strip()
        if url:
            adapter.register(HttpEntropySource(url, kind=kind, **kwargs))
    return adapter
