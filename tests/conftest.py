from dataclasses import replace
from typing import Dict, List, Optional

import pytest

from sep_engine.config import EngineConfig
from sep_engine.entropy import SOURCE_LOCAL, EntropyAdapter, EntropySource, RawByteBatch
from sep_engine.errors import SEP_E_ENTROPY_UNAVAILABLE, SEP_E_STORE, sep_error
from sep_engine.store import MemoryStore


class ScriptedSource(EntropySource):
    """Deterministic bytes for tests: cycles through ``pattern``."""

    def __init__(self, pattern: List[int], kind: str = SOURCE_LOCAL, fail: bool = False):
        self.pattern = list(pattern)
        self.kind = kind
        self.fail = fail
        self.calls: List[int] = []

    def fetch(self, n: int) -> RawByteBatch:
        self.calls.append(n)
        if self.fail:
            raise sep_error(SEP_E_ENTROPY_UNAVAILABLE, "scripted outage", http_status=503, source=self.kind)
        out = [self.pattern[i % len(self.pattern)] for i in range(n)]
        return RawByteBatch(tuple(out), self.kind, "2026-01-13T00:00:00.000Z")


class FailingStore(MemoryStore):
    """MemoryStore that refuses writes under selected path fragments."""

    def __init__(self, fail_on: Optional[List[str]] = None):
        super().__init__()
        self.fail_on = list(fail_on or [])

    def set(self, path: str, data: Dict, *, merge: bool = False) -> None:
        if any(frag in path for frag in self.fail_on):
            raise sep_error(SEP_E_STORE, f"write refused: {path}", retryable=True, http_status=503)
        super().set(path, data, merge=merge)


async def no_wait(_s: float) -> None:
    return None


@pytest.fixture
def small_cfg() -> EngineConfig:
    """Two short blocks drawn from the local source."""
    return replace(
        EngineConfig(),
        trials_per_block={"full_stack": 10, "client_local": 10},
        block_sources={"full_stack": SOURCE_LOCAL, "client_local": SOURCE_LOCAL},
    )


@pytest.fixture
def scripted_source() -> ScriptedSource:
    return ScriptedSource([7, 12, 200, 33, 5, 91, 128, 64, 250, 3, 17])


@pytest.fixture
def adapter(scripted_source) -> EntropyAdapter:
    return EntropyAdapter({SOURCE_LOCAL: scripted_source})


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
