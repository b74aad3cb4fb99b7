"""Publish tape commitments and reveals to the document store.

``publish_commitment`` writes the digest only and raises ``SEP_E_COMMIT_WRITE``
on failure; the caller decides (via ``commit_policy``) whether the block may
still start. ``reveal_tape`` never raises for write failures: a missing reveal
is an audit gap, not a reason to lose the participant's run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import SEPError, SEP_E_BLOCK_STATE, SEP_E_COMMIT_WRITE, sep_error
from .logs import logger
from .metrics import record_commitment, record_reveal
from .store import DocumentStore, document_path
from .tape import CommitmentTape


def commit_path(run_id: str, block_id: str) -> str:
    return document_path("runs", run_id, "commits", block_id)


def reveal_path(run_id: str, block_id: str) -> str:
    return document_path("runs", run_id, "reveal", block_id)


@dataclass(frozen=True)
class RevealResult:
    ok: bool
    path: str
    error: Optional[str] = None


def publish_commitment(
    store: DocumentStore,
    run_id: str,
    tape: CommitmentTape,
    *,
    session_id: Optional[str] = None,
) -> str:
    """Persist digest + metadata for ``tape``. Returns the digest."""
    if tape.block_id is None:
        raise sep_error(SEP_E_BLOCK_STATE, "tape has no block id")
    if tape.revealed:
        raise sep_error(SEP_E_BLOCK_STATE, "cannot commit to an already revealed tape", block=tape.block_id)
    path = commit_path(run_id, tape.block_id)
    try:
        store.set(path, tape.commitment_document(session_id), merge=True)
    except (SEPError, OSError) as e:
        record_commitment("failed")
        logger.warning("commitment write failed: run=%s block=%s source=%s error=%s", run_id, tape.block_id, tape.source, e)
        raise sep_error(
            SEP_E_COMMIT_WRITE,
            "commitment write failed",
            retryable=True,
            http_status=503,
            block=tape.block_id,
            source=tape.source,
        ) from e
    record_commitment("published")
    logger.info("commitment published: run=%s block=%s digest=%s trials=%d", run_id, tape.block_id, tape.digest, tape.length)
    return tape.digest


def reveal_tape(store: DocumentStore, run_id: str, tape: CommitmentTape) -> RevealResult:
    """Write salt + pairs for a completed block. Idempotent and non-fatal."""
    if tape.block_id is None:
        raise sep_error(SEP_E_BLOCK_STATE, "tape has no block id")
    path = reveal_path(run_id, tape.block_id)
    try:
        store.set(path, tape.reveal_document(), merge=False)
    except (SEPError, OSError) as e:
        record_reveal("failed")
        logger.warning("reveal write failed: run=%s block=%s source=%s error=%s", run_id, tape.block_id, tape.source, e)
        return RevealResult(False, path, str(e))
    tape.revealed = True
    record_reveal("written")
    logger.info("tape revealed: run=%s block=%s trials=%d", run_id, tape.block_id, tape.length)
    return RevealResult(True, path)
