"""Commitment Tape Builder.

A tape is one block's worth of pre-drawn randomness: ``N`` byte pairs
``(subject_i, decoy_i)`` plus a fresh salt. The digest

    SHA-256(salt || s_1 d_1 s_2 d_2 ... s_N d_N)

is published before the first trial of the block; the salt and the pairs are
only written once the block is complete.

The flat, interleaved pair bytes are what get revealed (``tape_pairs_b64``), so
any verifier can recompute the digest from the reveal document alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .crypto import b64_decode, b64_encode, constant_time_equals, now_iso, random_salt, sha256_hex
from .entropy import RawByteBatch
from .errors import SEP_E_TAPE_EXHAUSTED, SEP_E_TAPE_INVALID, sep_error

COMMIT_ALGO = "SHA-256"
BYTES_PER_TRIAL = 2

BytePair = Tuple[int, int]


def pairs_to_bytes(pairs: Sequence[BytePair]) -> bytes:
    out = bytearray()
    for s, d in pairs:
        out.append(int(s) & 0xFF)
        out.append(int(d) & 0xFF)
    return bytes(out)


def bytes_to_pairs(data: bytes) -> List[BytePair]:
    if len(data) % BYTES_PER_TRIAL != 0:
        raise sep_error(SEP_E_TAPE_INVALID, "tape byte length must be even", length=len(data))
    return [(data[i], data[i + 1]) for i in range(0, len(data), BYTES_PER_TRIAL)]


def compute_digest(salt: bytes, pairs: Sequence[BytePair]) -> str:
    return sha256_hex(bytes(salt) + pairs_to_bytes(pairs))


@dataclass
class CommitmentTape:
    """One block's byte pairs, salt and digest.

    ``revealed`` flips once the reveal document has been produced; the tape
    object itself never changes its pairs or salt after construction.
    """

    pairs: Tuple[BytePair, ...]
    salt: bytes
    digest: str
    created_iso: str
    source: str
    block_id: Optional[str] = None
    batch_id: Optional[str] = None
    revealed: bool = field(default=False, compare=False)

    @property
    def length(self) -> int:
        return len(self.pairs)

    def commitment_document(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Digest and metadata only. Never contains the salt or the pairs."""
        return {
            "session_id": session_id,
            "block_id": self.block_id,
            "commit_algo": COMMIT_ALGO,
            "commit_hash_hex": self.digest,
            "created_iso": self.created_iso,
            "rng_source": self.source,
            "batch_id": self.batch_id,
            "tape_length_trials": self.length,
        }

    def reveal_document(self) -> Dict[str, Any]:
        return {
            "block_id": self.block_id,
            "commit_algo": COMMIT_ALGO,
            "commit_hash_hex": self.digest,
            "salt_hex": self.salt.hex(),
            "tape_pairs_b64": b64_encode(pairs_to_bytes(self.pairs)),
            "bytes_per_trial": BYTES_PER_TRIAL,
            "tape_length_trials": self.length,
            "created_iso": self.created_iso,
            "rng_source": self.source,
        }


def build_tape(
    batch: RawByteBatch,
    *,
    block_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    salt: Optional[bytes] = None,
    salt_bytes: int = 16,
) -> CommitmentTape:
    """Partition an interleaved batch into pairs in arrival order and commit to it."""
    values = list(batch.values)
    if not values or len(values) % BYTES_PER_TRIAL != 0:
        raise sep_error(SEP_E_TAPE_INVALID, "batch must hold a positive even number of bytes", length=len(values), block=block_id)
    pairs = tuple((values[i], values[i + 1]) for i in range(0, len(values), BYTES_PER_TRIAL))
    return _commit(pairs, batch.source, block_id=block_id, batch_id=batch_id, salt=salt, salt_bytes=salt_bytes)


def _commit(
    pairs: Tuple[BytePair, ...],
    source: str,
    *,
    block_id: Optional[str],
    batch_id: Optional[str],
    salt: Optional[bytes],
    salt_bytes: int,
) -> CommitmentTape:
    if salt is None:
        salt = random_salt(salt_bytes)
    if len(salt) < 16:
        raise sep_error(SEP_E_TAPE_INVALID, "salt must be at least 16 bytes", block=block_id)
    for s, d in pairs:
        if not (0 <= s <= 255 and 0 <= d <= 255):
            raise sep_error(SEP_E_TAPE_INVALID, "tape byte out of range", block=block_id)
    return CommitmentTape(
        pairs=pairs,
        salt=bytes(salt),
        digest=compute_digest(salt, pairs),
        created_iso=now_iso(),
        source=source,
        block_id=block_id,
        batch_id=batch_id,
    )


@dataclass(frozen=True)
class Envelope:
    trial_index: int
    raw_byte: int
    ghost_raw_byte: int

    def to_dict(self) -> Dict[str, int]:
        return {"trial_index": self.trial_index, "raw_byte": self.raw_byte, "ghost_raw_byte": self.ghost_raw_byte}


@dataclass(frozen=True)
class EnvelopeBatch:
    """All envelopes for one block, drawn in a single fetch of ``2N`` bytes.

    Subject bytes are the first ``N`` bytes of the draw and decoy bytes the
    next ``N``, so the two streams never share a byte position.
    """

    batch_id: str
    block_id: str
    rng_source: str
    server_time: Optional[str]
    envelopes: Tuple[Envelope, ...]

    @classmethod
    def from_batch(cls, batch: RawByteBatch, *, block_id: str, total: int) -> "EnvelopeBatch":
        if len(batch) < 2 * total:
            raise sep_error(SEP_E_TAPE_INVALID, "envelope batch too short", have=len(batch), need=2 * total, block=block_id)
        subject = batch.values[:total]
        decoy = batch.values[total:2 * total]
        iso = batch.server_time or now_iso()
        envelopes = tuple(Envelope(i + 1, subject[i], decoy[i]) for i in range(total))
        return cls(f"{block_id}-{iso}", block_id, batch.source, iso, envelopes)

    @property
    def total(self) -> int:
        return len(self.envelopes)

    def to_tape(self, *, salt: Optional[bytes] = None, salt_bytes: int = 16) -> CommitmentTape:
        pairs = tuple((e.raw_byte, e.ghost_raw_byte) for e in self.envelopes)
        return _commit(pairs, self.rng_source, block_id=self.block_id, batch_id=self.batch_id, salt=salt, salt_bytes=salt_bytes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "batch_id": self.batch_id,
            "block": self.block_id,
            "rng_source": self.rng_source,
            "server_time": self.server_time,
            "total": self.total,
            "envelopes": [e.to_dict() for e in self.envelopes],
        }


class TapeCursor:
    """FIFO consumption of a tape's pairs, one per trial."""

    def __init__(self, tape: CommitmentTape):
        self.tape = tape
        self._pos = 0

    @property
    def consumed(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return self.tape.length - self._pos

    def peek(self) -> BytePair:
        """The next pair, without consuming it."""
        if self._pos >= self.tape.length:
            raise sep_error(SEP_E_TAPE_EXHAUSTED, "tape has no pairs left", block=self.tape.block_id, length=self.tape.length)
        return self.tape.pairs[self._pos]

    def next_pair(self) -> BytePair:
        pair = self.peek()
        self._pos += 1
        return pair


@dataclass(frozen=True)
class TapeCheck:
    ok: bool
    recomputed: Optional[str]
    expected: Optional[str]
    pairs: Tuple[BytePair, ...] = ()
    reason: str = ""


def verify_reveal(reveal: Dict[str, Any], published_digest: Optional[str] = None) -> TapeCheck:
    """Recompute ``SHA-256(salt || pairs)`` from a reveal document.

    ``published_digest`` is the digest from the commitment document; when
    omitted the digest embedded in the reveal is used.
    """
    expected = published_digest or reveal.get("commit_hash_hex")
    if not expected:
        return TapeCheck(False, None, None, reason="no published digest")
    algo = str(reveal.get("commit_algo") or COMMIT_ALGO)
    if algo.upper() != COMMIT_ALGO:
        return TapeCheck(False, None, expected, reason=f"unsupported commit_algo {algo}")
    try:
        salt = bytes.fromhex(str(reveal.get("salt_hex") or ""))
        raw = b64_decode(str(reveal.get("tape_pairs_b64") or ""))
    except ValueError as e:
        return TapeCheck(False, None, expected, reason=f"undecodable reveal: {e}")
    if len(salt) < 16:
        return TapeCheck(False, None, expected, reason="salt shorter than 16 bytes")
    if len(raw) % BYTES_PER_TRIAL != 0:
        return TapeCheck(False, None, expected, reason="odd tape byte length")
    declared = reveal.get("tape_length_trials")
    if declared is not None:
        try:
            declared = int(declared)
        except (TypeError, ValueError):
            return TapeCheck(False, None, expected, reason=f"invalid tape_length_trials {declared!r}")
    if declared is not None and declared != len(raw) // BYTES_PER_TRIAL:
        return TapeCheck(False, None, expected, reason="tape_length_trials does not match tape bytes")
    recomputed = sha256_hex(salt + raw)
    pairs = tuple(bytes_to_pairs(raw))
    if not constant_time_equals(recomputed, str(expected).lower()):
        return TapeCheck(False, recomputed, expected, pairs, reason="digest mismatch")
    return TapeCheck(True, recomputed, expected, pairs)
