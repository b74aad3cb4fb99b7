"""Index-remap strategies.

The resolver produces base indices. A remap strategy may rotate both indices
by the same amount ``r`` before they are logged:

    target = (base_target + r) % K
    decoy  = (base_decoy  + r) % K

Two strategies are provided:

- ``IdentityRemap``: ``r = 0``, no proof. Direct modulo mapping.
- ``HmacRemap``: ``r`` comes from a stateless key authority. Per block the
  authority issues a signed commit token and publishes ``SHA-256(K)`` where

      K = HMAC(master, "K-derivation|v1|{session}|{block}|{nonce}")

  Per trial ``r = HMAC(K, ctx)[0] % K`` and the proof is the first 8 bytes of
  ``HMAC(K, ctx + "|r=" + r)`` in hex. After the block the authority reveals
  ``K``; anyone can then check ``SHA-256(K)`` against the commit hash and
  recompute every ``r`` and proof offline.

The authority holds no state: everything it needs is in the signed token.
"""

from __future__ import annotations

import abc
import json
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .assignment import ALPHABET, TrialAssignment
from .crypto import (
    b64url_decode,
    b64url_encode,
    canonical_json_dumps,
    constant_time_equals,
    hmac_sha256,
    hmac_sha256_hex,
    sha256_hex,
)
from .errors import SEP_E_BAD_REQUEST, SEP_E_REMAP_TOKEN, SEP_E_REMAP_UNCONFIGURED, sep_error

TOKEN_VERSION = 1
TOKEN_TTL_MS = 2 * 60 * 60 * 1000
PROOF_BYTES = 8


@dataclass(frozen=True)
class RemapContext:
    """Per-trial input to the HMAC remap. Serialised as canonical JSON."""

    session_id: str
    block: str
    trial_index: int
    selected_index: int
    options: Sequence[str]
    raw_byte: int
    press_bucket_ms: int = 0

    def to_json(self) -> str:
        return canonical_json_dumps({
            "v": TOKEN_VERSION,
            "session_id": self.session_id,
            "block": self.block,
            "trial_index": int(self.trial_index),
            "press_bucket_ms": int(self.press_bucket_ms),
            "selected_index": int(self.selected_index),
            "options": list(self.options),
            "raw_byte": int(self.raw_byte),
            "purpose": "target",
        })

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RemapContext":
        return cls(
            session_id=str(row["session_id"]),
            block=str(row.get("block") or row.get("block_type")),
            trial_index=int(row["trial_index"]),
            selected_index=int(row["selected_index"]),
            options=list(row.get("options") or row.get("option_ids") or []),
            raw_byte=int(row["raw_byte"]),
            press_bucket_ms=int(row.get("press_bucket_ms") or 0),
        )


def compute_remap(key: bytes, ctx: RemapContext, k: int = len(ALPHABET)) -> "RemapValue":
    """Recompute ``r`` and its proof from the block key."""
    msg = ctx.to_json()
    r = hmac_sha256(key, msg.encode("utf-8"))[0] % k
    proof = hmac_sha256(key, f"{msg}|r={r}".encode("utf-8"))[:PROOF_BYTES].hex()
    return RemapValue(r=r, proof=proof)


def derive_block_key(master: bytes, session_id: str, block: str, nonce: str) -> bytes:
    return hmac_sha256(master, f"K-derivation|v{TOKEN_VERSION}|{session_id}|{block}|{nonce}".encode("utf-8"))


@dataclass(frozen=True)
class RemapValue:
    r: int
    proof: Optional[str] = None


@dataclass(frozen=True)
class CommitTicket:
    commit_token: str
    commit_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "commit_token": self.commit_token, "commit_hash": self.commit_hash}


@dataclass(frozen=True)
class KeyReveal:
    key_hex: str
    commit_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "K": self.key_hex, "commit_hash": self.commit_hash}


class RemapKeyAuthority:
    """Stateless issuer of per-block remap keys."""

    def __init__(self, master_secret: bytes, *, clock: Callable[[], float] = time.time):
        if not master_secret:
            raise sep_error(SEP_E_REMAP_UNCONFIGURED, "HMAC master secret missing", http_status=500)
        self._master = bytes(master_secret)
        self._clock = clock

    @classmethod
    def from_env(cls, var: str = "SEP_HMAC_MASTER_SECRET") -> "RemapKeyAuthority":
        secret = os.getenv(var, "")
        if not secret:
            raise sep_error(SEP_E_REMAP_UNCONFIGURED, f"{var} is not set", http_status=500)
        return cls(secret.encode("utf-8"))

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue_commit(self, session_id: str, block: str) -> CommitTicket:
        if not session_id or not block:
            raise sep_error(SEP_E_BAD_REQUEST, "missing session_id or block")
        nonce = secrets.token_hex(16)
        payload = {
            "v": TOKEN_VERSION,
            "session_id": session_id,
            "block": block,
            "nonce": nonce,
            "exp": self._now_ms() + TOKEN_TTL_MS,
        }
        b64 = b64url_encode(canonical_json_dumps(payload).encode("utf-8"))
        token = f"{b64}.{hmac_sha256_hex(self._master, b64.encode('ascii'))}"
        key = derive_block_key(self._master, session_id, block, nonce)
        return CommitTicket(commit_token=token, commit_hash=sha256_hex(key))

    def _open_token(self, token: str, session_id: str, block: str, *, check_expiry: bool) -> str:
        if not isinstance(token, str) or token.count(".") != 1:
            raise sep_error(SEP_E_REMAP_TOKEN, "bad token")
        b64, sig = token.split(".")
        if not constant_time_equals(sig, hmac_sha256_hex(self._master, b64.encode("ascii"))):
            raise sep_error(SEP_E_REMAP_TOKEN, "bad signature")
        try:
            payload = json.loads(b64url_decode(b64).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise sep_error(SEP_E_REMAP_TOKEN, "bad payload") from e
        if not isinstance(payload, dict):
            raise sep_error(SEP_E_REMAP_TOKEN, "bad payload")
        if payload.get("v") != TOKEN_VERSION or not all(payload.get(k) for k in ("session_id", "block", "nonce", "exp")):
            raise sep_error(SEP_E_REMAP_TOKEN, "missing claims")
        if payload["session_id"] != session_id or payload["block"] != block:
            raise sep_error(SEP_E_REMAP_TOKEN, "claims mismatch")
        if check_expiry and self._now_ms() > int(payload["exp"]):
            raise sep_error(SEP_E_REMAP_TOKEN, "token expired")
        return str(payload["nonce"])

    def remap(self, token: str, ctx: RemapContext, k: int = len(ALPHABET)) -> RemapValue:
        if len(ctx.options) != k:
            raise sep_error(SEP_E_BAD_REQUEST, f"options must be {k} ids")
        nonce = self._open_token(token, ctx.session_id, ctx.block, check_expiry=True)
        return compute_remap(derive_block_key(self._master, ctx.session_id, ctx.block, nonce), ctx, k)

    def reveal(self, token: str, session_id: str, block: str) -> KeyReveal:
        nonce = self._open_token(token, session_id, block, check_expiry=False)
        key = derive_block_key(self._master, session_id, block, nonce)
        return KeyReveal(key_hex=key.hex(), commit_hash=sha256_hex(key))


@dataclass(frozen=True)
class RemapOutcome:
    target_index: int
    decoy_index: int
    r: int = 0
    proof: Optional[str] = None
    mode: str = "identity"


class RemapStrategy(abc.ABC):
    mode: str = ""

    def begin_block(self, session_id: str, block: str) -> Optional[str]:
        """Called before a block starts. Returns a commit hash to publish, if any."""
        return None

    @abc.abstractmethod
    def apply(self, assignment: TrialAssignment, ctx: RemapContext) -> RemapOutcome:
        raise NotImplementedError

    def end_block(self, session_id: str, block: str) -> Optional[KeyReveal]:
        return None


class IdentityRemap(RemapStrategy):
    mode = "identity"

    def apply(self, assignment: TrialAssignment, ctx: RemapContext) -> RemapOutcome:
        return RemapOutcome(assignment.subject_index, assignment.decoy_index, 0, None, self.mode)


class HmacRemap(RemapStrategy):
    """Rotate both indices by the authority's ``r`` for the trial."""

    mode = "hmac"

    def __init__(self, authority: RemapKeyAuthority, k: int = len(ALPHABET)):
        self.authority = authority
        self.k = int(k)
        self._tokens: Dict[str, CommitTicket] = {}

    def begin_block(self, session_id: str, block: str) -> Optional[str]:
        ticket = self.authority.issue_commit(session_id, block)
        self._tokens[f"{session_id}|{block}"] = ticket
        return ticket.commit_hash

    def apply(self, assignment: TrialAssignment, ctx: RemapContext) -> RemapOutcome:
        ticket = self._tokens.get(f"{ctx.session_id}|{ctx.block}")
        if ticket is None:
            raise sep_error(SEP_E_REMAP_TOKEN, "no commit token for block", block=ctx.block)
        value = self.authority.remap(ticket.commit_token, ctx, self.k)
        return RemapOutcome(
            target_index=(assignment.subject_index + value.r) % self.k,
            decoy_index=(assignment.decoy_index + value.r) % self.k,
            r=value.r,
            proof=value.proof,
            mode=self.mode,
        )

    def end_block(self, session_id: str, block: str) -> Optional[KeyReveal]:
        ticket = self._tokens.get(f"{session_id}|{block}")
        if ticket is None:
            return None
        return self.authority.reveal(ticket.commit_token, session_id, block)


def strategy_for(mode: str, authority: Optional[RemapKeyAuthority] = None) -> RemapStrategy:
    if mode == "identity":
        return IdentityRemap()
    if mode == "hmac":
        return HmacRemap(authority or RemapKeyAuthority.from_env())
    raise sep_error(SEP_E_BAD_REQUEST, f"unknown remap mode: {mode}")


@dataclass
class RemapCheck:
    ok: bool
    r: Optional[int] = None
    proof_ok: bool = False
    index_ok: bool = False
    target_index: Optional[int] = None
    decoy_index: Optional[int] = None
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


def verify_remap_row(key: bytes, row: Mapping[str, Any], alphabet: Sequence[str] = ALPHABET) -> RemapCheck:
    """Recompute ``r``, the proof and both remapped indices for one logged trial."""
    k = len(alphabet)
    options: List[str] = list(row.get("options") or row.get("option_ids") or [])
    if len(options) != k:
        return RemapCheck(False, reason="bad_options")
    try:
        ctx = RemapContext.from_row(row)
        subject_sym = alphabet[int(row["raw_byte"]) % k]
        decoy_sym = alphabet[int(row["ghost_raw_byte"]) % k]
    except (KeyError, TypeError, ValueError) as e:
        return RemapCheck(False, reason=f"missing_fields: {e}")
    if subject_sym not in options or decoy_sym not in options:
        return RemapCheck(False, reason="symbol_not_in_options")

    value = compute_remap(key, ctx, k)
    target = (options.index(subject_sym) + value.r) % k
    decoy = (options.index(decoy_sym) + value.r) % k
    proof_ok = constant_time_equals(str(row.get("remap_proof") or "").lower(), value.proof or "")
    index_ok = row.get("target_index_0based") == target and row.get("ghost_index_0based") == decoy
    reason = "" if (proof_ok and index_ok) else ("proof_mismatch" if not proof_ok else "index_mismatch")
    return RemapCheck(proof_ok and index_ok, value.r, proof_ok, index_ok, target, decoy, reason)


def verify_key_commit(key: bytes, commit_hash: str) -> bool:
    return constant_time_equals(sha256_hex(key), str(commit_hash).lower())
