"""sep_verify: Offline verifier for SEP run bundles.

Verifies exported bundles without trusting the live store or the entropy
services.

Supported inputs:
  - A bundle ``.json`` file written by sep_engine.bundle.write_bundle
  - A ``.zip`` bundle (bundle.json + VERIFY.md)

Verification checks, per run and block:
  1) Bundle manifest hash matches the exported runs
  2) A commitment was published for the block
  3) SHA-256(salt || pairs) from the reveal equals the published digest
  4) Each trial's logged bytes equal the tape pair at its position (FIFO order)
  5) Each sealed envelope carries the same bytes as the tape
  6) Each trial re-resolves to its logged base indices from the logged layout
  7) Remapped indices and proofs recompute from the revealed HMAC key (optional,
     needs the key embedded in the reveal or --remap-key-file)

Blocks with no reveal are audit gaps: reported, and only fatal with --strict.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sep_engine.assignment import ALPHABET, SymbolLayout, resolve
from sep_engine.bundle import RunExport, bundle_runs, load_bundle, runs_digest
from sep_engine.errors import SEPError
from sep_engine.remap import verify_key_commit, verify_remap_row
from sep_engine.tape import verify_reveal


@dataclass
class VerifyMessage:
    ok: bool
    code: str
    detail: str


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _load_remap_keys(path: Optional[str]) -> Dict[str, bytes]:
    """``{"<run_id>/<block>" or "<block>": key_hex}`` -> raw keys."""
    if not path:
        return {}
    data = _load_json(Path(path))
    if not isinstance(data, dict):
        raise ValueError("remap key file must contain a JSON object")
    return {str(k): bytes.fromhex(str(v)) for k, v in data.items()}


def _key_for(run: RunExport, block: str, keys: Mapping[str, bytes]) -> Optional[bytes]:
    reveal = run.reveals.get(block) or {}
    if reveal.get("remap_key_hex"):
        try:
            return bytes.fromhex(str(reveal["remap_key_hex"]))
        except ValueError:
            return None
    return keys.get(f"{run.run_id}/{block}") or keys.get(block)


def _alphabet_for(row: Mapping[str, Any]):
    options = row.get("options") or []
    return ALPHABET[: len(options)] if 2 <= len(options) <= len(ALPHABET) else ALPHABET


def verify_trials(
    run: RunExport,
    block: str,
    pairs: Tuple[Tuple[int, int], ...],
    key: Optional[bytes],
) -> List[VerifyMessage]:
    """Re-derive every logged trial of ``block`` from the revealed tape."""
    msgs: List[VerifyMessage] = []
    rows = run.trials_for(block)
    where = f"run={run.run_id} block={block}"
    if len(rows) > len(pairs):
        msgs.append(VerifyMessage(False, "TRIALS_EXCEED_TAPE", f"{where}: {len(rows)} trials for {len(pairs)} tape pairs"))
    bad_bytes = bad_index = bad_sealed = bad_remap = 0
    remap_rows = 0
    for row in rows:
        idx = int(row.get("trial_index") or 0)
        if not 1 <= idx <= len(pairs):
            bad_bytes += 1
            continue
        s, d = pairs[idx - 1]
        if row.get("raw_byte") != s or row.get("ghost_raw_byte") != d:
            bad_bytes += 1
            continue
        sealed = run.sealed_envelopes.get(str(row.get("sealed_envelope_id") or ""))
        if sealed is not None and (sealed.get("raw_byte") != s or sealed.get("ghost_raw_byte") != d):
            bad_sealed += 1
        alphabet = _alphabet_for(row)
        try:
            a = resolve(s, d, SymbolLayout(tuple(row.get("options") or ())), alphabet)
        except SEPError:
            bad_index += 1
            continue
        if row.get("base_target_index", a.subject_index) != a.subject_index or row.get("base_ghost_index", a.decoy_index) != a.decoy_index:
            bad_index += 1
            continue
        mode = row.get("remap_mode") or "identity"
        if mode == "identity":
            if row.get("target_index_0based") != a.subject_index or row.get("ghost_index_0based") != a.decoy_index:
                bad_index += 1
        elif key is not None:
            remap_rows += 1
            check = verify_remap_row(key, {**row, "block": block}, alphabet)
            if not check.ok:
                bad_remap += 1
    n = len(rows)
    msgs.append(VerifyMessage(bad_bytes == 0, "TRIAL_BYTES_OK" if not bad_bytes else "TRIAL_BYTES_MISMATCH", f"{where}: {n - bad_bytes}/{n} trials match tape order"))
    msgs.append(VerifyMessage(bad_index == 0, "TRIAL_INDEX_OK" if not bad_index else "TRIAL_INDEX_MISMATCH", f"{where}: {bad_index} mismatched"))
    if bad_sealed:
        msgs.append(VerifyMessage(False, "SEALED_ENVELOPE_MISMATCH", f"{where}: {bad_sealed} sealed envelopes differ from tape"))
    if remap_rows:
        msgs.append(VerifyMessage(bad_remap == 0, "REMAP_OK" if not bad_remap else "REMAP_MISMATCH", f"{where}: {remap_rows - bad_remap}/{remap_rows} proofs verified"))
    return msgs


def verify_run(run: RunExport, *, remap_keys: Mapping[str, bytes], strict: bool = False) -> List[VerifyMessage]:
    msgs: List[VerifyMessage] = []
    for block in run.block_ids():
        where = f"run={run.run_id} block={block}"
        commit = run.commits.get(block)
        reveal = run.reveals.get(block)
        if not commit or not commit.get("commit_hash_hex"):
            msgs.append(VerifyMessage(False, "COMMIT_MISSING", f"{where}: commitment unverifiable"))
            continue
        if not reveal:
            msgs.append(VerifyMessage(not strict, "AUDIT_GAP_NO_REVEAL", f"{where}: no reveal, digest cannot be checked"))
            continue
        check = verify_reveal(reveal, published_digest=commit["commit_hash_hex"])
        if not check.ok:
            msgs.append(VerifyMessage(False, "TAPE_DIGEST_MISMATCH", f"{where}: {check.reason}"))
            continue
        msgs.append(VerifyMessage(True, "TAPE_DIGEST_OK", f"{where}: {check.recomputed}"))

        key = _key_for(run, block, remap_keys)
        if commit.get("remap_commit_hash"):
            if key is None:
                msgs.append(VerifyMessage(not strict, "REMAP_KEY_MISSING", f"{where}: remap proofs not checked"))
            elif not verify_key_commit(key, commit["remap_commit_hash"]):
                msgs.append(VerifyMessage(False, "REMAP_KEY_COMMIT_MISMATCH", f"{where}: SHA-256(K) differs from remap_commit_hash"))
                key = None
            else:
                msgs.append(VerifyMessage(True, "REMAP_KEY_COMMIT_OK", where))
        msgs.extend(verify_trials(run, block, check.pairs, key))
    return msgs


def verify_bundle_path(path: str, *, remap_key_file: Optional[str] = None, strict: bool = False) -> Tuple[bool, List[VerifyMessage]]:
    try:
        bundle = load_bundle(path)
    except SEPError as e:
        return False, [VerifyMessage(False, "BAD_BUNDLE", e.message)]
    try:
        keys = _load_remap_keys(remap_key_file)
    except (OSError, ValueError) as e:
        return False, [VerifyMessage(False, "BAD_REMAP_KEYS", str(e))]

    msgs: List[VerifyMessage] = []
    manifest = bundle.get("manifest") or {}
    runs = bundle.get("runs") or []
    expected = manifest.get("runs_sha256")
    if expected:
        ok = runs_digest(runs) == expected
        msgs.append(VerifyMessage(ok, "BUNDLE_HASH_OK" if ok else "BUNDLE_HASH_MISMATCH", f"runs_sha256={expected}"))
    else:
        msgs.append(VerifyMessage(not strict, "BUNDLE_HASH_ABSENT", "manifest has no runs_sha256"))
    for run in bundle_runs(bundle):
        msgs.extend(verify_run(run, remap_keys=keys, strict=strict))
    return all(m.ok for m in msgs), msgs


def _print_messages(msgs: List[VerifyMessage]) -> None:
    for m in msgs:
        mark = "✓" if m.ok else "✗"
        print(f"{mark} {m.code}: {m.detail}")


def _emit_json(
    ok: bool,
    command: str,
    messages: Optional[List[VerifyMessage]] = None,
    *,
    extra: Optional[Dict[str, Any]] = None,
    pretty: bool = False,
) -> int:
    """Emit a machine-readable JSON report and return an exit code."""

    payload: Dict[str, Any] = {"ok": bool(ok), "command": command}
    if extra:
        payload.update(extra)
    if messages is not None:
        payload["messages"] = [
            {"ok": bool(m.ok), "code": str(m.code), "detail": str(m.detail)} for m in messages
        ]

    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True))

    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="sep-verify", description="Offline verifier for SEP run bundles")
    parser.add_argument(
        "--json",
        dest="json_out",
        action="store_true",
        help="Emit machine-readable JSON output instead of human text",
    )
    parser.add_argument(
        "--pretty",
        dest="json_pretty",
        action="store_true",
        help="Pretty-print JSON output (only with --json)",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_bundle = sub.add_parser("bundle", help="Verify a bundle .json or .zip")
    p_bundle.add_argument("path", help="Path to bundle file")
    p_bundle.add_argument("--remap-key-file", default=None, help="JSON map of '<run>/<block>' or '<block>' to remap key hex")
    p_bundle.add_argument("--strict", action="store_true", help="Treat audit gaps (missing reveals or keys) as failures")

    p_tape = sub.add_parser("tape", help="Verify a single reveal document against a published digest")
    p_tape.add_argument("reveal", help="Path to reveal JSON")
    p_tape.add_argument("--digest", default=None, help="Published commit_hash_hex (default: the one in the reveal)")

    args = parser.parse_args(argv)

    if args.cmd == "bundle":
        ok, msgs = verify_bundle_path(args.path, remap_key_file=args.remap_key_file, strict=args.strict)
        if args.json_out:
            return _emit_json(
                ok,
                "bundle",
                msgs,
                extra={"path": args.path, "strict": bool(args.strict)},
                pretty=args.json_pretty,
            )
        _print_messages(msgs)
        return 0 if ok else 1

    if args.cmd == "tape":
        try:
            reveal = _load_json(Path(args.reveal))
        except (OSError, json.JSONDecodeError) as e:
            msgs = [VerifyMessage(False, "BAD_REVEAL", str(e))]
        else:
            if not isinstance(reveal, dict):
                reveal = {}
            check = verify_reveal(reveal, published_digest=args.digest)
            msgs = [VerifyMessage(check.ok, "TAPE_DIGEST_OK" if check.ok else "TAPE_DIGEST_MISMATCH", check.reason or str(check.recomputed))]
        ok = all(m.ok for m in msgs)
        if args.json_out:
            return _emit_json(ok, "tape", msgs, extra={"path": args.reveal}, pretty=args.json_pretty)
        _print_messages(msgs)
        return 0 if ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
