"""
SEP Bundles

Exportable run bundles with offline verification.

A bundle holds everything a third party needs to check a run without access
to the live store or the entropy services:

- the run (session aggregate) document
- every published commitment (digest only)
- every reveal (salt + tape pairs, plus the remap key when HMAC remap was used)
- the sealed envelope written before each response
- the trial records

``manifest.runs_sha256`` is the SHA-256 of the canonical JSON of ``runs`` so a
bundle edited after export is detected before any per-block check runs.

Bundles are written either as a single ``.json`` file or as a ``.zip`` holding
``bundle.json`` and ``VERIFY.md``.
"""

import json
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .crypto import canonical_json_dumps, now_iso, sha256_hex
from .errors import SEP_E_BAD_REQUEST, SEP_E_STORE, sep_error
from .logs import logger
from .store import DocumentStore, document_path

BUNDLE_FORMAT = "sep-bundle"
BUNDLE_VERSION = "1.0"

VERIFY_MD = """# Verifying this bundle

    sep-verify bundle <this file>

The verifier recomputes SHA-256(salt || pairs) for every revealed tape and
compares it with the commitment published before the block started, then
re-resolves every logged trial from the revealed bytes and the logged symbol
order. Blocks without a reveal are reported as audit gaps.

If the run used HMAC index remapping and the remap keys are not embedded in
the reveals, pass them with --remap-key-file.
"""


@dataclass
class RunExport:
    """All documents of one run."""

    run_id: str
    session: Dict[str, Any]
    commits: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    reveals: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    sealed_envelopes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    logs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "session": self.session,
            "commits": self.commits,
            "reveals": self.reveals,
            "sealed_envelopes": self.sealed_envelopes,
            "logs": self.logs,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunExport":
        return cls(
            run_id=str(data.get("run_id") or ""),
            session=dict(data.get("session") or {}),
            commits=dict(data.get("commits") or {}),
            reveals=dict(data.get("reveals") or {}),
            sealed_envelopes=dict(data.get("sealed_envelopes") or {}),
            logs=list(data.get("logs") or []),
        )

    def trials_for(self, block_id: str) -> List[Dict[str, Any]]:
        rows = [r for r in self.logs if (r.get("block_type") or r.get("block_id")) == block_id]
        return sorted(rows, key=lambda r: int(r.get("trial_index") or 0))

    def block_ids(self) -> List[str]:
        seen: List[str] = []
        for source in (self.commits.keys(), self.reveals.keys(), (r.get("block_type") for r in self.logs)):
            for b in source:
                if b and b not in seen:
                    seen.append(b)
        return seen

    def session_document(self) -> Dict[str, Any]:
        """Run document with trials nested per block, in the shape the audit engine reads."""
        doc = dict(self.session)
        doc.setdefault("run_id", self.run_id)
        for b in self.block_ids():
            doc[b] = {"trialResults": self.trials_for(b)}
        return doc


def export_run(store: DocumentStore, run_id: str) -> RunExport:
    session = store.get(document_path("runs", run_id))
    if session is None:
        raise sep_error(SEP_E_STORE, f"run not found: {run_id}", http_status=404, run=run_id)
    base = f"runs/{run_id}"
    return RunExport(
        run_id=run_id,
        session=session,
        commits=dict(store.list(f"{base}/commits")),
        reveals=dict(store.list(f"{base}/reveal")),
        sealed_envelopes=dict(store.list(f"{base}/sealed_envelope")),
        logs=[doc for _, doc in store.list(f"{base}/logs")],
    )


def runs_digest(runs: Sequence[Mapping[str, Any]]) -> str:
    return sha256_hex(canonical_json_dumps(list(runs)).encode("utf-8"))


def build_bundle(store: DocumentStore, run_ids: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    """Export ``run_ids`` (default: every run in the store) into one bundle document."""
    if run_ids is None:
        run_ids = [rid for rid, _ in store.list("runs")]
    runs = [export_run(store, rid).to_dict() for rid in run_ids]
    bundle = {
        "format": BUNDLE_FORMAT,
        "bundle_version": BUNDLE_VERSION,
        "created_iso": now_iso(),
        "runs": runs,
        "manifest": {"run_count": len(runs), "runs_sha256": runs_digest(runs)},
    }
    logger.info("bundle built: runs=%d", len(runs))
    return bundle


def write_bundle(bundle: Mapping[str, Any], output_path: str) -> str:
    """Write ``bundle`` as ``.json`` or ``.zip`` depending on the suffix. Returns the path."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(bundle, indent=2, sort_keys=True, ensure_ascii=False)
    if out.suffix.lower() == ".zip":
        with zipfile.ZipFile(str(out), "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr("bundle.json", text)
            zf.writestr("VERIFY.md", VERIFY_MD)
    else:
        out.write_text(text, encoding="utf-8")
    return str(out)


def load_bundle(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.is_file():
        raise sep_error(SEP_E_BAD_REQUEST, f"bundle not found: {path}")
    try:
        if p.suffix.lower() == ".zip":
            with zipfile.ZipFile(str(p), "r") as zf:
                data = json.loads(zf.read("bundle.json").decode("utf-8"))
        else:
            data = json.loads(p.read_text(encoding="utf-8"))
    except (KeyError, zipfile.BadZipFile, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise sep_error(SEP_E_BAD_REQUEST, f"unreadable bundle {path}: {e}") from e
    if not isinstance(data, dict) or data.get("format") != BUNDLE_FORMAT:
        raise sep_error(SEP_E_BAD_REQUEST, f"not a {BUNDLE_FORMAT} document: {path}")
    return data


def bundle_runs(bundle: Mapping[str, Any]) -> List[RunExport]:
    return [RunExport.from_dict(r) for r in bundle.get("runs") or [] if isinstance(r, Mapping)]


def bundle_sessions(bundle: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Session documents for the audit engine."""
    return [r.session_document() for r in bundle_runs(bundle)]
