"""sep_schema_validate: JSON Schema validation helpers for SEP documents.

This module underpins the `sep schema-validate` CLI subcommand.

It validates:
- Individual documents (commitment/reveal/sealed envelope/trial record/run/config)
- Whole bundles (.json or .zip), including every document inside them

Schemas live in: sep_engine/schemas/

Design notes:
- Uses jsonschema Draft 2020-12.
- Fails closed: schema load errors are treated as validation failures.
"""

from __future__ import annotations

import json
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import jsonschema


@dataclass
class SchemaMessage:
    ok: bool
    code: str
    detail: str


SCHEMA_FILES: Dict[str, str] = {
    "commitment": "commitment.schema.json",
    "reveal": "reveal.schema.json",
    "sealed_envelope": "sealed_envelope.schema.json",
    "trial_record": "trial_record.schema.json",
    "session_aggregate": "session_aggregate.schema.json",
    "bundle": "bundle.schema.json",
    "engine_config": "engine_config.schema.json",
}


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _default_schemas_dir() -> Path:
    import sep_engine

    return Path(sep_engine.__file__).resolve().parent / "schemas"


def _detect_schema_name(path: Path, obj: Any = None) -> Optional[str]:
    name = path.name.lower()

    if isinstance(obj, Mapping) and obj.get("format") == "sep-bundle":
        return "bundle"
    if "bundle" in name:
        return "bundle"
    if name.startswith("commit"):
        return "commitment"
    if name.startswith("reveal"):
        return "reveal"
    if name.startswith("sealed"):
        return "sealed_envelope"
    if name.startswith(("trial", "log")):
        return "trial_record"
    if name.startswith(("run", "session")):
        return "session_aggregate"
    if name.startswith("config") or name.endswith("_config.json"):
        return "engine_config"

    # Fall back to the document's own shape.
    if isinstance(obj, Mapping):
        if "salt_hex" in obj:
            return "reveal"
        if "commit_hash_hex" in obj:
            return "commitment"
        if "selected_index" in obj:
            return "trial_record"
        if "k_options" in obj:
            return "sealed_envelope"
        if "total_trials" in obj:
            return "session_aggregate"
    return None


def _get_validator(schema_name: str, schemas_dir: Path):
    schema_file = SCHEMA_FILES.get(schema_name)
    if not schema_file:
        raise ValueError(f"Unknown schema: {schema_name}")

    schema = _load_json(schemas_dir / schema_file)
    # Draft 2020-12
    return jsonschema.Draft202012Validator(schema)


def validate_instance(
    obj: Any,
    *,
    schema_name: str,
    schemas_dir: Optional[Path] = None,
    where: str = "",
) -> Tuple[bool, List[SchemaMessage]]:
    schemas_dir = schemas_dir or _default_schemas_dir()
    label = f"{where} " if where else ""
    try:
        validator = _get_validator(schema_name, schemas_dir)
    except FileNotFoundError as e:
        return False, [SchemaMessage(False, "SCHEMA_MISSING", str(e))]
    except (ValueError, jsonschema.SchemaError) as e:
        return False, [SchemaMessage(False, "SCHEMA_LOAD_ERROR", f"{schema_name}: {e}")]

    errors = sorted(validator.iter_errors(obj), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, [SchemaMessage(True, "SCHEMA_OK", f"{label}{schema_name}: valid")]
    msgs: List[SchemaMessage] = []
    for e in errors[:50]:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{label}{schema_name} {loc}: {e.message}"))
    if len(errors) > 50:
        msgs.append(SchemaMessage(False, "SCHEMA_ERROR", f"{label}{schema_name}: {len(errors) - 50} more errors..."))
    return False, msgs


def validate_bundle(bundle: Any, *, schemas_dir: Optional[Path] = None) -> Tuple[bool, List[SchemaMessage]]:
    """Validate the bundle envelope, then every document of every run."""
    ok_all, msgs = validate_instance(bundle, schema_name="bundle", schemas_dir=schemas_dir)
    if not ok_all:
        return False, msgs

    for run in bundle.get("runs") or []:
        rid = run.get("run_id")
        parts: List[Tuple[str, str, Any]] = [(f"run={rid}", "session_aggregate", run.get("session") or {})]
        parts += [(f"run={rid} commit={b}", "commitment", d) for b, d in (run.get("commits") or {}).items()]
        parts += [(f"run={rid} reveal={b}", "reveal", d) for b, d in (run.get("reveals") or {}).items()]
        parts += [(f"run={rid} sealed={k}", "sealed_envelope", d) for k, d in (run.get("sealed_envelopes") or {}).items()]
        parts += [(f"run={rid} log[{i}]", "trial_record", d) for i, d in enumerate(run.get("logs") or [])]
        for where, schema_name, doc in parts:
            ok, m = validate_instance(doc, schema_name=schema_name, schemas_dir=schemas_dir, where=where)
            ok_all = ok_all and ok
            msgs.extend(x for x in m if not x.ok)
    if ok_all:
        msgs.append(SchemaMessage(True, "BUNDLE_DOCUMENTS_OK", f"{len(bundle.get('runs') or [])} runs: all documents valid"))
    return ok_all, msgs


def validate_file(
    path: Path,
    *,
    schema_name: Optional[str] = None,
    schemas_dir: Optional[Path] = None,
) -> Tuple[bool, List[SchemaMessage]]:
    try:
        if path.suffix.lower() == ".zip":
            with zipfile.ZipFile(path, "r") as zf:
                obj = json.loads(zf.read("bundle.json").decode("utf-8"))
        else:
            obj = _load_json(path)
    except (KeyError, zipfile.BadZipFile, json.JSONDecodeError, UnicodeDecodeError) as e:
        return False, [SchemaMessage(False, "JSON_PARSE_ERROR", f"{path.name}: {e}")]

    schema_name = schema_name or _detect_schema_name(path, obj)
    if not schema_name:
        return False, [SchemaMessage(False, "SCHEMA_UNDETECTED", f"Cannot infer schema for {path.name}. Use --schema.")]

    if schema_name == "bundle":
        return validate_bundle(obj, schemas_dir=schemas_dir)

    # trial logs may be exported as a list of records
    if isinstance(obj, list):
        ok_all = True
        out_msgs: List[SchemaMessage] = []
        for i, item in enumerate(obj):
            ok, msgs = validate_instance(item, schema_name=schema_name, schemas_dir=schemas_dir, where=f"item[{i}]")
            ok_all = ok_all and ok
            out_msgs.extend(m for m in msgs if not m.ok)
        if ok_all:
            return True, [SchemaMessage(True, "SCHEMA_OK", f"{path.name}: all {len(obj)} items valid")]
        return False, out_msgs

    return validate_instance(obj, schema_name=schema_name, schemas_dir=schemas_dir)


def validate_path(
    path: Path,
    *,
    schema_name: Optional[str] = None,
    schemas_dir: Optional[Path] = None,
) -> Tuple[bool, List[SchemaMessage]]:
    """Validate a document file or a bundle (.json or .zip)."""

    if not path.exists() or path.is_dir():
        return False, [SchemaMessage(False, "NOT_FOUND", str(path))]
    return validate_file(path, schema_name=schema_name, schemas_dir=schemas_dir)


def list_schemas() -> List[str]:
    return sorted(SCHEMA_FILES.keys())


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for `python -m sep_schema_validate`.

    The richer UX lives under `sep schema-validate`.
    """

    import argparse

    parser = argparse.ArgumentParser(prog="sep_schema_validate")
    parser.add_argument("path", nargs="?", default="", help="Path to a SEP document or bundle")
    parser.add_argument("--schema", dest="schema", default=None, help="Override schema name")
    parser.add_argument(
        "--schemas-dir",
        dest="schemas_dir",
        default=None,
        help="Directory containing schema files (default: sep_engine/schemas)",
    )
    parser.add_argument(
        "--list-schemas",
        action="store_true",
        help="List supported schema names and exit",
    )

    args = parser.parse_args(argv)

    if args.list_schemas:
        for name in list_schemas():
            print(name)
        return 0

    ok, messages = validate_path(
        Path(args.path),
        schema_name=args.schema,
        schemas_dir=Path(args.schemas_dir) if args.schemas_dir else None,
    )

    for m in messages:
        prefix = "OK" if m.ok else "FAIL"
        print(f"{prefix} {m.code}: {m.detail}")
    return 0 if ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
