#!/usr/bin/env python3
"""
Sealed Envelope Protocol - Command Line Interface

Usage:
    sep audit <sessions.json>       Per-session table and aggregate tests
                                    (input: array of session documents, or a bundle)
    sep simulate                    Run a complete session against the local secure
                                    source and a SQLite store, then export a bundle
    sep export --out <file>         Export runs from the SQLite store into a bundle
    sep serve                       Run the entropy service (uvicorn)
    sep config                      Show the effective configuration
    sep schema-validate <path>      Validate an exported document or bundle against JSON Schemas
"""

import argparse
import asyncio
import json
import secrets
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from sep_engine.audit import AUDIT_MODES, MODE_POOLED, audit_sessions, render_text
from sep_engine.bundle import BUNDLE_FORMAT, build_bundle, bundle_sessions, write_bundle
from sep_engine.config import EngineConfig, load_config
from sep_engine.entropy import SOURCE_LOCAL, adapter_from_env
from sep_engine.errors import SEPError
from sep_engine.logs import logger, setup_logging
from sep_engine.remap import strategy_for
from sep_engine.session import SessionEngine
from sep_engine.store import SQLiteStore


def _load_sessions(path: Path) -> List[Dict[str, Any]]:
    """Session documents from a JSON array, ``{"sessions": [...]}``, or a bundle."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict) and data.get("format") == BUNDLE_FORMAT:
        return bundle_sessions(data)
    if isinstance(data, dict) and isinstance(data.get("sessions"), list):
        return list(data["sessions"])
    if isinstance(data, list):
        return data
    raise ValueError(f"{path}: expected a list of session documents, {{'sessions': [...]}}, or a bundle")


def cmd_audit(args) -> int:
    """Print the audit report for a set of session documents."""
    cfg = load_config(args.config)
    docs = _load_sessions(Path(args.sessions))
    report = audit_sessions(
        docs,
        mode=args.mode,
        cfg=cfg,
        blocks=args.block or None,
        completers_only=args.completers_only,
        include_diagnostics=args.diagnostics,
    )
    if args.json:
        print(json.dumps(report, indent=2, sort_keys=True, default=str))
    else:
        print(render_text(report))
    return 0


async def _simulate(cfg: EngineConfig, store: SQLiteStore, args) -> str:
    async def no_wait(_s: float) -> None:
        return None

    engine = SessionEngine(
        store,
        adapter_from_env(cfg),
        cfg,
        participant_id=args.participant,
        remap=strategy_for(cfg.remap_mode),
        sleep=no_wait,
    )
    answered = 0
    for block_id in cfg.trials_per_block:
        blk = await engine.start_block(block_id)
        for _ in range(blk.total):
            if args.exit_after is not None and answered >= args.exit_after:
                await engine.exit_early(args.exit_reason)
                return await engine.ensure_run_doc()
            prepared = await engine.prepare_trial(block_id)
            if prepared is None:
                continue
            await engine.respond(
                block_id,
                secrets.randbelow(cfg.symbol_count),
                response_time_ms=float(300 + secrets.randbelow(900)),
            )
            answered += 1
    await engine.finish()
    return await engine.ensure_run_doc()


def cmd_simulate(args) -> int:
    """Run one simulated participant end to end and export the run."""
    cfg = load_config(args.config)
    if not args.configured_sources:
        cfg = replace(cfg, block_sources={b: SOURCE_LOCAL for b in cfg.trials_per_block})
    if args.trials is not None:
        cfg = replace(cfg, trials_per_block={b: args.trials for b in cfg.trials_per_block})
    store = SQLiteStore(args.db)
    run_id = asyncio.run(_simulate(cfg, store, args))
    bundle = build_bundle(store, [run_id])
    out = write_bundle(bundle, args.out)
    print(f"Simulated run {run_id}")
    print(f"Bundle: {out}")
    return 0


def cmd_export(args) -> int:
    """Export runs from the store into an offline-verifiable bundle."""
    store = SQLiteStore(args.db)
    bundle = build_bundle(store, args.run or None)
    out = write_bundle(bundle, args.out)
    print(f"Exported {bundle['manifest']['run_count']} runs to {out}")
    print(f"runs_sha256: {bundle['manifest']['runs_sha256'][:16]}...")
    return 0


def cmd_serve(args) -> int:
    """Run the entropy service."""
    import uvicorn

    from sep_engine.server import create_app

    app = create_app(load_config(args.config))
    logger.info("starting SEP entropy service on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def cmd_config(args) -> int:
    """Show current configuration."""
    cfg = load_config(args.config)
    if args.json:
        print(json.dumps(cfg.to_dict(), indent=2, sort_keys=True))
        return 0

    print(f"\n{'='*60}")
    print("CONFIGURATION")
    print(f"{'='*60}")
    print(f"Config file: {args.config or '(using defaults)'}")
    print(f"\nTask:")
    print(f"  symbol_count: {cfg.symbol_count} (chance p0 = {cfg.chance:.3f})")
    print(f"  round_size: {cfg.round_size}  round_win_hits: {cfg.round_win_hits}")
    print(f"  significance_alpha: {cfg.significance_alpha}")
    print(f"\nPresentation:")
    print(f"  flash_duration_ms: {cfg.flash_duration_ms}")
    print(f"  inter_stimulus_interval_ms: {cfg.inter_stimulus_interval_ms}")
    print(f"  redundant_flash_count: {cfg.redundant_flash_count}  motion_safe: {cfg.motion_safe}")
    print(f"\nBlocks:")
    for b, n in cfg.trials_per_block.items():
        print(f"  {b}: {n} trials from {cfg.source_for(b)}")
    print(f"\nEntropy:")
    print(f"  max_attempts: {cfg.entropy_max_attempts}  backoff_s: {cfg.entropy_backoff_s}  timeout_s: {cfg.entropy_timeout_s}")
    print(f"\nCommitments:")
    print(f"  commit_policy: {cfg.commit_policy}  salt_bytes: {cfg.salt_bytes}  remap_mode: {cfg.remap_mode}")
    print(f"{'='*60}\n")
    return 0


def cmd_schema_validate(args) -> int:
    """Validate an exported document or bundle against the published JSON Schemas."""

    from sep_schema_validate import list_schemas, validate_path

    if args.list_schemas:
        for name in list_schemas():
            print(name)
        return 0

    ok, msgs = validate_path(Path(args.path), schema_name=args.schema)
    for m in msgs:
        mark = "✓" if m.ok else "✗"
        print(f"{mark} {m.code}: {m.detail}")
    return 0 if ok else 2


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sep",
        description="Sealed Envelope Protocol CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default="sep_store.db", help="Path to SQLite document store")
    parser.add_argument("--config", type=Path, help="Path to config JSON file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    audit_parser = subparsers.add_parser("audit", help="Audit session documents")
    audit_parser.add_argument("sessions", help="JSON file: array of session documents, or a bundle")
    audit_parser.add_argument("--mode", choices=AUDIT_MODES, default=MODE_POOLED, help="Aggregation policy")
    audit_parser.add_argument("--completers-only", action="store_true", help="Only sessions that reached every block minimum")
    audit_parser.add_argument("--block", action="append", help="Restrict to a block id (repeatable)")
    audit_parser.add_argument("--diagnostics", action="store_true", help="Include implementation-health diagnostics")
    audit_parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")
    audit_parser.set_defaults(func=cmd_audit)

    sim_parser = subparsers.add_parser("simulate", help="Run a simulated session and export a bundle")
    sim_parser.add_argument("--out", default="sep_bundle.json", help="Bundle output (.json or .zip)")
    sim_parser.add_argument("--participant", default="simulated", help="Participant id")
    sim_parser.add_argument("--trials", type=int, default=None, help="Override trials per block")
    sim_parser.add_argument("--exit-after", type=int, default=None, help="Exit early after this many answered trials")
    sim_parser.add_argument("--exit-reason", default="quit", help="Exit reason recorded on early exit")
    sim_parser.add_argument(
        "--configured-sources",
        action="store_true",
        help="Use the configured block sources instead of the local secure source",
    )
    sim_parser.set_defaults(func=cmd_simulate)

    export_parser = subparsers.add_parser("export", help="Export runs into a bundle")
    export_parser.add_argument("--out", "-o", required=True, help="Bundle output (.json or .zip)")
    export_parser.add_argument("--run", action="append", help="Run id to export (repeatable; default all)")
    export_parser.set_defaults(func=cmd_export)

    serve_parser = subparsers.add_parser("serve", help="Run the entropy service")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=cmd_serve)

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--json", action="store_true", help="Emit JSON")
    config_parser.set_defaults(func=cmd_config)

    sv_parser = subparsers.add_parser("schema-validate", help="Validate exported documents against JSON Schemas")
    sv_parser.add_argument("path", nargs="?", default="", help="Path to a .json document or bundle")
    sv_parser.add_argument("--schema", default=None, help="Schema name override")
    sv_parser.add_argument("--list-schemas", action="store_true", help="List supported schema names")
    sv_parser.set_defaults(func=cmd_schema_validate)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return int(args.func(args) or 0)
    except (SEPError, ValueError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
