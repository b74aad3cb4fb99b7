"""
SEP Entropy Service

FastAPI service in front of the entropy adapter and the remap key authority.

Endpoints:
- GET  /v1/entropy?n=&source=   raw bytes (n clamped to 1..1024)
- POST /v1/envelopes/batch      all envelopes for one block (2N bytes, one draw)
- POST /v1/remap/commit         per-block remap commit token + SHA-256(K)
- POST /v1/remap/derive         per-trial r and proof
- POST /v1/remap/reveal         K for a finished block
- GET  /v1/health
- GET  /metrics                 Prometheus (unless SEP_METRICS_ENABLED=0)

Bytes always come from the source configured for the request. If that source
fails the request fails; there is no silent fallback to another generator.
"""

from __future__ import annotations

import argparse
import os
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import EngineConfig, load_config
from .crypto import now_iso
from .entropy import MAX_BYTES_PER_CALL, SOURCE_LOCAL, EntropyAdapter, adapter_from_env
from .errors import SEPError, SEP_E_BAD_REQUEST, SEP_E_REMAP_UNCONFIGURED, sep_error
from .logs import logger
from .metrics import instrument_fastapi
from .remap import RemapContext, RemapKeyAuthority
from .tape import EnvelopeBatch

MAX_ENVELOPES_PER_BLOCK = 100


class EnvelopeBatchRequest(BaseModel):
    block: str = Field(default="full_stack", max_length=64)
    total: Optional[int] = None
    session_id: Optional[str] = Field(default=None, max_length=200)
    source: Optional[str] = None


class RemapCommitRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=200)
    block: str = Field(min_length=1, max_length=64)


class RemapDeriveRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=200)
    block: str = Field(min_length=1, max_length=64)
    commit_token: str
    trial_index: int = Field(ge=1)
    selected_index: int = Field(ge=0)
    options: List[str]
    raw_byte: int = Field(ge=0, le=255)
    press_bucket_ms: int = 0


class RemapRevealRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=200)
    block: str = Field(min_length=1, max_length=64)
    commit_token: str


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


def create_app(
    cfg: Optional[EngineConfig] = None,
    adapter: Optional[EntropyAdapter] = None,
    authority: Optional[RemapKeyAuthority] = None,
) -> FastAPI:
    """Create the FastAPI application.

    ``authority`` defaults to one built from ``SEP_HMAC_MASTER_SECRET`` when
    that variable is set; without it the remap endpoints answer 500
    ``SEP_E_REMAP_UNCONFIGURED``.
    """
    from . import __version__ as sep_version

    cfg = cfg or EngineConfig.from_env()
    adapter = adapter or adapter_from_env(cfg)
    if authority is None and os.getenv("SEP_HMAC_MASTER_SECRET"):
        authority = RemapKeyAuthority.from_env()

    app = FastAPI(
        title="SEP Entropy Service",
        description="Sealed Envelope Protocol - entropy, envelopes and remap keys",
        version=sep_version,
    )
    app.state.cfg = cfg
    app.state.adapter = adapter
    app.state.authority = authority

    @app.exception_handler(SEPError)
    async def _sep_error_handler(request: Request, exc: SEPError):
        return JSONResponse(status_code=int(exc.http_status or 400), content={"success": False, **exc.as_dict()})

    def _authority() -> RemapKeyAuthority:
        if app.state.authority is None:
            raise sep_error(SEP_E_REMAP_UNCONFIGURED, "SEP_HMAC_MASTER_SECRET is not configured", http_status=500)
        return app.state.authority

    instrument_fastapi(app)

    @app.get("/v1/entropy")
    async def entropy(n: int = Query(default=32), source: str = Query(default=SOURCE_LOCAL)):
        n = _clamp(n, 1, MAX_BYTES_PER_CALL)
        batch = await adapter.afetch_bytes(n, source)
        return {
            "success": True,
            "bytes": list(batch.values),
            "source": batch.source,
            "server_time": batch.server_time or now_iso(),
        }

    @app.post("/v1/envelopes/batch")
    async def envelopes_batch(req: EnvelopeBatchRequest):
        if req.total is not None:
            total = req.total
        elif req.block in cfg.trials_per_block:
            total = cfg.trials_for(req.block)
        else:
            raise sep_error(SEP_E_BAD_REQUEST, f"unknown block and no total given: {req.block}", block=req.block)
        total = _clamp(int(total), 1, MAX_ENVELOPES_PER_BLOCK)
        source = req.source or cfg.source_for(req.block)
        batch = await adapter.afetch_bytes(2 * total, source)
        envelopes = EnvelopeBatch.from_batch(batch, block_id=req.block, total=total)
        logger.info("envelope batch served: block=%s total=%d source=%s session=%s", req.block, total, source, req.session_id)
        return envelopes.to_dict()

    @app.post("/v1/remap/commit")
    async def remap_commit(req: RemapCommitRequest):
        return _authority().issue_commit(req.session_id, req.block).to_dict()

    @app.post("/v1/remap/derive")
    async def remap_derive(req: RemapDeriveRequest):
        ctx = RemapContext(
            session_id=req.session_id,
            block=req.block,
            trial_index=req.trial_index,
            selected_index=req.selected_index,
            options=list(req.options),
            raw_byte=req.raw_byte,
            press_bucket_ms=req.press_bucket_ms,
        )
        value = _authority().remap(req.commit_token, ctx, cfg.symbol_count)
        return {"success": True, "r": value.r, "proof": value.proof}

    @app.post("/v1/remap/reveal")
    async def remap_reveal(req: RemapRevealRequest):
        return _authority().reveal(req.commit_token, req.session_id, req.block).to_dict()

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "sources": adapter.kinds(),
            "remap_configured": app.state.authority is not None,
            "server_time": now_iso(),
        }

    return app


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for sep-server.

    Usage:
        sep-server                    # Start on default port 8000
        sep-server --port 9000        # Start on custom port
        sep-server --host 127.0.0.1   # Bind to localhost only
    """
    parser = argparse.ArgumentParser(
        description="SEP Entropy Service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    SEP_HARDWARE_PROXY_URL   Upstream proxy for the hardware-proxy source
    SEP_QUANTUM_PROXY_URL    Upstream proxy for the quantum-proxy source
    SEP_HMAC_MASTER_SECRET   Master secret for the remap key authority
    SEP_METRICS_ENABLED      Set to 0 to disable /metrics
        """,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--config", default=None, help="Engine config JSON")
    args = parser.parse_args(argv)

    import uvicorn

    cfg = load_config(args.config)
    app = create_app(cfg)
    logger.info("starting SEP entropy service on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
