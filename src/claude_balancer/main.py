"""FastAPI application — round-robin load balancer for the Messages API."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .config import load_config, get_config
from .endpoints import init_endpoints, get_registry, get_selector
from .proxy import (
    RelayContext,
    RelayError,
    StreamRelay,
    relay_message,
    stream_error_response,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = load_config()
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # basicConfig is a no-op when __main__ configured logging first
    logging.getLogger().setLevel(level)
    logger = logging.getLogger(__name__)
    logger.info("Starting Claude load balancer on port %d", cfg.port)
    registry = init_endpoints(cfg.endpoints)
    logger.info("Balancing across %d endpoints", len(registry))
    yield


app = FastAPI(title="Claude Load Balancer", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
logger = logging.getLogger(__name__)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("%s %s", request.method, request.url.path)
    return await call_next(request)


def _error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )


@app.get("/health")
async def health():
    registry = get_registry()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": [
            {
                "index": endpoint.index + 1,
                "baseURL": endpoint.base_url,
                "hasToken": bool(endpoint.auth_token),
            }
            for endpoint in registry
        ],
        "currentEndpoint": get_selector().cursor + 1,
    }


@app.post("/v1/messages")
async def messages(request: Request):
    cfg = get_config()
    too_large = _error_response(413, "request_too_large", f"Request body exceeds {cfg.max_body_bytes} bytes")

    # Rejected on the declared length before anything is read
    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > cfg.max_body_bytes:
        return too_large

    body = await request.body()
    if len(body) > cfg.max_body_bytes:
        return too_large

    try:
        payload = json.loads(body)
    except ValueError:
        return _error_response(400, "invalid_request_error", "Request body must be valid JSON")
    if not isinstance(payload, dict):
        return _error_response(400, "invalid_request_error", "Request body must be a JSON object")

    stream = payload.get("stream") is True
    anthropic_version = request.headers.get("anthropic-version") or cfg.default_anthropic_version

    try:
        endpoint = get_selector().next()
    except RuntimeError as e:
        logger.error("No endpoint available: %s", e)
        error = RelayError(str(e))
        if stream:
            return stream_error_response(error)
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    ctx = RelayContext(endpoint=endpoint, stream=stream)
    registry_size = len(get_registry())
    logger.info(
        "[%s] Proxying to %s (endpoint %d/%d, stream=%s)",
        ctx.request_id, endpoint.base_url, endpoint.index + 1, registry_size, stream,
    )

    if stream:
        relay = StreamRelay(
            ctx,
            body,
            anthropic_version,
            timeout=cfg.timeout,
            idle_timeout=cfg.stream_idle_timeout,
            is_disconnected=request.is_disconnected,
        )
        return relay.response()

    try:
        result = await relay_message(ctx, body, anthropic_version, timeout=cfg.timeout)
    except RelayError as e:
        ctx.claim_response()
        return JSONResponse(status_code=e.status_code, content=e.to_payload())

    ctx.claim_response()
    return Response(content=result.content, status_code=result.status_code, media_type=result.media_type)
