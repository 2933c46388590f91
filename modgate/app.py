from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from modgate.api.error_handling import register_exception_handlers
from modgate.api.gate import GateContext, RequestAuthenticationGate
from modgate.api.routes import router
from modgate.config import Settings
from modgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

app = FastAPI(title="Modgate Auth", version=__version__)

_gate = RequestAuthenticationGate()


def _allowed_origins() -> List[str]:
    if _settings.allowed_origins:
        return _settings.allowed_origins
    # Common local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Run the authentication gate and expose the principal on request.state."""
    ctx = GateContext.from_request(
        request, trust_proxy=_gate.runtime.settings.trust_proxy_headers
    )
    short_circuit = await _gate.run(ctx)
    if short_circuit is not None:
        response = short_circuit
    else:
        request.state.principal = ctx.principal
        response = await call_next(request)
    for name, value in ctx.response_headers.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens and must never be cached
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with a correlation id from X-Request-ID or a fresh one.

    Declared after the gate so the id is set before the gate can answer.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Added last so it is outermost and gate rejections carry CORS headers too
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        _settings.api_key_header,
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Tier",
    ],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from modgate.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "redis": "connected" if runtime.cache is not None else "disabled",
    }
