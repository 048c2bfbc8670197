from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Dict, List

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from quoteai.api.error_handling import register_exception_handlers
from quoteai.api.routes import router
from quoteai.api.schemas import HealthResponse
from quoteai.config import BACKEND_REQUIRED, CORS_HEADERS, PROXY_REQUIRED, get_settings
from quoteai.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    from quoteai.service import runtime as runtime_module

    if runtime_module.runtime is None:
        return
    try:
        await runtime_module.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Quote AI Functions", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs for this request with X-Request-ID (client-supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def apply_cors(request: Request, call_next):
    # Preflight never reaches the handlers
    if request.method.upper() == "OPTIONS":
        return PlainTextResponse("ok", headers=CORS_HEADERS)
    response = await call_next(request)
    for name, value in CORS_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Report version and which functions are missing configuration."""
    settings = get_settings()
    missing: Dict[str, List[str]] = {
        "kimi-proxy": settings.missing(PROXY_REQUIRED),
        "delete-account": settings.missing(BACKEND_REQUIRED),
        "migrate-account": settings.missing(BACKEND_REQUIRED),
    }
    status = "healthy" if not any(missing.values()) else "degraded"
    return HealthResponse(
        status=status,
        version=__version__,
        build=settings.build_sha,
        missing=missing,
    )


def create_app() -> FastAPI:
    return app
