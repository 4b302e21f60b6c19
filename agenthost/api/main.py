"""FastAPI application for the agenthost orchestrator.

Provides the main application instance with routers, middleware and
exception handlers configured.
"""

import logging
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("agenthost").setLevel(logging.INFO)

from agenthost.api.dependencies import get_config  # noqa: E402
from agenthost.api.middleware.auth import (  # noqa: E402
    maybe_require_api_key,
    validate_api_key_strength,
)
from agenthost.api.routes import agents, credentials, provisioning  # noqa: E402
from agenthost.db.connection import configure_database, init_db  # noqa: E402
from agenthost.errors import (  # noqa: E402
    AgentHostError,
    ConflictError,
    DomainError,
    NotFoundError,
    ValidationError,
)
from agenthost.services.errors import MeshError, ProviderError  # noqa: E402
from agenthost.services.instance_service import InvalidStateTransition  # noqa: E402

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bind the database from config and create tables on startup."""
    global _startup_time

    config = get_config()
    logging.getLogger("agenthost").setLevel(config.log_level.upper())
    validate_api_key_strength()
    configure_database(config.database.url, echo=config.database.echo)
    init_db()
    _startup_time = _time.time()
    logger.info("agenthost API started")
    yield
    logger.info("agenthost API shutting down")


app = FastAPI(
    title="agenthost API",
    description="Provisioning and lifecycle orchestration for agent machines",
    version="0.1.0",
    lifespan=lifespan,
)

# Optional API auth when AGENTHOST_API_KEY is configured.
app.middleware("http")(maybe_require_api_key)


def _error_body(error: AgentHostError) -> dict:
    return {
        "error_code": error.code,
        "message": error.message,
        "remediation": error.remediation,
    }


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map typed domain errors to HTTP status codes.

    NotFoundError -> 404, ConflictError (including LifecycleError) -> 409,
    ValidationError -> 400.
    """
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    elif isinstance(exc, ValidationError):
        status_code = 400
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"message": str(exc)})


@app.exception_handler(InvalidStateTransition)
async def transition_error_handler(
    request: Request, exc: InvalidStateTransition
) -> JSONResponse:
    return JSONResponse(status_code=409, content={"message": str(exc)})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    """Hosting provider failures surface as 502 with the translated message only."""
    error = AgentHostError.from_message(exc.code, exc.message)
    return JSONResponse(status_code=502, content=_error_body(error))


@app.exception_handler(MeshError)
async def mesh_error_handler(request: Request, exc: MeshError) -> JSONResponse:
    error = AgentHostError.from_message(exc.code, exc.message)
    return JSONResponse(status_code=502, content=_error_body(error))


# Include routers
app.include_router(agents.router, prefix="/api/v1")
app.include_router(provisioning.router, prefix="/api/v1")
app.include_router(credentials.router, prefix="/api/v1")


@app.get("/health")
def health_check() -> dict:
    """Liveness endpoint with version and uptime."""
    try:
        version = _pkg_version("agenthost")
    except PackageNotFoundError:
        version = "unknown"
    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    return {"status": "healthy", "version": version, "uptime_seconds": uptime}
