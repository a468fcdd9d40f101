"""Risk Register: Main FastAPI Application.

An operational risk register with KRI/KCI breach tracking, tolerance
limit escalation and immutable quarterly risk history.
"""

import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .api.deps import error_status
from .core import close_db, get_settings, init_db
from .schemas import ErrorResponse
from .services import DuplicatePeriodCommit, RiskEngineError, WorkflowStateError

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting {settings.app_name} {settings.app_version} ({settings.environment})")

    # Startup - skip init_db in production (tables are migrated)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Risk Register API

    A **system of record** for operational risk.

    ### Key Features

    - **Risk Catalog**: Risks linked to root causes, impacts and controls, each with exactly one primary cause and impact.
    - **Indicator Monitoring**: KRI/KCI measurements classified against per-assignment thresholds, with a breach workflow.
    - **Tolerance Limits**: Soft and hard limit breaches with CRO/board escalation and a tolerance exception process.
    - **Quarterly History**: Committed periods freeze every active risk into an immutable snapshot.
    - **Audit Trail**: Hash-chained log of every change.

    ### Authentication

    All endpoints require a valid JWT token in the `Authorization: Bearer <token>` header.
    The organization scope comes from the token's `org` claim.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
    allow_headers=["*"],
    max_age=86400,
)


@app.exception_handler(RiskEngineError)
async def risk_engine_exception_handler(request: Request, exc: RiskEngineError):
    """Translate engine errors into the standard error response."""
    status_code, slug = error_status(exc)
    current_state = None
    entity_id = None
    if isinstance(exc, WorkflowStateError):
        current_state = exc.current_state
        entity_id = exc.entity_id
    elif isinstance(exc, DuplicatePeriodCommit):
        entity_id = exc.existing_commit_id
    if status_code >= 500:
        logger.error(f"Engine error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=slug,
            message=str(exc),
            current_state=current_state,
            entity_id=str(entity_id) if entity_id else None,
        ).model_dump(),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    if settings.debug:
        logger.error(traceback.format_exc())

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred",
            details=[],
        ).model_dump(),
    )


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "risk_register.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
