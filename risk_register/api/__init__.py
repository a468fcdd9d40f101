"""API routes for the Risk Register."""

from fastapi import APIRouter

from .audit import router as audit_router
from .breaches import router as breaches_router
from .indicators import router as indicators_router
from .limit_breaches import router as limit_breaches_router
from .measurements import router as measurements_router
from .periods import router as periods_router
from .risks import router as risks_router

# Main API router
api_router = APIRouter()

# Register and catalog
api_router.include_router(risks_router)
api_router.include_router(indicators_router)

# Monitoring
api_router.include_router(measurements_router)
api_router.include_router(breaches_router)
api_router.include_router(limit_breaches_router)

# Reporting
api_router.include_router(periods_router)
api_router.include_router(audit_router)

__all__ = ["api_router"]
