"""
Dues Ledger API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .auth import DuesSystem, get_dues_system
from .due_types import router as due_types_router
from .periods import router as periods_router
from .unit_dues import router as unit_dues_router
from .reporting import router as reporting_router
from .. import __version__
from ..config import get_config
from ..errors import DuesLedgerError
from ..logging_config import get_logger, setup_logging


STATUS_BY_KIND = {
    "validation_error": 422,
    "not_found": 404,
    "permission_denied": 403,
    "conflict": 409,
    "transient_failure": 503,
}

ORGANIZATION_PREFIX = "/organizations/{organization_id}"


def create_app(system: Optional[DuesSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Dues system to serve; the lazily created global one when None
    """
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    logger = get_logger("dues_ledger.api")

    app = FastAPI(
        title="Dues Ledger API",
        description="Dues accrual and payment ledger for property management",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if system is not None:
        app.dependency_overrides[get_dues_system] = lambda: system

    @app.exception_handler(DuesLedgerError)
    async def ledger_error_handler(request: Request, exc: DuesLedgerError):
        status_code = STATUS_BY_KIND.get(exc.kind, 400)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # Include routers
    app.include_router(due_types_router, prefix=f"{ORGANIZATION_PREFIX}/due-types", tags=["Due Types"])
    app.include_router(periods_router, prefix=f"{ORGANIZATION_PREFIX}/dues-periods", tags=["Dues Periods"])
    app.include_router(unit_dues_router, prefix=f"{ORGANIZATION_PREFIX}/unit-dues", tags=["Unit Dues"])
    app.include_router(reporting_router, prefix=ORGANIZATION_PREFIX, tags=["Reports"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "dues_ledger_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "dues_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
