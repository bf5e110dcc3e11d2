"""
Lending Payments Admin API Application Factory
"""

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .errors import register_exception_handlers
from .loans import router as loans_router
from .transactions import router as transactions_router
from .reconciliation import router as reconciliation_router
from .system import LendingSystem, get_lending_system
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Payments API",
        description="Disbursement and collection lifecycle with processor reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Back office screens only; restrict per deployment
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(reconciliation_router, prefix="/reconciliation", tags=["Reconciliation"])

    # Health check endpoint
    @app.get("/health")
    def health_check(system: LendingSystem = Depends(get_lending_system)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_payments_api",
            "version": __version__,
            "processor_reachable": system.gateway.health_check()
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Payments API",
            "version": __version__,
            "description": "Disbursement and collection lifecycle with processor reconciliation",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "transactions": "/transactions",
                "reconciliation": "/reconciliation",
            }
        }

    return app


def run_server(host: str = None, port: int = None) -> None:
    """Run the API with the reconciliation sweep on a background thread"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format)

    system = get_lending_system()
    if config.sync_interval_seconds > 0:
        system.reconciliation.start(config.sync_interval_seconds)
    try:
        uvicorn.run(
            app,
            host=host or config.api_host,
            port=port or config.api_port,
            log_level="info"
        )
    finally:
        system.close()


app = create_app()

__all__ = ["app", "create_app", "run_server", "LendingSystem", "get_lending_system"]
