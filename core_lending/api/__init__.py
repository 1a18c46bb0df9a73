"""
Core Lending API Application Factory
"""

from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .. import __version__
from ..config import get_config
from ..exceptions import (
    AlreadyDisbursed, AuthenticationError, BusinessRuleViolation, ConcurrencyConflict,
    LendingError, NotFoundError, UnauthorizedAccess, ValidationError
)
from ..logging_config import get_logger, setup_logging
from .loans import router as loans_router


logger = get_logger("lending.api")

# Most specific class first
ERROR_STATUS: Dict[Type[LendingError], int] = {
    AlreadyDisbursed: 409,
    ConcurrencyConflict: 409,
    ValidationError: 400,
    NotFoundError: 404,
    BusinessRuleViolation: 422,
    UnauthorizedAccess: 403,
    AuthenticationError: 401,
}


def status_for(error: LendingError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status_code
    return 500


async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"Unhandled lending error on {request.url.path}: {exc.message}")
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "reasons": exc.reasons},
        headers=headers
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Core Lending API",
        description="Loan lifecycle and repayment engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LendingError, lending_error_handler)

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "core_lending_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    cfg = get_config()
    setup_logging(cfg.log_level, log_format=cfg.log_format, log_file=cfg.log_file)
    uvicorn.run(
        "core_lending.api:app",
        host=host or cfg.api_host,
        port=port or cfg.api_port,
        reload=debug,
        log_level=cfg.log_level.lower()
    )
