"""
Loan Servicing API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .auth import LoanServicingSystem, get_system
from .loans import router as loans_router
from .payments import router as payments_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging
from ..exceptions import (
    LoanServicingError, ValidationError, InvalidTransitionError, AuthorizationError,
    NotFoundError, ConcurrencyConflict, DocumentStorageError
)


ERROR_STATUS_CODES = [
    (ValidationError, 422),
    (InvalidTransitionError, 409),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConcurrencyConflict, 409),
    (DocumentStorageError, 502),
]


def status_code_for(error: LoanServicingError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 400


async def loan_servicing_error_handler(request: Request, exc: LoanServicingError) -> JSONResponse:
    """Translate core errors into JSON responses"""
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


def create_app(system: Optional[LoanServicingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Loan lifecycle, amortization and payment verification",
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
        app.dependency_overrides[get_system] = lambda: system

    app.add_exception_handler(LoanServicingError, loan_servicing_error_handler)

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    uvicorn.run(
        "loan_servicing.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
