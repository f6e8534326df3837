"""
Banking Ledger API Application Factory
"""

import uuid
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import LedgerConfig, get_config
from ..errors import (
    AuthenticationError, AuthorizationError, ConcurrentModificationError,
    InsufficientFundsError, InvalidStateError, LedgerError, NotFoundError,
    PersistenceError, ValidationError,
)
from ..logging_config import get_logger, log_action, setup_logging
from ..system import BankingSystem
from .accounts import router as accounts_router
from .admin import router as admin_router
from .cards import router as cards_router
from .pin import router as pin_router
from .support import router as support_router
from .transfers import router as transfers_router


# Most specific first; ConcurrentModificationError is a PersistenceError
STATUS_CODES = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConcurrentModificationError, 409),
    (InvalidStateError, 409),
    (InsufficientFundsError, 422),
    (PersistenceError, 503),
)


def status_for(error: LedgerError) -> int:
    for error_class, status_code in STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 400


def create_app(system: Optional[BankingSystem] = None,
               config: Optional[LedgerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or (system.config if system else get_config())
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger = get_logger("banking_ledger.api")

    app = FastAPI(
        title="Banking Ledger API",
        description="Transfer approval and balance mutation service",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system or BankingSystem(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = status_for(exc)
        content = {"detail": exc.message, "code": exc.code}
        if isinstance(exc, ValidationError):
            content["errors"] = exc.errors
        log_action(
            logger, "error" if status_code >= 500 else "warning", exc.message,
            action=exc.code, resource=request.url.path,
            correlation_id=getattr(request.state, "correlation_id", None),
            extra={"status_code": status_code}
        )
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = {
            ".".join(str(part) for part in error["loc"] if part != "body"): error["msg"]
            for error in exc.errors()
        }
        return JSONResponse(
            status_code=400,
            content={"detail": "Validation failed", "code": ValidationError.code, "errors": errors}
        )

    app.include_router(pin_router, tags=["PIN"])
    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(cards_router, prefix="/cards", tags=["Cards"])
    app.include_router(support_router, prefix="/support-tickets", tags=["Support"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "banking_ledger_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Banking Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "verify_pin": "/verify-pin",
                "transfers": "/transfers",
                "accounts": "/accounts",
                "cards": "/cards",
                "support": "/support-tickets",
                "admin": "/admin",
            }
        }

    return app
