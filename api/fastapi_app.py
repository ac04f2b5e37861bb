"""
FastAPI Application for the Stake Ledger.

Main application entry point:
- Staking endpoints (/api/staking)
- In-process token endpoints (/api/token)
- Health check (/api/health)
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import stakeledger
from api.errors import ledger_error, make_error_response
from stakeledger.config import AppConfig, get_config
from stakeledger.errors import StakingLedgerError
from stakeledger.logging_config import setup_logging

logger = logging.getLogger("stakeledger.api")


# =============================================================================
# Application Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management."""
    logger.info("Starting Stake Ledger API...")
    yield
    logger.info("Shutting down Stake Ledger API...")


# =============================================================================
# Application Factory
# =============================================================================


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or get_config()

    app = FastAPI(
        title="Stake Ledger API",
        description="Time-locked staking with continuously accruing rewards",
        version=stakeledger.__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        debug=config.debug,
    )

    app.state.config = config

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # GZip compression for responses
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Global exception handlers for standardized error responses
    @app.exception_handler(StakingLedgerError)
    async def ledger_exception_handler(request: Request, exc: StakingLedgerError):
        return ledger_error(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=make_error_response(
                "VAL_001",
                "Invalid request body",
                {"errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                    for err in exc.errors()
                ]},
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error_map = {
            400: "VAL_001",
            403: "AUTHZ_001",
            404: "VAL_404",
            500: "SYS_003",
            503: "SYS_002",
        }
        error_code = error_map.get(exc.status_code, "SYS_003")
        return JSONResponse(
            status_code=exc.status_code,
            content=make_error_response(error_code, str(exc.detail))
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=make_error_response("SYS_003", "Internal server error")
        )

    # Include routers
    _include_routers(app)

    # Health check
    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": stakeledger.__version__,
            "environment": config.environment,
            "timestamp": time.time(),
        }

    return app


def _include_routers(app: FastAPI):
    """Include all API routers."""
    from api.routes.staking import router as staking_router
    from api.routes.token import router as token_router
    app.include_router(staking_router)
    app.include_router(token_router)
    logger.info("Included staking and token routes")


# =============================================================================
# Entry point
# =============================================================================


def main():
    config = get_config()
    setup_logging(
        log_dir=config.logging.log_dir,
        log_file=config.logging.log_file,
        level=config.logging.level,
        json_format=config.logging.format == "json",
        console_output=config.logging.console,
        max_bytes=config.logging.max_file_size_mb * 1024 * 1024,
        backup_count=config.logging.backup_count,
        extra_fields={"environment": config.environment},
    )
    uvicorn.run(create_app(config), host=config.api.host, port=config.api.port)


if __name__ == "__main__":
    main()
