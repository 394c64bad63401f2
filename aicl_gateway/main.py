"""
FastAPI Identity Gateway Application Factory
============================================

Entry point for the identity gateway that sits in front of the AICL services.

Architecture:
    Browser / API client → SessionMiddleware → IdentityGatewayMiddleware → routes

Routers:
    - /auth/logout        : End the session (exempt from the gateway)
    - /api/me             : Identity attached to the request
    - /api/report, /api/teams, /api/institutions : Root-only directory views
    - /api/cache/...      : Root-only cache invalidation
    - /health             : Health check endpoint (exempt)

Environment Variables Required:
    - OIDC_ISSUER, OIDC_CLIENT_ID, OIDC_CLIENT_SECRET
    - IDP_BASE_URL, IDP_REALM (and IDP_ADMIN_USERNAME / IDP_ADMIN_PASSWORD)
    - VAULT_ADDR
    - SESSION_SECRET_KEY
    - LOG_LEVEL (default: INFO)

Running the Service:
    Development:
        uvicorn aicl_gateway.main:create_app --factory --reload --host 0.0.0.0 --port 4040

    Production:
        uvicorn aicl_gateway.main:create_app --factory --host 0.0.0.0 --port 4040 --workers 4

    Direct:
        python -m aicl_gateway.main
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.middleware.sessions import SessionMiddleware

from .auth.routes import auth_router
from .config import Settings, get_settings, validate_configuration
from .errors import GatewayError
from .gateway import IdentityGateway
from .idp.routes import directory_router
from .pipeline.runner import IdentityGatewayMiddleware

logger = logging.getLogger(__name__)


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[IdentityGateway] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management (OIDC discovery, HTTP client shutdown)
        - Session and identity gateway middleware
        - Route handlers
        - Gateway error handler

    Args:
        settings: Settings to use instead of the environment
        gateway: Pre-built gateway (tests pass one wired to fake providers)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    gateway = gateway or IdentityGateway.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup tasks:
            - Report configuration problems
            - Load OIDC provider metadata

        Shutdown tasks:
            - Close the shared HTTP client
        """
        report = validate_configuration(settings)
        for warning in report["warnings"]:
            logger.warning(warning)
        for error in report["errors"]:
            logger.error(error)

        await gateway.startup()
        logger.info(
            "Identity gateway started",
            extra={"issuer": settings.OIDC_ISSUER, "realm": settings.IDP_REALM},
        )

        yield

        logger.info("Shutting down identity gateway")
        await gateway.aclose()

    app = FastAPI(
        title="AICL Identity Gateway",
        description="OIDC and API-token authentication in front of the AICL services",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    # Middleware added last runs first: the session must exist before the gateway runs
    app.add_middleware(
        IdentityGatewayMiddleware,
        pipeline=gateway.build_pipeline(),
        exempt_paths=settings.exempt_paths_list,
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET_KEY,
        session_cookie=settings.SESSION_COOKIE_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        same_site="lax",
        https_only=settings.SESSION_HTTPS_ONLY,
    )

    app.include_router(auth_router)
    app.include_router(directory_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": "aicl-gateway",
            "version": "1.0.0"
        }

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
        logger.warning(
            f"Gateway error in handler: {exc}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error_code": exc.error_code,
            },
        )
        return gateway.error_handler.handle_error(request, exc)

    return app


def main() -> None:
    """Run the gateway with uvicorn using settings from the environment."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    uvicorn.run(
        "aicl_gateway.main:create_app",
        factory=True,
        host=settings.GATEWAY_HOST,
        port=settings.GATEWAY_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
