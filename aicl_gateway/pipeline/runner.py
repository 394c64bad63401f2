"""
Pipeline Runner & Middleware
============================

``GatewayPipeline`` runs the stages in order and routes every
``GatewayError`` to the error handler. ``IdentityGatewayMiddleware`` mounts a
pipeline in front of the application and publishes the resolved identity as
``request.state.identity``.

The middleware needs Starlette's ``SessionMiddleware`` outside it; without a
session in the request scope every request fails with a configuration fault.
"""

import logging
from typing import Iterable, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from ..errors import ConfigurationFault, GatewayError
from .context import RequestContext
from .errors import ErrorHandler
from .stages import Stage

logger = logging.getLogger(__name__)


class GatewayPipeline:
    """
    Ordered stages plus the handler their errors are rendered by.

    Build with ``GatewayPipeline.builder()`` so the assembly is validated.
    """

    def __init__(self, stages: List[Stage], error_handler: ErrorHandler):
        self.stages = stages
        self.error_handler = error_handler

    @classmethod
    def builder(cls) -> "GatewayPipelineBuilder":
        return GatewayPipelineBuilder()

    async def run(self, ctx: RequestContext) -> Optional[Response]:
        """
        Run every stage until one short-circuits.

        Returns:
            The short-circuit or error response, or None to continue to the
            application
        """
        try:
            for stage in self.stages:
                response = await stage.process(ctx)
                if response is not None:
                    return response
        except GatewayError as e:
            return self.handle_error(ctx.request, e)
        return None

    def handle_error(self, request: Request, error: GatewayError) -> Response:
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            "Request rejected by identity gateway",
            extra={
                "path": request.url.path,
                "error_code": error.error_code,
                "error": str(error),
                "cause": repr(error.__cause__) if error.__cause__ else None,
            },
        )
        return self.error_handler.handle_error(request, error)


class GatewayPipelineBuilder:
    def __init__(self):
        self._stages: List[Stage] = []
        self._error_handler: Optional[ErrorHandler] = None

    def stage(self, stage: Stage) -> "GatewayPipelineBuilder":
        self._stages.append(stage)
        return self

    def stages(self, stages: Iterable[Stage]) -> "GatewayPipelineBuilder":
        for stage in stages:
            self.stage(stage)
        return self

    def error_handler(self, handler: ErrorHandler) -> "GatewayPipelineBuilder":
        self._error_handler = handler
        return self

    def build(self) -> GatewayPipeline:
        """
        Validate and assemble the pipeline.

        Raises:
            ConfigurationFault: Missing error handler, no stages, or stages
                out of order
        """
        if self._error_handler is None:
            raise ConfigurationFault("Pipeline has no error handler")
        if not self._stages:
            raise ConfigurationFault("Pipeline has no stages")

        orders = [stage.order for stage in self._stages]
        if orders != sorted(set(orders)):
            names = ", ".join(type(stage).__name__ for stage in self._stages)
            raise ConfigurationFault("Pipeline stages out of order", detail=names)

        return GatewayPipeline(list(self._stages), self._error_handler)


class IdentityGatewayMiddleware(BaseHTTPMiddleware):
    """
    Runs the gateway pipeline for every request outside the exempt paths.

    Args:
        app: Downstream ASGI application
        pipeline: Assembled gateway pipeline
        exempt_paths: Paths (and their sub-paths) served without authentication
    """

    def __init__(self, app: ASGIApp, pipeline: GatewayPipeline, exempt_paths: Iterable[str] = ()):
        super().__init__(app)
        self.pipeline = pipeline
        self.exempt_paths = [path.rstrip("/") or "/" for path in exempt_paths]

    def is_exempt(self, path: str) -> bool:
        for exempt in self.exempt_paths:
            if path == exempt or (exempt != "/" and path.startswith(exempt + "/")):
                return True
        return False

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.identity = None
        if self.is_exempt(request.url.path):
            return await call_next(request)

        if "session" not in request.scope:
            return self.pipeline.handle_error(
                request,
                ConfigurationFault("Session store unavailable", detail="install SessionMiddleware"),
            )

        ctx = RequestContext(request=request, session=request.session)
        response = await self.pipeline.run(ctx)
        if response is not None:
            return response

        request.state.identity = ctx.identity
        return await call_next(request)
