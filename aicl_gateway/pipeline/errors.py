"""
Error handlers.

The pipeline never renders errors itself; every ``GatewayError`` raised by a
stage is passed to an ``ErrorHandler``.
"""

import logging
from typing import Protocol

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from ..errors import GatewayError

logger = logging.getLogger(__name__)


class ErrorHandler(Protocol):
    def handle_error(self, request: Request, error: GatewayError) -> Response:
        ...


class JSONErrorHandler:
    """
    Renders errors as ``{"error": <code>, "message": <text>}`` with the
    error's HTTP status.

    Args:
        expose_detail: Include the error detail in the message
    """

    def __init__(self, expose_detail: bool = False):
        self.expose_detail = expose_detail

    def handle_error(self, request: Request, error: GatewayError) -> Response:
        message = str(error) if self.expose_detail else error.message
        headers = {}
        if error.status_code == 401:
            headers["WWW-Authenticate"] = "Bearer"
        return JSONResponse(
            status_code=error.status_code,
            content={"error": error.error_code, "message": message},
            headers=headers,
        )
