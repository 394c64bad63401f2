"""
Request Pipeline Package

Ordered authentication stages run in front of every protected request:

    TokenStage -> IdentifyStage -> LoginEnforceStage -> handler

Modules:
- context: RequestContext threaded through the stages
- stages: the three stages
- runner: GatewayPipeline, its builder and the ASGI middleware
- errors: ErrorHandler protocol and the default JSON renderer
- redirect: removal of OIDC callback parameters from redirect targets
"""

from .context import RequestContext
from .errors import ErrorHandler, JSONErrorHandler
from .redirect import strip_oidc_params
from .runner import GatewayPipeline, IdentityGatewayMiddleware
from .stages import IdentifyStage, LoginEnforceStage, Stage, TokenStage

__all__ = [
    "RequestContext",
    "ErrorHandler",
    "JSONErrorHandler",
    "strip_oidc_params",
    "GatewayPipeline",
    "IdentityGatewayMiddleware",
    "Stage",
    "TokenStage",
    "IdentifyStage",
    "LoginEnforceStage",
]
