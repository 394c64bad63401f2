"""
Pipeline Stages
===============

Each stage inspects the request context and either continues (returns None)
or short-circuits with a response. Errors are raised, never rendered here.

Order matters and is enforced by the pipeline builder:

    TokenStage -> IdentifyStage -> LoginEnforceStage
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from fastapi import Response, status
from fastapi.responses import RedirectResponse

from ..auth.oidc import OidcAuthenticator
from ..auth.tokens import TokenVerifier, extract_token
from .context import RequestContext
from .redirect import strip_oidc_params

logger = logging.getLogger(__name__)


class Stage(ABC):
    """Base class for pipeline stages."""

    # Position in the pipeline; stages must be assembled in ascending order
    order: int = 0

    @abstractmethod
    async def process(self, ctx: RequestContext) -> Optional[Response]:
        """Return a response to short-circuit the request, or None to continue."""


class TokenStage(Stage):
    """
    Authenticates API tokens.

    A present but invalid token is an error; the request does not fall back
    to the session.
    """

    order = 10

    def __init__(self, verifier: TokenVerifier):
        self.verifier = verifier

    async def process(self, ctx: RequestContext) -> Optional[Response]:
        token = extract_token(ctx.request)
        if token is None:
            return None
        ctx.identity = await self.verifier.identify(token)
        logger.debug("Authenticated API token", extra={"user_id": str(ctx.identity.id)})
        return None


class IdentifyStage(Stage):
    """Attaches the identity stored in the session, if any."""

    order = 20

    def __init__(self, authenticator: OidcAuthenticator):
        self.authenticator = authenticator

    async def process(self, ctx: RequestContext) -> Optional[Response]:
        if ctx.identity is None:
            ctx.identity = await self.authenticator.authenticate(ctx.session)
        return None


class LoginEnforceStage(Stage):
    """
    Sends unauthenticated browsers through the OIDC login.

    A request carrying ``code`` and ``state`` is the provider's callback and
    completes the login; any other unauthenticated request starts one.
    """

    order = 30

    def __init__(self, authenticator: OidcAuthenticator, fallback_redirect: str = "/"):
        self.authenticator = authenticator
        self.fallback_redirect = fallback_redirect

    async def process(self, ctx: RequestContext) -> Optional[Response]:
        if ctx.identity is not None:
            return None

        params = ctx.request.query_params
        code = params.get("code")
        state = params.get("state")
        if code and state:
            target = await self.authenticator.handle_callback(
                code, state, ctx.session, self.fallback_redirect
            )
            return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)

        target_uri = strip_oidc_params(str(ctx.request.url))
        authorization_url = self.authenticator.start_auth(ctx.session, target_uri)
        return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)
