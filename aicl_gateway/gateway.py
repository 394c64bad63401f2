"""
Identity Gateway
================

Composition root: builds the directory, authenticator, token verifier and
pipeline from settings and owns the shared HTTP client.

Lifecycle:
    gateway = IdentityGateway.from_settings(settings)
    await gateway.startup()      # OIDC discovery
    ...
    await gateway.aclose()       # closes the HTTP client
"""

import logging
from typing import Optional

import httpx

from .auth.oidc import OidcAuthenticator
from .auth.tokens import TokenVerifier, VaultTokenStore
from .config import Settings
from .idp.client import KeycloakAdminClient
from .idp.directory import IdentityDirectory
from .pipeline.errors import ErrorHandler, JSONErrorHandler
from .pipeline.runner import GatewayPipeline
from .pipeline.stages import IdentifyStage, LoginEnforceStage, TokenStage

logger = logging.getLogger(__name__)


class IdentityGateway:
    """
    Holds the gateway's collaborators.

    Args:
        directory: Identity directory
        authenticator: OIDC authenticator
        token_verifier: API token verifier
        error_handler: Renders pipeline errors
        http: Shared HTTP client, closed by ``aclose``
        fallback_redirect: Where a completed login lands without a target
        post_logout_redirect_uri: Where the provider sends the browser after logout
    """

    def __init__(
        self,
        *,
        directory: IdentityDirectory,
        authenticator: OidcAuthenticator,
        token_verifier: TokenVerifier,
        error_handler: Optional[ErrorHandler] = None,
        http: Optional[httpx.AsyncClient] = None,
        fallback_redirect: str = "/",
        post_logout_redirect_uri: str = "/",
    ):
        self.directory = directory
        self.authenticator = authenticator
        self.token_verifier = token_verifier
        self.error_handler = error_handler or JSONErrorHandler()
        self.http = http
        self.fallback_redirect = fallback_redirect
        self.post_logout_redirect_uri = post_logout_redirect_uri

    @classmethod
    def from_settings(
        cls, settings: Settings, http: Optional[httpx.AsyncClient] = None
    ) -> "IdentityGateway":
        """
        Build every collaborator from settings.

        Args:
            settings: Application settings
            http: HTTP client to use instead of a new one (tests pass a
                client with a mock transport)
        """
        if http is None:
            http = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

        admin_client = KeycloakAdminClient.from_settings(settings, http)
        directory = IdentityDirectory.from_settings(settings, admin_client)
        authenticator = OidcAuthenticator.from_settings(settings, http, directory)
        token_verifier = TokenVerifier(VaultTokenStore.from_settings(settings, http), directory)

        return cls(
            directory=directory,
            authenticator=authenticator,
            token_verifier=token_verifier,
            error_handler=JSONErrorHandler(expose_detail=settings.LOG_LEVEL == "DEBUG"),
            http=http,
            post_logout_redirect_uri=settings.POST_LOGOUT_REDIRECT_URI,
        )

    def build_pipeline(self) -> GatewayPipeline:
        return (
            GatewayPipeline.builder()
            .stage(TokenStage(self.token_verifier))
            .stage(IdentifyStage(self.authenticator))
            .stage(LoginEnforceStage(self.authenticator, self.fallback_redirect))
            .error_handler(self.error_handler)
            .build()
        )

    async def startup(self) -> None:
        await self.authenticator.startup()
        logger.info("Identity gateway ready")

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()
