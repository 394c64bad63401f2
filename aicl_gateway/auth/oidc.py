"""
OIDC Authenticator
==================

Authorization code flow with state, nonce and PKCE against the identity
provider.

Per-session lifecycle:

    Unauthenticated --start_auth--> AuthRequested --handle_callback--> Authenticated
                                          |
                                          +--(callback failure)--> Unauthenticated

The provider redirects back to the URI the login started from, so the
``redirect_uri`` sent to the provider is the sanitized target URI itself.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
from uuid import UUID

import httpx

from ..config import Settings
from ..errors import AuthenticationFailure, ConfigurationFault, StateMismatch, UpstreamFailure
from ..idp.directory import IdentityDirectory
from ..models import AuthFlowState, Identity, ProviderMetadata
from .session import (
    Session,
    clear_identity,
    pop_flow_state,
    read_identity,
    write_flow_state,
    write_identity,
)
from .utils import JwksCache, generate_code_challenge, generate_code_verifier, verify_id_token

logger = logging.getLogger(__name__)


class OidcAuthenticator:
    """
    Drives the browser login flow and resolves the logged-in identity.

    Args:
        http: Shared HTTP client
        directory: Identity directory used to resolve the token subject
        client_id: OIDC client identifier
        client_secret: Client secret, for confidential clients
        scopes: Requested scopes; must include ``openid``
        issuer: Provider issuer URL, used for discovery
        metadata: Provider endpoints; discovered at startup when omitted
        jwks_ttl: Seconds a fetched JWKS is reused
    """

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        directory: IdentityDirectory,
        client_id: str,
        client_secret: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        issuer: Optional[str] = None,
        metadata: Optional[ProviderMetadata] = None,
        jwks_ttl: float = 3600,
    ):
        self._http = http
        self._directory = directory
        self._client_id = client_id
        self._client_secret = client_secret
        self._scopes = scopes or ["openid", "profile", "email"]
        self._issuer = issuer.rstrip("/") if issuer else None
        self._jwks_ttl = jwks_ttl
        self._metadata: Optional[ProviderMetadata] = None
        self._jwks: Optional[JwksCache] = None
        if metadata is not None:
            self._use_metadata(metadata)

    @classmethod
    def from_settings(
        cls, settings: Settings, http: httpx.AsyncClient, directory: IdentityDirectory
    ) -> "OidcAuthenticator":
        return cls(
            http=http,
            directory=directory,
            client_id=settings.OIDC_CLIENT_ID,
            client_secret=settings.OIDC_CLIENT_SECRET,
            scopes=settings.scopes_list,
            issuer=str(settings.OIDC_ISSUER),
            jwks_ttl=settings.JWKS_CACHE_SECONDS,
        )

    @property
    def metadata(self) -> ProviderMetadata:
        if self._metadata is None:
            raise ConfigurationFault("OIDC provider metadata not loaded", detail="call startup() first")
        return self._metadata

    def _use_metadata(self, metadata: ProviderMetadata) -> None:
        self._metadata = metadata
        self._jwks = JwksCache(self._http, metadata.jwks_uri, self._jwks_ttl)

    async def startup(self) -> None:
        """
        Load provider metadata by OIDC discovery unless it was supplied.

        Raises:
            ConfigurationFault: If neither metadata nor an issuer was configured
            UpstreamFailure: If the discovery document cannot be fetched
        """
        if self._metadata is not None:
            return
        if not self._issuer:
            raise ConfigurationFault("OIDC issuer not configured")

        discovery_url = f"{self._issuer}/.well-known/openid-configuration"
        try:
            response = await self._http.get(discovery_url)
            response.raise_for_status()
            metadata = ProviderMetadata.model_validate(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error("OIDC discovery failed", extra={"url": discovery_url, "error": str(e)})
            raise UpstreamFailure("OIDC discovery failed", detail=str(e)) from e

        self._use_metadata(metadata)
        logger.info("Loaded OIDC provider metadata", extra={"issuer": metadata.issuer})

    # =========================================================================
    # Login
    # =========================================================================

    def start_auth(self, session: Session, target_uri: str) -> str:
        """
        Begin a login and return the provider authorization URI.

        Generates fresh state, nonce and PKCE verifier and stores them in the
        session with the target URI. No network I/O happens here.
        """
        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        code_verifier = generate_code_verifier()

        params = {
            "client_id": self._client_id,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "redirect_uri": target_uri,
            "state": state,
            "nonce": nonce,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        authorization_url = f"{self.metadata.authorization_endpoint}?{urlencode(params)}"

        write_flow_state(
            session,
            AuthFlowState(state=state, verifier=code_verifier, nonce=nonce, target_uri=target_uri),
        )
        logger.debug("Started OIDC login", extra={"target_uri": target_uri})
        return authorization_url

    async def handle_callback(
        self,
        code: str,
        state: str,
        session: Session,
        fallback_redirect: str = "/",
    ) -> str:
        """
        Complete a login from the provider's redirect.

        The pending login is popped before anything else, so a replayed or
        concurrent callback finds nothing and fails.

        Returns:
            URI to redirect the browser to

        Raises:
            AuthenticationFailure: No pending login, rejected code, bad ID token,
                or no recognized role
            StateMismatch: The state does not match the pending login
            UpstreamFailure: Provider or directory unreachable
        """
        flow = pop_flow_state(session)
        if flow is None:
            raise AuthenticationFailure("No login in progress")
        if not secrets.compare_digest(flow.state.encode("utf-8"), state.encode("utf-8")):
            logger.warning("OIDC state mismatch")
            raise StateMismatch("Invalid state parameter")

        token_data = await self._exchange_code_for_tokens(code, flow)

        id_token = token_data.get("id_token")
        if not id_token:
            raise AuthenticationFailure("No ID token received from identity provider")

        claims = await verify_id_token(
            id_token,
            jwks=self._jwks,
            issuer=self.metadata.issuer,
            audience=self._client_id,
            nonce=flow.nonce,
            access_token=token_data.get("access_token"),
        )

        try:
            subject = UUID(str(claims.get("sub")))
        except ValueError as e:
            raise AuthenticationFailure("ID token subject is not a user id", detail=str(claims.get("sub"))) from e

        identity = await self._directory.get_domain_user(subject)
        write_identity(session, identity)

        logger.info(
            "User logged in",
            extra={"user_id": str(identity.id), "role": identity.role.as_str()},
        )
        return flow.target_uri or fallback_redirect

    async def _exchange_code_for_tokens(self, code: str, flow: AuthFlowState) -> Dict[str, Any]:
        payload = {
            "client_id": self._client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": flow.target_uri,
            "code_verifier": flow.verifier,
        }
        # Confidential client
        if self._client_secret:
            payload["client_secret"] = self._client_secret

        try:
            response = await self._http.post(
                self.metadata.token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.error("Token exchange request failed", extra={"error": str(e)})
            raise UpstreamFailure("Unable to reach token endpoint", detail=str(e)) from e

        if response.is_server_error:
            raise UpstreamFailure("Token endpoint failed", detail=f"HTTP {response.status_code}")
        if not response.is_success:
            error_msg = _error_description(response)
            logger.warning(
                "Token exchange rejected",
                extra={"status_code": response.status_code, "error": error_msg},
            )
            raise AuthenticationFailure("Token exchange failed", detail=error_msg)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFailure("Token endpoint returned malformed JSON") from e

    # =========================================================================
    # Session
    # =========================================================================

    async def authenticate(self, session: Session) -> Optional[Identity]:
        """Return the identity stored in the session, if any."""
        return read_identity(session)

    def logout(self, session: Session, post_logout_redirect_uri: str) -> str:
        """
        Forget the session identity and return where to send the browser.

        Returns:
            The provider end-session URI, or *post_logout_redirect_uri* when
            the provider has none
        """
        identity = read_identity(session)
        clear_identity(session)
        if identity is not None:
            logger.info("User logged out", extra={"user_id": str(identity.id)})

        end_session = self._metadata.end_session_endpoint if self._metadata else None
        if not end_session:
            return post_logout_redirect_uri
        params = {"client_id": self._client_id, "post_logout_redirect_uri": post_logout_redirect_uri}
        return f"{end_session}?{urlencode(params)}"


def _error_description(response: httpx.Response) -> str:
    try:
        error_data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if not isinstance(error_data, dict):
        return f"HTTP {response.status_code}"
    return error_data.get("error_description") or error_data.get("error") or f"HTTP {response.status_code}"
