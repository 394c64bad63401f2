"""
Authentication Package

This package handles the two ways a request can be authenticated:

- Browser login: OIDC authorization code flow with state, nonce and PKCE
  against the identity provider; the resolved identity lives in the session
- API tokens: bearer or ``?token=`` tokens issued by Vault, verified on
  every request

Modules:
- oidc: OidcAuthenticator (start_auth, handle_callback, authenticate, logout)
- tokens: VaultTokenStore, TokenVerifier and extract_token
- session: the gateway's fields in the session store
- utils: PKCE helpers, JWKS caching and ID token verification
- routes: logout and current-identity endpoints
"""

from .oidc import OidcAuthenticator
from .routes import auth_router
from .tokens import TokenVerifier, VaultTokenStore, extract_token

__all__ = [
    "OidcAuthenticator",
    "TokenVerifier",
    "VaultTokenStore",
    "extract_token",
    "auth_router",
]
