"""
Authentication utilities for PKCE, JWKS management and ID token verification.

This module handles:
- Generating PKCE code verifiers and S256 challenges
- Fetching and caching the provider's JWKS (JSON Web Key Set)
- Verifying ID tokens (signature, issuer, audience, expiry, nonce)
"""

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Optional

import httpx
from jose import JOSEError, JWTError, jwk, jwt

from ..errors import AuthenticationFailure, UpstreamFailure

logger = logging.getLogger(__name__)


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode("utf-8").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# JWKS Cache
# =============================================================================

class JwksCache:
    """
    Cached copy of the provider's signing keys.

    Args:
        http: Shared HTTP client
        jwks_uri: Provider JWKS endpoint
        ttl_seconds: How long a fetched key set is reused
    """

    def __init__(self, http: httpx.AsyncClient, jwks_uri: str, ttl_seconds: float = 3600):
        self._http = http
        self.jwks_uri = jwks_uri
        self._ttl = ttl_seconds
        self._jwks: Optional[Dict[str, Any]] = None
        self._fetched_at: float = 0.0

    async def fetch(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the JWKS, reusing the cached copy while it is fresh.

        Args:
            force_refresh: If True, bypass cache and fetch fresh JWKS

        Raises:
            UpstreamFailure: If the endpoint is unreachable or the document is invalid
        """
        now = time.monotonic()
        if not force_refresh and self._jwks and (now - self._fetched_at) < self._ttl:
            return self._jwks

        try:
            response = await self._http.get(self.jwks_uri)
            response.raise_for_status()
            jwks_data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("JWKS fetch failed", extra={"jwks_uri": self.jwks_uri, "error": str(e)})
            raise UpstreamFailure("Unable to fetch signing keys", detail=str(e)) from e

        if "keys" not in jwks_data:
            raise UpstreamFailure("Invalid JWKS response", detail="missing 'keys' field")

        self._jwks = jwks_data
        self._fetched_at = now
        return jwks_data


def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the public key from JWKS that matches the token's kid.

    Returns:
        Matching key from JWKS, or None if not found

    Raises:
        JWTError: If token header is malformed or has no kid
    """
    unverified_header = jwt.get_unverified_header(token)

    kid = unverified_header.get("kid")
    if not kid:
        raise JWTError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    return None


# =============================================================================
# ID Token Verification
# =============================================================================

async def verify_id_token(
    id_token: str,
    *,
    jwks: JwksCache,
    issuer: str,
    audience: str,
    nonce: str,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Verify and decode an ID token from the provider.

    This function performs comprehensive validation:
    1. Finds the signing key, refreshing the JWKS once on an unknown kid
    2. Verifies the token signature
    3. Validates standard claims (iss, aud, exp, iat)
    4. Checks the nonce bound at start of login

    Args:
        id_token: JWT ID token string
        jwks: Signing key cache
        issuer: Expected issuer
        audience: Expected audience (the client id)
        nonce: Nonce stored with the pending login
        access_token: Access token issued alongside, for at_hash checks

    Returns:
        Dictionary of verified token claims

    Raises:
        AuthenticationFailure: If the token is invalid, expired or mismatched
        UpstreamFailure: If the JWKS endpoint is unreachable
    """
    try:
        signing_key = get_signing_key(id_token, await jwks.fetch())
        if not signing_key:
            # Keys may have rotated since the last fetch
            signing_key = get_signing_key(id_token, await jwks.fetch(force_refresh=True))
    except JWTError as e:
        raise AuthenticationFailure("Malformed ID token", detail=str(e)) from e

    if not signing_key:
        raise AuthenticationFailure("Unable to find matching signing key in JWKS")

    try:
        algorithm = signing_key.get("alg", "RS256")
        public_key = jwk.construct(signing_key, algorithm=algorithm)
        claims = jwt.decode(
            id_token,
            public_key.to_pem().decode("utf-8"),
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            access_token=access_token,
            options={
                "verify_at_hash": access_token is not None,
                "leeway": 10,  # 10 seconds clock skew tolerance
            },
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationFailure("ID token has expired") from e
    except jwt.JWTClaimsError as e:
        raise AuthenticationFailure("Invalid token claims", detail=str(e)) from e
    except JOSEError as e:
        raise AuthenticationFailure("Token verification failed", detail=str(e)) from e

    if claims.get("nonce") != nonce:
        raise AuthenticationFailure("Nonce mismatch")

    return claims
