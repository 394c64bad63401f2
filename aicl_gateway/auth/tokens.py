"""
API Token Verification
======================

Verifies API tokens issued by Vault and maps them to domain identities.

A token is sent either as ``Authorization: Bearer <token>`` or as the
``?token=`` query parameter; the header wins when both are present. Raw token
values are never cached or logged.
"""

import logging
from typing import Optional
from uuid import UUID

import httpx
from fastapi import Request

from ..config import Settings
from ..errors import InvalidToken, NotFound, UpstreamFailure
from ..idp.directory import IdentityDirectory
from ..models import Identity

logger = logging.getLogger(__name__)

# Vault answers these for expired, revoked, malformed or unknown tokens
_REJECTED_STATUSES = {400, 401, 403, 404}


def extract_token(request: Request) -> Optional[str]:
    """
    Extract an API token from the request.

    Returns:
        The bearer token, else the ``token`` query parameter, else None
    """
    authorization = request.headers.get("authorization")
    if authorization:
        parts = authorization.split()
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
            return parts[1]

    token = request.query_params.get("token")
    return token or None


class VaultTokenStore:
    """
    Looks tokens up in Vault with ``auth/token/lookup-self``.

    Args:
        http: Shared HTTP client
        vault_addr: Vault server address
        subject_meta_key: Token metadata key holding the user UUID; the
            token's entity id is used when the key is absent
    """

    def __init__(self, http: httpx.AsyncClient, vault_addr: str, subject_meta_key: str = "user_id"):
        self._http = http
        self._vault_addr = vault_addr.rstrip("/")
        self._subject_meta_key = subject_meta_key

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient) -> "VaultTokenStore":
        return cls(http, settings.vault_addr_str, settings.VAULT_SUBJECT_META_KEY)

    async def verify_token(self, token: str) -> UUID:
        """
        Return the subject owning *token*.

        Raises:
            InvalidToken: Expired, revoked, malformed or unknown token
            UpstreamFailure: Vault unreachable or failing
        """
        try:
            response = await self._http.get(
                f"{self._vault_addr}/v1/auth/token/lookup-self",
                headers={"X-Vault-Token": token},
            )
        except httpx.HTTPError as e:
            logger.error("Vault lookup failed", extra={"error": str(e)})
            raise UpstreamFailure("Secret store unreachable", detail=str(e)) from e

        if response.status_code in _REJECTED_STATUSES:
            logger.info(
                "API token rejected by secret store",
                extra={"status_code": response.status_code, "errors": _vault_errors(response)},
            )
            raise InvalidToken("Invalid API token")
        if not response.is_success:
            logger.error("Vault lookup returned an error", extra={"status_code": response.status_code})
            raise UpstreamFailure("Secret store request failed", detail=f"HTTP {response.status_code}")

        try:
            data = response.json().get("data") or {}
        except (ValueError, AttributeError) as e:
            raise UpstreamFailure("Secret store returned malformed JSON") from e
        if not isinstance(data, dict):
            raise UpstreamFailure("Secret store returned malformed JSON", detail="data is not an object")

        meta = data.get("meta") or {}
        if not isinstance(meta, dict):
            meta = {}
        subject = meta.get(self._subject_meta_key) or data.get("entity_id")
        try:
            return UUID(str(subject))
        except ValueError:
            logger.info("API token has no usable subject", extra={"subject": subject})
            raise InvalidToken("Invalid API token", detail="token has no user subject") from None


class TokenVerifier:
    """Resolves API tokens to identities through the secret store and the directory."""

    def __init__(self, store: VaultTokenStore, directory: IdentityDirectory):
        self._store = store
        self._directory = directory

    async def verify_token(self, token: str) -> UUID:
        return await self._store.verify_token(token)

    async def identify(self, token: str) -> Identity:
        """
        Verify *token* and resolve its owner.

        Raises:
            InvalidToken: The token is invalid or its owner no longer exists
            UpstreamFailure: Secret store or directory unreachable
        """
        subject = await self.verify_token(token)
        try:
            return await self._directory.get_domain_user(subject)
        except NotFound as e:
            logger.info("API token owner not found", extra={"user_id": str(subject)})
            raise InvalidToken("Invalid API token", detail="token owner not found") from e


def _vault_errors(response: httpx.Response) -> str:
    try:
        return "; ".join(response.json().get("errors", []))
    except (ValueError, AttributeError, TypeError):
        return response.text[:200]
