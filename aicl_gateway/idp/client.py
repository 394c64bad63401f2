"""
Keycloak Admin API Client
=========================

HTTP boundary between the identity directory and the Keycloak admin REST API.

Responsibilities:
- Obtain and cache an admin access token (client credentials grant, or the
  master realm password grant when admin credentials are configured).
- Read users, groups and realm role mappings for one realm.
- Translate transport and server errors into ``UpstreamFailure`` while
  reporting 404 as ``None`` so callers can tell "not found" from "broken".
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Type, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel, ValidationError

from ..config import Settings
from ..errors import UpstreamFailure
from ..models import IdpGroup, IdpRole, IdpUser

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

ModelT = TypeVar("ModelT", bound=BaseModel)


class AdminTokenCache:
    """
    Holds the current admin access token until shortly before it expires.

    Args:
        expiry_buffer: Seconds before actual expiry at which the token is
            considered stale
    """

    def __init__(self, expiry_buffer: float = 30.0):
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._expiry_buffer = expiry_buffer

    def get(self) -> Optional[str]:
        if self._token is not None and time.monotonic() < self._expires_at:
            return self._token
        return None

    def set(self, token: str, expires_in: float) -> None:
        self._token = token
        self._expires_at = time.monotonic() + max(0.0, expires_in - self._expiry_buffer)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class KeycloakAdminClient:
    """
    Read-only client for one Keycloak realm's users, groups and roles.

    The ``httpx.AsyncClient`` is owned by the caller and shared with the
    other gateway clients.
    """

    def __init__(
        self,
        *,
        http: httpx.AsyncClient,
        base_url: str,
        realm: str,
        client_id: str,
        client_secret: Optional[str] = None,
        admin_username: Optional[str] = None,
        admin_password: Optional[str] = None,
    ):
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._realm = realm
        self._client_id = client_id
        self._client_secret = client_secret
        self._admin_username = admin_username
        self._admin_password = admin_password
        self._token = AdminTokenCache()
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient) -> "KeycloakAdminClient":
        return cls(
            http=http,
            base_url=settings.idp_base_url_str,
            realm=settings.IDP_REALM,
            client_id=settings.OIDC_CLIENT_ID,
            client_secret=settings.OIDC_CLIENT_SECRET,
            admin_username=settings.IDP_ADMIN_USERNAME,
            admin_password=settings.IDP_ADMIN_PASSWORD,
        )

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: UUID) -> Optional[IdpUser]:
        data = await self._get(f"/users/{user_id}")
        if data is None:
            return None
        return _parse(IdpUser, data)

    async def find_users_by_username(self, username: str) -> List[IdpUser]:
        data = await self._get("/users", params={"username": username, "exact": "true"})
        return _parse_list(IdpUser, data or [])

    async def list_users(self) -> List[IdpUser]:
        """Page through every user in the realm."""
        users: List[IdpUser] = []
        first = 0
        while True:
            page = await self._get("/users", params={"first": first, "max": PAGE_SIZE}) or []
            users.extend(_parse_list(IdpUser, page))
            if len(page) < PAGE_SIZE:
                return users
            first += PAGE_SIZE

    async def get_user_groups(self, user_id: UUID) -> Optional[List[IdpGroup]]:
        data = await self._get(f"/users/{user_id}/groups", params={"briefRepresentation": "false"})
        if data is None:
            return None
        return _parse_list(IdpGroup, data)

    async def get_user_realm_roles(self, user_id: UUID) -> Optional[List[IdpRole]]:
        # Effective roles, including those granted through groups and composites
        data = await self._get(f"/users/{user_id}/role-mappings/realm/composite")
        if data is None:
            return None
        return _parse_list(IdpRole, data)

    # =========================================================================
    # Groups
    # =========================================================================

    async def list_groups(self, parent_id: Optional[UUID] = None) -> Optional[List[IdpGroup]]:
        """
        List top-level groups, or the children of *parent_id*.

        Returns:
            Groups, or None when the parent group does not exist
        """
        if parent_id is None:
            data = await self._get("/groups", params={"briefRepresentation": "false"})
        else:
            data = await self._get(
                f"/groups/{parent_id}/children", params={"briefRepresentation": "false"}
            )
        if data is None:
            return None
        return _parse_list(IdpGroup, data)

    async def get_group(self, group_id: UUID) -> Optional[IdpGroup]:
        data = await self._get(f"/groups/{group_id}")
        if data is None:
            return None
        return _parse(IdpGroup, data)

    # =========================================================================
    # Transport
    # =========================================================================

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        token = await self._admin_token()
        url = f"{self._base_url}/admin/realms/{self._realm}{path}"

        try:
            response = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error("Identity provider request failed", extra={"path": path, "error": str(e)})
            raise UpstreamFailure("Identity provider unreachable", detail=str(e)) from e

        if response.status_code == 404:
            return None
        if response.status_code == 401:
            # Token revoked or expired early; the next call fetches a new one
            self._token.invalidate()
        if not response.is_success:
            logger.error(
                "Identity provider returned an error",
                extra={"path": path, "status_code": response.status_code},
            )
            raise UpstreamFailure(
                "Identity provider request failed",
                detail=f"HTTP {response.status_code} for {path}",
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFailure("Identity provider returned malformed JSON", detail=path) from e

    async def _admin_token(self) -> str:
        token = self._token.get()
        if token is not None:
            return token

        async with self._token_lock:
            token = self._token.get()
            if token is not None:
                return token
            return await self._request_admin_token()

    async def _request_admin_token(self) -> str:
        if self._admin_username:
            token_endpoint = f"{self._base_url}/realms/master/protocol/openid-connect/token"
            payload = {
                "grant_type": "password",
                "client_id": "admin-cli",
                "username": self._admin_username,
                "password": self._admin_password or "",
            }
        else:
            token_endpoint = f"{self._base_url}/realms/{self._realm}/protocol/openid-connect/token"
            payload = {
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret or "",
            }

        try:
            response = await self._http.post(
                token_endpoint,
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise UpstreamFailure("Identity provider unreachable", detail=str(e)) from e

        if not response.is_success:
            logger.error("Admin token request rejected", extra={"status_code": response.status_code})
            raise UpstreamFailure(
                "Admin token request rejected", detail=f"HTTP {response.status_code}"
            )

        try:
            token_data = response.json()
            access_token = token_data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamFailure("Admin token response missing access_token") from e

        self._token.set(access_token, float(token_data.get("expires_in", 60)))
        logger.debug("Obtained identity provider admin token")
        return access_token


def _parse(model: Type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error(
            "Unexpected record from identity provider",
            extra={"model": model.__name__, "errors": e.error_count()},
        )
        raise UpstreamFailure("Identity provider returned an unexpected record", detail=str(e)) from e


def _parse_list(model: Type[ModelT], data: Any) -> List[ModelT]:
    if not isinstance(data, list):
        raise UpstreamFailure(
            "Identity provider returned an unexpected record",
            detail=f"expected a list of {model.__name__}, got {type(data).__name__}",
        )
    return [_parse(model, item) for item in data]
