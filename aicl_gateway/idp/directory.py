"""
Identity Directory
==================

Cached view over the identity provider's users, groups and realm roles,
translated into the gateway's domain model.

Each lookup family lives in its own ``SingleFlightCache`` namespace so that
one user's invalidation never cools another user's entries. Team and
institution come from the group hierarchy:

    - a direct group carrying the team attribute is the user's team
    - a direct group whose parent is the institutions root is the institution

The role is the most privileged recognized realm role.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from ..config import Settings
from ..errors import NotFound, RoleResolutionError
from ..models import (
    IdpGroup,
    IdpRole,
    IdpUser,
    Identity,
    InstitutionIdentity,
    Role,
    TeamIdentity,
)
from .cache import SingleFlightCache
from .client import KeycloakAdminClient

logger = logging.getLogger(__name__)

_ALL = "*"


def resolve_role(names: Sequence[str], aliases: Optional[Dict[str, str]] = None) -> Role:
    """
    Pick the highest-precedence role among provider realm-role names.

    Names are matched case-insensitively; unrecognized names (default realm
    roles such as ``offline_access``) are ignored.

    Raises:
        RoleResolutionError: If none of the names maps to a role
    """
    aliases = aliases or {}
    recognized = []
    for name in names:
        canonical = aliases.get(name.lower(), name.upper())
        try:
            recognized.append(Role.parse(canonical))
        except ValueError:
            continue
    if not recognized:
        raise RoleResolutionError("No recognized role", detail=", ".join(sorted(names)) or "none")
    return max(recognized)


class IdentityDirectory:
    """
    Translates and caches identity provider state.

    Args:
        client: Keycloak admin API boundary
        ttl_seconds: Lifetime of every cached lookup
        institutions_group: Name of the root group holding institutions
        team_attribute: Group attribute name flagging a team
        team_attribute_value: Attribute value flagging a team
        role_aliases: Lowercase realm-role name to canonical role name
    """

    def __init__(
        self,
        client: KeycloakAdminClient,
        *,
        ttl_seconds: float = 60.0,
        institutions_group: str = "Institutions",
        team_attribute: str = "type",
        team_attribute_value: str = "team",
        role_aliases: Optional[Dict[str, str]] = None,
    ):
        self._client = client
        self._institutions_group = institutions_group
        self._team_attribute = team_attribute
        self._team_attribute_value = team_attribute_value
        self._role_aliases = role_aliases or {}

        self._users: SingleFlightCache[UUID, Optional[IdpUser]] = SingleFlightCache("users", ttl_seconds)
        self._users_by_username: SingleFlightCache[str, List[IdpUser]] = SingleFlightCache(
            "users_by_username", ttl_seconds
        )
        self._all_users: SingleFlightCache[str, List[IdpUser]] = SingleFlightCache("all_users", ttl_seconds)
        self._user_groups: SingleFlightCache[UUID, Optional[List[IdpGroup]]] = SingleFlightCache(
            "user_groups", ttl_seconds
        )
        self._groups: SingleFlightCache[Optional[UUID], Optional[List[IdpGroup]]] = SingleFlightCache(
            "groups", ttl_seconds
        )
        self._group: SingleFlightCache[UUID, Optional[IdpGroup]] = SingleFlightCache("group", ttl_seconds)
        self._user_roles: SingleFlightCache[UUID, Optional[List[IdpRole]]] = SingleFlightCache(
            "user_roles", ttl_seconds
        )
        self._report: SingleFlightCache[str, List[Identity]] = SingleFlightCache("report", ttl_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, client: KeycloakAdminClient) -> "IdentityDirectory":
        return cls(
            client,
            ttl_seconds=settings.IDP_CACHE_TTL_SECONDS,
            institutions_group=settings.IDP_INSTITUTIONS_GROUP,
            team_attribute=settings.IDP_TEAM_ATTRIBUTE,
            team_attribute_value=settings.IDP_TEAM_ATTRIBUTE_VALUE,
            role_aliases=settings.role_aliases,
        )

    # =========================================================================
    # Provider Lookups
    # =========================================================================

    async def get_user(self, user_id: UUID) -> IdpUser:
        """
        Get one provider user.

        Raises:
            NotFound: If the provider has no such user
            UpstreamFailure: If the provider could not be reached
        """
        user = await self._users.get_or_fetch(user_id, lambda: self._client.get_user(user_id))
        if user is None:
            raise NotFound("User not found", detail=str(user_id))
        return user

    async def find_users_by_username(self, username: str) -> List[IdpUser]:
        return await self._users_by_username.get_or_fetch(
            username, lambda: self._client.find_users_by_username(username)
        )

    async def get_users(self) -> List[IdpUser]:
        return await self._all_users.get_or_fetch(_ALL, self._client.list_users)

    async def get_user_groups(self, user_id: UUID) -> List[IdpGroup]:
        groups = await self._user_groups.get_or_fetch(
            user_id, lambda: self._client.get_user_groups(user_id)
        )
        if groups is None:
            raise NotFound("User not found", detail=str(user_id))
        return groups

    async def get_groups(self, parent_id: Optional[UUID] = None) -> List[IdpGroup]:
        """
        List top-level groups, or the children of *parent_id*.

        Raises:
            NotFound: If *parent_id* names no group
        """
        groups = await self._groups.get_or_fetch(parent_id, lambda: self._client.list_groups(parent_id))
        if groups is None:
            raise NotFound("Group not found", detail=str(parent_id))
        return groups

    async def get_group(self, group_id: UUID) -> IdpGroup:
        group = await self._group.get_or_fetch(group_id, lambda: self._client.get_group(group_id))
        if group is None:
            raise NotFound("Group not found", detail=str(group_id))
        return group

    async def get_user_roles(self, user_id: UUID) -> List[IdpRole]:
        roles = await self._user_roles.get_or_fetch(
            user_id, lambda: self._client.get_user_realm_roles(user_id)
        )
        if roles is None:
            raise NotFound("User not found", detail=str(user_id))
        return roles

    # =========================================================================
    # Teams & Institutions
    # =========================================================================

    def is_team_group(self, group: IdpGroup) -> bool:
        return group.has_attribute(self._team_attribute, self._team_attribute_value)

    async def get_teams(self) -> List[TeamIdentity]:
        """Every team group, searched through the whole group tree."""
        teams = []
        pending = list(await self.get_groups())
        while pending:
            group = pending.pop(0)
            if self.is_team_group(group):
                teams.append(TeamIdentity(id=group.id, name=group.name))
            if group.may_have_children:
                pending.extend(await self.get_groups(group.id))
            else:
                pending.extend(group.sub_groups)
        return teams

    async def get_institutions(self) -> List[InstitutionIdentity]:
        root = await self._institutions_root()
        if root is None:
            logger.warning("Institutions group missing", extra={"group": self._institutions_group})
            return []
        children = await self.get_groups(root.id)
        return [InstitutionIdentity(id=group.id, name=group.name) for group in children]

    async def _institutions_root(self) -> Optional[IdpGroup]:
        for group in await self.get_groups():
            if group.name == self._institutions_group:
                return group
        return None

    async def _is_institution_group(self, group: IdpGroup) -> bool:
        if group.parent_id is not None:
            parent = await self.get_group(group.parent_id)
            return parent.name == self._institutions_group
        # Older providers omit parentId; fall back to the group path
        segments = [segment for segment in group.path.split("/") if segment]
        return len(segments) == 2 and segments[0] == self._institutions_group

    # =========================================================================
    # Domain Translation
    # =========================================================================

    async def to_domain_user(self, user: IdpUser) -> Identity:
        """
        Resolve a provider user into a domain identity.

        Raises:
            RoleResolutionError: If the user has no recognized realm role
            NotFound: If the user vanished between lookups
            UpstreamFailure: If the provider could not be reached
        """
        groups, roles = await asyncio.gather(
            self.get_user_groups(user.id),
            self.get_user_roles(user.id),
        )
        team, institution = await self._resolve_memberships(user, groups)
        role = resolve_role([r.name for r in roles], self._role_aliases)

        return Identity(
            id=user.id,
            email=user.email or "",
            username=user.username,
            team=team,
            institution=institution,
            role=role,
        )

    async def get_domain_user(self, user_id: UUID) -> Identity:
        return await self.to_domain_user(await self.get_user(user_id))

    async def _resolve_memberships(
        self, user: IdpUser, groups: List[IdpGroup]
    ) -> Tuple[Optional[TeamIdentity], Optional[InstitutionIdentity]]:
        team_groups = [group for group in groups if self.is_team_group(group)]
        if len(team_groups) > 1:
            logger.warning(
                "User belongs to several teams; using the first",
                extra={"user_id": str(user.id), "teams": [group.name for group in team_groups]},
            )
        team = TeamIdentity(id=team_groups[0].id, name=team_groups[0].name) if team_groups else None

        institution = None
        for group in groups:
            if group in team_groups:
                continue
            if await self._is_institution_group(group):
                institution = InstitutionIdentity(id=group.id, name=group.name)
                break

        return team, institution

    # =========================================================================
    # Reports
    # =========================================================================

    async def get_comprehensive_report(self) -> List[Identity]:
        """
        Resolve every provider user into a domain identity.

        Users without a recognized role, or removed while the report is
        built, are left out. The result is cached like any other lookup.
        """
        return await self._report.get_or_fetch(_ALL, self._build_report)

    async def _build_report(self) -> List[Identity]:
        users = await self.get_users()
        results = await asyncio.gather(
            *(self.to_domain_user(user) for user in users), return_exceptions=True
        )

        report = []
        for user, result in zip(users, results):
            if isinstance(result, RoleResolutionError):
                logger.warning(
                    "Skipping user without a recognized role",
                    extra={"user_id": str(user.id), "username": user.username},
                )
                continue
            if isinstance(result, NotFound):
                # Deleted between the listing and the per-user lookups
                logger.warning(
                    "Skipping user removed during report build",
                    extra={"user_id": str(user.id), "username": user.username},
                )
                continue
            if isinstance(result, BaseException):
                raise result
            report.append(result)

        logger.info("Built comprehensive report", extra={"users": len(users), "identities": len(report)})
        return report

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_user_cache(self, user_id: UUID) -> None:
        """
        Drop cached entries belonging to one user.

        Other users' entries stay warm. The user listing and the aggregate
        report embed this user and are dropped as well.
        """
        self._users.invalidate(user_id)
        self._user_groups.invalidate(user_id)
        self._user_roles.invalidate(user_id)
        self._users_by_username.invalidate_where(
            lambda _username, users: any(user.id == user_id for user in users)
        )
        self._all_users.clear()
        self._report.clear()
        logger.info("Invalidated user cache", extra={"user_id": str(user_id)})

    def invalidate_caches(self) -> None:
        for cache in (
            self._users,
            self._users_by_username,
            self._all_users,
            self._user_groups,
            self._groups,
            self._group,
            self._user_roles,
            self._report,
        ):
            cache.clear()
        logger.info("Invalidated all directory caches")
