"""
Data Models Module

This module defines the domain types attached to authenticated requests and
the provider-native records they are resolved from.

Models are organized by functional area:
- Domain identity models (role, team, institution, identity)
- Login flow models (pending OIDC authorization state, provider metadata)
- Identity provider records (Keycloak users, groups, realm roles)
"""

from enum import Enum
from functools import total_ordering
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .errors import RoleMismatch, TeamMismatch


# ============================================================================
# Domain Identity Models
# ============================================================================

@total_ordering
class Role(Enum):
    """
    Privilege level of an identity.

    Roles are totally ordered: ROOT > ADVISOR > CAPTAIN > STUDENT > SPECTATOR,
    so ``max(roles)`` picks the most privileged one.
    """

    ROOT = "ROOT"
    ADVISOR = "ADVISOR"
    CAPTAIN = "CAPTAIN"
    STUDENT = "STUDENT"
    SPECTATOR = "SPECTATOR"

    @classmethod
    def parse(cls, name: str) -> "Role":
        """
        Parse a canonical role name.

        Raises:
            ValueError: If the name is not one of the known roles
        """
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Role not found: {name}") from None

    def as_str(self) -> str:
        return self.value

    @property
    def precedence(self) -> int:
        return len(_ROLE_ORDER) - _ROLE_ORDER.index(self)

    @property
    def is_admin(self) -> bool:
        return self is Role.ROOT

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Role):
            return NotImplemented
        return self.precedence < other.precedence


# Most privileged first
_ROLE_ORDER = (Role.ROOT, Role.ADVISOR, Role.CAPTAIN, Role.STUDENT, Role.SPECTATOR)


class TeamIdentity(BaseModel):
    """A competition team, backed by a provider group."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="Provider group identifier")
    name: str = Field(..., description="Team name")


class InstitutionIdentity(BaseModel):
    """A sponsoring institution, backed by a child of the institutions group."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="Provider group identifier")
    name: str = Field(..., description="Institution name")


class Identity(BaseModel):
    """
    Resolved, authenticated principal attached to a request.

    Only the identity directory builds these, from a verified provider
    record. The session stores it as JSON for the lifetime of the login.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="Provider-stable user identifier")
    email: str = Field(..., description="User email address")
    username: str = Field(..., description="Provider username")
    team: Optional[TeamIdentity] = Field(None, description="Team membership, if any")
    institution: Optional[InstitutionIdentity] = Field(None, description="Institution membership, if any")
    role: Role = Field(..., description="Highest-precedence realm role")


def expect_identity(
    identity: Identity,
    role: Optional[Role] = None,
    team: Optional[str] = None,
) -> Identity:
    """
    Assert that an identity has the expected role and team.

    Args:
        identity: Identity to check
        role: Exact role expected, if any
        team: Team name expected, if any

    Returns:
        The identity, unchanged

    Raises:
        RoleMismatch: If the role differs
        TeamMismatch: If the team is missing or has another name
    """
    if role is not None and identity.role is not role:
        raise RoleMismatch(
            "Role mismatch",
            detail=f"expected {role.as_str()}, got {identity.role.as_str()}",
        )
    if team is not None:
        actual = identity.team.name if identity.team else None
        if actual != team:
            raise TeamMismatch("Team mismatch", detail=f"expected {team}, got {actual}")
    return identity


# ============================================================================
# Login Flow Models
# ============================================================================

class AuthFlowState(BaseModel):
    """Pending OIDC login stored in the browser session."""

    state: str = Field(..., description="CSRF state round-tripped through the provider")
    verifier: str = Field(..., description="PKCE code verifier")
    nonce: str = Field(..., description="Nonce expected in the ID token")
    target_uri: str = Field(..., description="Sanitized URI the login started from")


class ProviderMetadata(BaseModel):
    """Subset of the OIDC discovery document used by the gateway."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: Optional[str] = None


# ============================================================================
# Identity Provider Records
# ============================================================================

class IdpUser(BaseModel):
    """User record from the Keycloak admin API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: UUID
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    enabled: bool = True


class IdpGroup(BaseModel):
    """Group record from the Keycloak admin API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: UUID
    name: str
    path: str = ""
    parent_id: Optional[UUID] = Field(None, alias="parentId")
    attributes: Dict[str, List[str]] = Field(default_factory=dict)
    sub_groups: List["IdpGroup"] = Field(default_factory=list, alias="subGroups")
    sub_group_count: Optional[int] = Field(None, alias="subGroupCount")

    @property
    def may_have_children(self) -> bool:
        # Recent Keycloak releases omit subGroups and report only the count
        return not self.sub_groups and self.sub_group_count != 0

    def has_attribute(self, name: str, value: str) -> bool:
        return value in self.attributes.get(name, [])


class IdpRole(BaseModel):
    """Realm role record from the Keycloak admin API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: str
    description: Optional[str] = None


def to_jsonable(identity: Identity) -> Dict[str, Any]:
    return identity.model_dump(mode="json")
