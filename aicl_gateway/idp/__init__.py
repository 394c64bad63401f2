"""Identity provider access: admin API client, single-flight cache and directory."""

from .cache import SingleFlightCache
from .client import KeycloakAdminClient
from .directory import IdentityDirectory, resolve_role

__all__ = ["SingleFlightCache", "KeycloakAdminClient", "IdentityDirectory", "resolve_role"]
