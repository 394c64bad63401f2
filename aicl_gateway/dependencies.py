"""
Route dependencies.

Handlers behind the identity gateway read the resolved identity from
``request.state.identity``; these dependencies do that and enforce roles.
"""

from typing import Callable, Optional

from fastapi import Request

from .errors import ConfigurationFault, RoleMismatch
from .idp.directory import IdentityDirectory
from .models import Identity, Role


def get_optional_identity(request: Request) -> Optional[Identity]:
    return getattr(request.state, "identity", None)


def get_identity(request: Request) -> Identity:
    """
    Dependency returning the identity attached by the gateway.

    Raises:
        ConfigurationFault: If the route is not behind the gateway (or is
            exempt) so no identity was attached
    """
    identity = get_optional_identity(request)
    if identity is None:
        raise ConfigurationFault("No identity attached", detail=f"route {request.url.path} is not protected")
    return identity


def require_role(minimum: Role) -> Callable[[Request], Identity]:
    """
    Build a dependency that requires at least *minimum* role.

    Usage in routes:
        @router.get("/report")
        async def report(identity: Identity = Depends(require_role(Role.ROOT))):
            ...
    """

    def dependency(request: Request) -> Identity:
        identity = get_identity(request)
        if identity.role < minimum:
            raise RoleMismatch(
                "Insufficient role",
                detail=f"requires {minimum.as_str()}, got {identity.role.as_str()}",
            )
        return identity

    return dependency


def get_directory(request: Request) -> IdentityDirectory:
    return request.app.state.gateway.directory
