"""
Directory routes.

Root-only views over the identity directory plus explicit cache
invalidation, for use after users, groups or roles change in the provider.
"""

import logging
from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends

from ..dependencies import get_directory, require_role
from ..models import Identity, Role, to_jsonable
from .directory import IdentityDirectory

logger = logging.getLogger(__name__)

directory_router = APIRouter(prefix="/api", tags=["directory"])

require_root = require_role(Role.ROOT)


@directory_router.get("/report")
async def report(
    identity: Identity = Depends(require_root),
    directory: IdentityDirectory = Depends(get_directory),
) -> List[Dict[str, Any]]:
    """Every user with a recognized role, resolved to an identity."""
    return [to_jsonable(user) for user in await directory.get_comprehensive_report()]


@directory_router.get("/teams")
async def teams(
    identity: Identity = Depends(require_root),
    directory: IdentityDirectory = Depends(get_directory),
) -> List[Dict[str, Any]]:
    return [team.model_dump(mode="json") for team in await directory.get_teams()]


@directory_router.get("/institutions")
async def institutions(
    identity: Identity = Depends(require_root),
    directory: IdentityDirectory = Depends(get_directory),
) -> List[Dict[str, Any]]:
    return [institution.model_dump(mode="json") for institution in await directory.get_institutions()]


@directory_router.post("/cache/invalidate")
async def invalidate_caches(
    identity: Identity = Depends(require_root),
    directory: IdentityDirectory = Depends(get_directory),
) -> Dict[str, str]:
    directory.invalidate_caches()
    logger.info("Directory caches invalidated", extra={"by": str(identity.id)})
    return {"status": "invalidated"}


@directory_router.post("/cache/users/{user_id}/invalidate")
async def invalidate_user_cache(
    user_id: UUID,
    identity: Identity = Depends(require_root),
    directory: IdentityDirectory = Depends(get_directory),
) -> Dict[str, str]:
    directory.invalidate_user_cache(user_id)
    logger.info("User cache invalidated", extra={"user_id": str(user_id), "by": str(identity.id)})
    return {"status": "invalidated", "user_id": str(user_id)}
