"""
Authentication routes.

Login itself has no route: any unauthenticated request to a protected path
is redirected to the provider by the gateway pipeline, and the provider
redirects back to that same path. These routes cover the rest of the
session lifecycle.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse

from ..dependencies import get_identity
from ..models import Identity, to_jsonable

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["authentication"])


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.get("/auth/logout", response_class=RedirectResponse)
async def logout(request: Request):
    """
    End the session and redirect to the provider's end-session endpoint.

    Exempt from the gateway pipeline so that logging out never starts a
    login. Works whether or not a session identity exists.
    """
    gateway = request.app.state.gateway
    target = gateway.authenticator.logout(request.session, gateway.post_logout_redirect_uri)
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Current Identity
# =============================================================================

@auth_router.get("/api/me")
async def me(identity: Identity = Depends(get_identity)) -> Dict[str, Any]:
    """Return the identity attached to this request."""
    return to_jsonable(identity)
