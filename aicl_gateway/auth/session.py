"""
Session State Module
====================

Reads and writes the gateway's fields in the browser session.

The session itself is Starlette's signed-cookie ``request.session``. Only two
keys belong to the gateway:

- ``aicl.auth_flow``: the pending OIDC login (state, PKCE verifier, nonce,
  target URI), popped exactly once by the callback
- ``aicl.identity``: the resolved identity, stored as JSON

Anything else in the session belongs to the application and is never touched.
"""

import logging
from typing import Any, MutableMapping, Optional

from pydantic import ValidationError

from ..models import AuthFlowState, Identity, to_jsonable

logger = logging.getLogger(__name__)

Session = MutableMapping[str, Any]

FLOW_KEY = "aicl.auth_flow"
IDENTITY_KEY = "aicl.identity"


# =============================================================================
# Pending Login
# =============================================================================

def write_flow_state(session: Session, flow: AuthFlowState) -> None:
    """Store a pending login, replacing any earlier one."""
    session[FLOW_KEY] = flow.model_dump()


def pop_flow_state(session: Session) -> Optional[AuthFlowState]:
    """
    Remove and return the pending login.

    The entry is removed before it is parsed, so a callback can consume it at
    most once even when the stored data turns out to be malformed.

    Returns:
        The pending login, or None if absent or malformed
    """
    data = session.pop(FLOW_KEY, None)
    if data is None:
        return None
    try:
        return AuthFlowState.model_validate(data)
    except ValidationError as e:
        logger.warning("Dropping malformed login state", extra={"error": str(e)})
        return None


# =============================================================================
# Identity
# =============================================================================

def read_identity(session: Session) -> Optional[Identity]:
    """
    Read the stored identity.

    Malformed data (for example, written by an older release) is removed and
    reported as no identity.
    """
    data = session.get(IDENTITY_KEY)
    if data is None:
        return None
    try:
        return Identity.model_validate(data)
    except ValidationError as e:
        logger.warning("Dropping malformed session identity", extra={"error": str(e)})
        session.pop(IDENTITY_KEY, None)
        return None


def write_identity(session: Session, identity: Identity) -> None:
    session[IDENTITY_KEY] = to_jsonable(identity)


def clear_identity(session: Session) -> None:
    session.pop(IDENTITY_KEY, None)
    session.pop(FLOW_KEY, None)


__all__ = [
    "Session",
    "FLOW_KEY",
    "IDENTITY_KEY",
    "write_flow_state",
    "pop_flow_state",
    "read_identity",
    "write_identity",
    "clear_identity",
]
