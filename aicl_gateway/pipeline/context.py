from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from ..auth.session import Session
from ..models import Identity


@dataclass
class RequestContext:
    """
    Per-request state threaded through the pipeline stages.

    Attributes:
        request: The inbound request
        session: The request's session mapping
        identity: Identity attached by a stage, if any
    """

    request: Request
    session: Session
    identity: Optional[Identity] = None
