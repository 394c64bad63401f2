"""
Gateway Error Types
===================

Every failure the authentication pipeline can report is a ``GatewayError``.
Each subclass carries the HTTP status and the short error code used by the
error handler when it renders the response.

Categories:
    - AuthenticationFailure: bad credentials, invalid token, CSRF state mismatch
    - NotFound: directory lookup miss (a successful answer, not a failure)
    - UpstreamFailure: identity provider or secret store unreachable or broken
    - RoleMismatch / TeamMismatch: an identity does not meet an expectation
    - ConfigurationFault: the gateway was wired incorrectly
"""

from typing import Optional

from fastapi import status


class GatewayError(Exception):
    """Base exception for all gateway errors"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "gateway_error"

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class AuthenticationFailure(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "authentication_failed"


class InvalidToken(AuthenticationFailure):
    """Expired, revoked, malformed or unknown API token"""

    error_code = "invalid_token"


class StateMismatch(AuthenticationFailure):
    """OIDC callback state does not match the pending login"""

    error_code = "invalid_state"


class RoleResolutionError(AuthenticationFailure):
    """Provider user holds none of the recognized realm roles"""

    error_code = "no_recognized_role"


class NotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class UpstreamFailure(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "upstream_failure"


class RoleMismatch(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "role_mismatch"


class TeamMismatch(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "team_mismatch"


class ConfigurationFault(GatewayError):
    """Missing session or collaborator; a wiring error, not a request error"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "configuration_fault"


__all__ = [
    "GatewayError",
    "AuthenticationFailure",
    "InvalidToken",
    "StateMismatch",
    "RoleResolutionError",
    "NotFound",
    "UpstreamFailure",
    "RoleMismatch",
    "TeamMismatch",
    "ConfigurationFault",
]
