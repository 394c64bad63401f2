"""
Configuration module for the AICL Identity Gateway.

This module uses Pydantic Settings to load and validate environment variables
for OIDC login against Keycloak, the Keycloak admin API used by the identity
directory, Vault API-token verification, session cookies and logging.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the OIDC provider, identity directory, secret store,
    sessions and the request pipeline is defined here.
    """

    # =========================================================================
    # OIDC Configuration (browser login)
    # =========================================================================

    OIDC_ISSUER: str = Field(
        ...,
        description="Issuer URL of the Keycloak realm (e.g., http://keycloak:8080/realms/app-realm)",
        min_length=1,
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="OIDC client ID registered for the gateway",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="OIDC client secret (optional for public clients)",
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email",
        description="Space-separated scopes requested at login",
    )

    POST_LOGOUT_REDIRECT_URI: str = Field(
        default="/",
        description="Where the provider sends the browser after logout",
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the provider JWKS keys in seconds",
        ge=60,
        le=86400,
    )

    # =========================================================================
    # Identity Directory (Keycloak admin API)
    # =========================================================================

    IDP_BASE_URL: str = Field(
        ...,
        description="Keycloak base URL (e.g., http://keycloak:8080)",
        min_length=1,
    )

    IDP_REALM: str = Field(
        ...,
        description="Realm holding users, groups and roles",
        min_length=1,
    )

    IDP_ADMIN_USERNAME: Optional[str] = Field(
        None,
        description="Admin username; when set, the master realm password grant is used",
    )

    IDP_ADMIN_PASSWORD: Optional[str] = Field(
        None,
        description="Admin password paired with IDP_ADMIN_USERNAME",
        repr=False,
    )

    IDP_CACHE_TTL_SECONDS: float = Field(
        default=60.0,
        description="Lifetime of cached directory lookups in seconds",
        gt=0,
        le=3600,
    )

    IDP_INSTITUTIONS_GROUP: str = Field(
        default="Institutions",
        description="Name of the root group whose children are institutions",
    )

    IDP_TEAM_ATTRIBUTE: str = Field(
        default="type",
        description="Group attribute that flags a group as a team",
    )

    IDP_TEAM_ATTRIBUTE_VALUE: str = Field(
        default="team",
        description="Value of IDP_TEAM_ATTRIBUTE marking a team group",
    )

    IDP_ROLE_ALIASES: str = Field(
        default="admin=ROOT,viewer=SPECTATOR",
        description="Comma-separated realm-role aliases (name=ROLE)",
    )

    # =========================================================================
    # Secret Store (Vault API tokens)
    # =========================================================================

    VAULT_ADDR: str = Field(
        default="http://vault:8200",
        description="Vault server address used for API token lookups",
    )

    VAULT_SUBJECT_META_KEY: str = Field(
        default="user_id",
        description="Token metadata key holding the owning user's UUID",
    )

    # =========================================================================
    # Session Configuration
    # =========================================================================

    SESSION_SECRET_KEY: str = Field(
        ...,
        description="Secret key for signing the session cookie (must be cryptographically secure)",
        min_length=32,
        repr=False,
    )

    SESSION_COOKIE_NAME: str = Field(
        default="aicl_session",
        description="Name of the session cookie",
    )

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=8 * 3600,
        description="Session cookie lifetime in seconds",
        ge=300,
        le=7 * 86400,
    )

    SESSION_HTTPS_ONLY: bool = Field(
        default=False,
        description="Mark the session cookie Secure",
    )

    # =========================================================================
    # Gateway Server Configuration
    # =========================================================================

    GATEWAY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind the gateway server",
    )

    GATEWAY_PORT: int = Field(
        default=4040,
        description="Port to bind the gateway server",
        ge=1,
        le=65535,
    )

    GATEWAY_EXEMPT_PATHS: str = Field(
        default="/health,/auth/logout",
        description="Comma-separated paths served without authentication",
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for provider and secret store calls",
        gt=0,
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level",
    )

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def scopes_list(self) -> List[str]:
        return [scope for scope in self.OIDC_SCOPES.split() if scope]

    @property
    def exempt_paths_list(self) -> List[str]:
        """
        Parse and return GATEWAY_EXEMPT_PATHS as a clean list.

        Returns:
            List of paths without whitespace or trailing slashes.
        """
        paths = []
        for path in self.GATEWAY_EXEMPT_PATHS.split(","):
            path = path.strip()
            if path:
                paths.append(path.rstrip("/") or "/")
        return paths

    @property
    def role_aliases(self) -> Dict[str, str]:
        """
        Parse IDP_ROLE_ALIASES into a mapping of lowercase realm-role name
        to canonical role name.
        """
        aliases = {}
        for pair in self.IDP_ROLE_ALIASES.split(","):
            if "=" not in pair:
                continue
            name, role = pair.split("=", 1)
            if name.strip():
                aliases[name.strip().lower()] = role.strip().upper()
        return aliases

    @property
    def idp_base_url_str(self) -> str:
        return self.IDP_BASE_URL.rstrip("/")

    @property
    def vault_addr_str(self) -> str:
        return self.VAULT_ADDR.rstrip("/")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_ISSUER", "IDP_BASE_URL", "VAULT_ADDR")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """
        Validate that provider URLs use http(s).

        Raises:
            ValueError: If the URL has no http or https scheme
        """
        if not re.match(r"^https?://", v):
            raise ValueError(f"Expected an http(s) URL, got: {v}")
        return v.rstrip("/")

    @field_validator("OIDC_SCOPES")
    @classmethod
    def validate_scopes(cls, v: str) -> str:
        if "openid" not in v.split():
            raise ValueError("OIDC_SCOPES must include 'openid'")
        return v

    @field_validator("IDP_ROLE_ALIASES")
    @classmethod
    def validate_role_aliases(cls, v: str) -> str:
        """
        Validate that every alias targets a known role name.

        Raises:
            ValueError: If an alias points at an unknown role
        """
        known = {"ROOT", "ADVISOR", "CAPTAIN", "STUDENT", "SPECTATOR"}
        for pair in v.split(","):
            pair = pair.strip()
            if not pair:
                continue
            if "=" not in pair:
                raise ValueError(f"Invalid role alias '{pair}'. Expected format: 'name=ROLE'")
            role = pair.split("=", 1)[1].strip().upper()
            if role not in known:
                raise ValueError(f"Role alias '{pair}' targets unknown role {role}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    This is called during application startup so that a half-configured
    gateway is reported before it serves requests.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    if bool(settings.IDP_ADMIN_USERNAME) != bool(settings.IDP_ADMIN_PASSWORD):
        errors.append("IDP_ADMIN_USERNAME and IDP_ADMIN_PASSWORD must be set together")

    if not settings.IDP_ADMIN_USERNAME and not settings.OIDC_CLIENT_SECRET:
        errors.append(
            "Directory access needs either admin credentials or OIDC_CLIENT_SECRET "
            "for the client credentials grant"
        )

    if not settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is not set (public client, PKCE only)")

    if not settings.SESSION_HTTPS_ONLY:
        warnings.append("SESSION_HTTPS_ONLY is disabled; session cookie is sent over plain HTTP")

    if settings.IDP_CACHE_TTL_SECONDS > 600:
        warnings.append("IDP_CACHE_TTL_SECONDS above 10 minutes delays role and team changes")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "issuer": settings.OIDC_ISSUER,
        "cache_ttl_seconds": settings.IDP_CACHE_TTL_SECONDS,
    }
