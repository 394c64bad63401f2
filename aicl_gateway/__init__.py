"""
AICL Identity Gateway
=====================

Authenticates requests to the AICL services by browser OIDC login against
Keycloak or by Vault-issued API tokens, and attaches a normalized identity
(user, team, institution, role) to every protected request.

Run with:
    uvicorn aicl_gateway.main:create_app --factory
"""

__version__ = "1.0.0"
