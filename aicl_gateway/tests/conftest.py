"""
Shared fixtures: an in-process fake of Keycloak (admin API, OIDC endpoints)
and Vault, served through ``httpx.MockTransport``.

The fake counts every request by "METHOD path" so tests can assert how many
times the gateway actually reached the provider.
"""

import base64
import hashlib
import secrets
import time
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from aicl_gateway.config import Settings
from aicl_gateway.gateway import IdentityGateway
from aicl_gateway.idp.client import KeycloakAdminClient
from aicl_gateway.idp.directory import IdentityDirectory
from aicl_gateway.main import create_app

IDP_BASE_URL = "http://keycloak.test"
REALM = "aicl"
ISSUER = f"{IDP_BASE_URL}/realms/{REALM}"
VAULT_ADDR = "http://vault.test"
CLIENT_ID = "aicl-gateway"
CLIENT_SECRET = "gateway-secret"
TEST_KID = "test-key-id-2024"

# Users
ROOT_ID = uuid.UUID("00000000-0000-4000-8000-000000000001")
CAPTAIN_ID = uuid.UUID("00000000-0000-4000-8000-000000000002")
STUDENT_ID = uuid.UUID("00000000-0000-4000-8000-000000000003")
NO_ROLE_ID = uuid.UUID("00000000-0000-4000-8000-000000000004")

# Groups
INSTITUTIONS_ID = uuid.UUID("10000000-0000-4000-8000-000000000001")
MIT_ID = uuid.UUID("10000000-0000-4000-8000-000000000002")
STANFORD_ID = uuid.UUID("10000000-0000-4000-8000-000000000003")
TEAMS_ID = uuid.UUID("20000000-0000-4000-8000-000000000001")
ALPHA_ID = uuid.UUID("20000000-0000-4000-8000-000000000002")
BETA_ID = uuid.UUID("20000000-0000-4000-8000-000000000003")
GAMMA_ID = uuid.UUID("20000000-0000-4000-8000-000000000004")


def _generate_test_key():
    """Generate RSA key pair for signing test ID tokens"""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048, backend=default_backend())


TEST_PRIVATE_KEY = _generate_test_key()


def create_test_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    jwk = RSAAlgorithm.to_jwk(TEST_PRIVATE_KEY.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    jwk["alg"] = "RS256"
    return {"keys": [jwk]}


def create_test_id_token(
    sub: str,
    nonce: str,
    *,
    kid: str = TEST_KID,
    issuer: str = ISSUER,
    audience: str = CLIENT_ID,
    exp_delta_seconds: int = 300,
) -> str:
    """Create an ID token signed with the test private key."""
    now = int(time.time())
    payload = {
        "iss": issuer,
        "sub": sub,
        "aud": audience,
        "exp": now + exp_delta_seconds,
        "iat": now,
        "nonce": nonce,
    }
    return jwt.encode(payload, TEST_PRIVATE_KEY, algorithm="RS256", headers={"kid": kid})


def _group(group_id, name, path, parent_id=None, attributes=None, sub_group_count=0) -> Dict[str, Any]:
    group = {
        "id": str(group_id),
        "name": name,
        "path": path,
        "attributes": attributes or {},
        "subGroups": [],
        "subGroupCount": sub_group_count,
    }
    if parent_id is not None:
        group["parentId"] = str(parent_id)
    return group


TEAM = {"type": ["team"]}


class FakeProvider:
    """
    Keycloak realm plus Vault token store.

    Attributes:
        calls: Request counter keyed by "METHOD path"
        fail_admin_api: Answer every admin API call with HTTP 500
        codes: Issued authorization codes
        vault_tokens: API token to owning user id
    """

    def __init__(self):
        self.calls: Counter = Counter()
        self.fail_admin_api = False
        self.token_status: Optional[int] = None
        self.id_token_kid = TEST_KID
        self.jwks_kid = TEST_KID
        self.codes: Dict[str, Dict[str, str]] = {}
        self.vault_tokens: Dict[str, str] = {
            "root-token": str(ROOT_ID),
            "captain-token": str(CAPTAIN_ID),
            "orphan-token": str(uuid.UUID(int=99)),
        }

        self.groups = {
            INSTITUTIONS_ID: _group(INSTITUTIONS_ID, "Institutions", "/Institutions", sub_group_count=2),
            MIT_ID: _group(MIT_ID, "MIT", "/Institutions/MIT", parent_id=INSTITUTIONS_ID),
            STANFORD_ID: _group(STANFORD_ID, "Stanford", "/Institutions/Stanford", parent_id=INSTITUTIONS_ID),
            TEAMS_ID: _group(TEAMS_ID, "Teams", "/Teams", sub_group_count=2),
            ALPHA_ID: _group(ALPHA_ID, "Alpha", "/Teams/Alpha", parent_id=TEAMS_ID, attributes=TEAM),
            BETA_ID: _group(BETA_ID, "Beta", "/Teams/Beta", parent_id=TEAMS_ID, attributes=TEAM),
            GAMMA_ID: _group(GAMMA_ID, "Gamma", "/Gamma", attributes=TEAM),
        }
        self.users = {
            ROOT_ID: {"id": str(ROOT_ID), "username": "admin", "email": "admin@aicl.test", "enabled": True},
            CAPTAIN_ID: {"id": str(CAPTAIN_ID), "username": "alice", "email": "alice@aicl.test", "enabled": True},
            STUDENT_ID: {"id": str(STUDENT_ID), "username": "bob", "email": None, "enabled": True},
            NO_ROLE_ID: {"id": str(NO_ROLE_ID), "username": "carol", "email": "carol@aicl.test", "enabled": True},
        }
        self.user_groups: Dict[uuid.UUID, List[uuid.UUID]] = {
            ROOT_ID: [],
            CAPTAIN_ID: [ALPHA_ID, MIT_ID],
            STUDENT_ID: [BETA_ID],
            NO_ROLE_ID: [GAMMA_ID],
        }
        self.user_roles: Dict[uuid.UUID, List[str]] = {
            ROOT_ID: ["admin", "offline_access"],
            CAPTAIN_ID: ["CAPTAIN", "student", "default-roles-aicl"],
            STUDENT_ID: ["student"],
            NO_ROLE_ID: ["offline_access", "uma_authorization"],
        }

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def count(self, path: str, method: str = "GET") -> int:
        return self.calls[f"{method} {path}"]

    def admin_path(self, suffix: str) -> str:
        return f"/admin/realms/{REALM}{suffix}"

    def issue_code(self, sub: uuid.UUID, nonce: str, code_challenge: str) -> str:
        """Simulate the user logging in at the provider."""
        code = secrets.token_urlsafe(16)
        self.codes[code] = {"sub": str(sub), "nonce": nonce, "challenge": code_challenge}
        return code

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[f"{request.method} {path}"] += 1

        if request.url.host == "vault.test":
            return self._vault(request)
        if path == f"/realms/{REALM}/.well-known/openid-configuration":
            return httpx.Response(200, json=self.discovery_document())
        if path == f"/realms/{REALM}/protocol/openid-connect/certs":
            return httpx.Response(200, json=create_test_jwks(self.jwks_kid))
        if path in (f"/realms/{REALM}/protocol/openid-connect/token", "/realms/master/protocol/openid-connect/token"):
            return self._token(request)
        if path.startswith(f"/admin/realms/{REALM}/"):
            if request.headers.get("authorization") != "Bearer admin-access-token":
                return httpx.Response(401)
            if self.fail_admin_api:
                return httpx.Response(500, json={"error": "unknown_error"})
            return self._admin(path[len(f"/admin/realms/{REALM}"):], request)
        return httpx.Response(404)

    def discovery_document(self) -> Dict[str, Any]:
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
            "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
            "jwks_uri": f"{ISSUER}/protocol/openid-connect/certs",
            "end_session_endpoint": f"{ISSUER}/protocol/openid-connect/logout",
            "response_types_supported": ["code"],
        }

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        grant_type = form.get("grant_type")

        if grant_type == "client_credentials":
            return httpx.Response(200, json={"access_token": "admin-access-token", "expires_in": 300})

        if grant_type != "authorization_code":
            return httpx.Response(400, json={"error": "unsupported_grant_type"})
        if self.token_status is not None:
            return httpx.Response(self.token_status, json={"error": "server_error"})

        issued = self.codes.pop(form.get("code", ""), None)
        if issued is None:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Code not valid"})

        digest = hashlib.sha256(form.get("code_verifier", "").encode()).digest()
        challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")
        if challenge != issued["challenge"]:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE verification failed"})

        id_token = create_test_id_token(issued["sub"], issued["nonce"], kid=self.id_token_kid)
        return httpx.Response(
            200,
            json={"access_token": "user-access-token", "id_token": id_token, "token_type": "Bearer"},
        )

    def _admin(self, path: str, request: httpx.Request) -> httpx.Response:
        segments = [segment for segment in path.split("/") if segment]

        if segments == ["users"]:
            params = request.url.params
            if "username" in params:
                matches = [u for u in self.users.values() if u["username"] == params["username"]]
                return httpx.Response(200, json=matches)
            first = int(params.get("first", 0))
            size = int(params.get("max", 100))
            return httpx.Response(200, json=list(self.users.values())[first:first + size])

        if segments[0] == "users":
            user_id = uuid.UUID(segments[1])
            if user_id not in self.users:
                return httpx.Response(404, json={"error": "User not found"})
            if len(segments) == 2:
                return httpx.Response(200, json=self.users[user_id])
            if segments[2] == "groups":
                return httpx.Response(200, json=[self.groups[g] for g in self.user_groups[user_id]])
            if segments[2:] == ["role-mappings", "realm", "composite"]:
                roles = [{"id": f"role-{name}", "name": name} for name in self.user_roles[user_id]]
                return httpx.Response(200, json=roles)

        if segments == ["groups"]:
            return httpx.Response(200, json=[g for g in self.groups.values() if "parentId" not in g])

        if segments[0] == "groups":
            group_id = uuid.UUID(segments[1])
            if group_id not in self.groups:
                return httpx.Response(404, json={"error": "Could not find group by id"})
            if len(segments) == 2:
                return httpx.Response(200, json=self.groups[group_id])
            if segments[2] == "children":
                children = [g for g in self.groups.values() if g.get("parentId") == str(group_id)]
                return httpx.Response(200, json=children)

        return httpx.Response(404)

    def _vault(self, request: httpx.Request) -> httpx.Response:
        if request.url.path != "/v1/auth/token/lookup-self":
            return httpx.Response(404, json={"errors": []})
        owner = self.vault_tokens.get(request.headers.get("x-vault-token", ""))
        if owner is None:
            return httpx.Response(403, json={"errors": ["permission denied"]})
        return httpx.Response(
            200,
            json={"data": {"entity_id": "", "meta": {"user_id": owner}, "policies": ["default"], "ttl": 3600}},
        )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def http(provider) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        OIDC_ISSUER=ISSUER,
        OIDC_CLIENT_ID=CLIENT_ID,
        OIDC_CLIENT_SECRET=CLIENT_SECRET,
        IDP_BASE_URL=IDP_BASE_URL,
        IDP_REALM=REALM,
        VAULT_ADDR=VAULT_ADDR,
        SESSION_SECRET_KEY="test-session-secret-key-with-32-plus-characters",
        POST_LOGOUT_REDIRECT_URI="http://testserver/goodbye",
    )


@pytest.fixture
def directory(settings, http) -> IdentityDirectory:
    return IdentityDirectory.from_settings(settings, KeycloakAdminClient.from_settings(settings, http))


@pytest.fixture
def gateway(settings, http) -> IdentityGateway:
    return IdentityGateway.from_settings(settings, http=http)


@pytest.fixture
def app(settings, gateway):
    return create_app(settings=settings, gateway=gateway)
