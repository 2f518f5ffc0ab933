"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import uuid
from typing import Any

import httpx
import pytest

from celine.usersync.config import RunConfiguration
from celine.usersync.keycloak.client import (
    KeycloakConflictError,
    KeycloakNotFoundError,
)
from celine.usersync.models import ATTRIBUTE_FIELDS, UserRecord, UserSnapshot
from celine.usersync.providers.base import snapshot_without_duplicates

KEYCLOAK_URL = "http://keycloak.test"
REALM = "test"


def make_config(**overrides: Any) -> RunConfiguration:
    values: dict[str, Any] = {
        "keycloak_url": KEYCLOAK_URL,
        "auth_realm": "master",
        "auth_username": "admin",
        "auth_password": "secret",
        "auth_client_id": "admin-cli",
        "realm": REALM,
    }
    values.update(overrides)
    return RunConfiguration.model_validate(values)


def user(username: str, *, enabled: bool = True, roles=(), **attrs: Any) -> UserRecord:
    return UserRecord(username=username, enabled=enabled, roles=frozenset(roles), **attrs)


def snapshot(*records: UserRecord) -> UserSnapshot:
    return snapshot_without_duplicates(list(records), "test snapshot")


@pytest.fixture
def config() -> RunConfiguration:
    return make_config()


# -----------------------------------------------------------------------------
# In-memory identity provider (same call surface as KeycloakAdminClient)
# -----------------------------------------------------------------------------


class FakeKeycloak:
    """In-memory stand-in for KeycloakAdminClient.

    ``fail(method, username, *errors)`` queues exceptions raised by the next
    calls of ``method`` for ``username``.
    """

    def __init__(self, known_roles: set[str] | None = None):
        self.users: dict[str, dict[str, Any]] = {}
        self.user_roles: dict[str, set[str]] = {}
        self.known_roles = known_roles
        self.calls: list[tuple[str, str, Any]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.list_error: Exception | None = None

    def add_user(self, username: str, *, enabled: bool = True, roles=(), **attrs: Any) -> None:
        rep = {"id": str(uuid.uuid4()), "username": username, "enabled": enabled}
        for name, api_name in ATTRIBUTE_FIELDS.items():
            if attrs.get(name) is not None:
                rep[api_name] = attrs[name]
        self.users[username] = rep
        self.user_roles[username] = set(roles)

    def fail(self, method: str, username: str, *errors: Exception) -> None:
        self.failures.setdefault((method, username), []).extend(errors)

    def observed(self) -> UserSnapshot:
        return snapshot(
            *(
                UserRecord(
                    username=rep["username"],
                    email=rep.get("email"),
                    firstName=rep.get("firstName"),
                    lastName=rep.get("lastName"),
                    enabled=rep["enabled"],
                    roles=frozenset(self.user_roles[rep["username"]]),
                )
                for rep in self.users.values()
            )
        )

    def _call(self, method: str, username: str, arg: Any = None) -> None:
        self.calls.append((method, username, arg))
        queued = self.failures.get((method, username))
        if queued:
            raise queued.pop(0)

    def _require(self, username: str) -> dict[str, Any]:
        if username not in self.users:
            raise KeycloakNotFoundError(f"User not found: {username}", status_code=404)
        return self.users[username]

    async def list_users(self, realm: str, first: int = 0, max_results: int = 100):
        self.calls.append(("list_users", "", (first, max_results)))
        if self.list_error is not None:
            raise self.list_error
        reps = list(self.users.values())[first:first + max_results]
        return [dict(rep) for rep in reps]

    async def get_user_roles(self, realm: str, username: str) -> set[str]:
        self._call("get_user_roles", username)
        self._require(username)
        return set(self.user_roles[username])

    async def create_user(self, realm: str, record: UserRecord) -> str:
        self._call("create_user", record.username, record)
        if record.username in self.users:
            raise KeycloakConflictError("User exists", status_code=409)
        self.add_user(record.username, enabled=record.enabled, **record.attributes())
        return self.users[record.username]["id"]

    async def update_user(self, realm: str, username: str, fields: dict[str, Any]) -> None:
        self._call("update_user", username, fields)
        rep = self._require(username)
        for name, value in fields.items():
            rep[ATTRIBUTE_FIELDS[name]] = value

    async def set_enabled(self, realm: str, username: str, enabled: bool) -> None:
        self._call("set_enabled", username, enabled)
        self._require(username)["enabled"] = enabled

    async def delete_user(self, realm: str, username: str) -> None:
        self._call("delete_user", username)
        self._require(username)
        del self.users[username]
        del self.user_roles[username]

    async def grant_role(self, realm: str, username: str, role: str, create_missing: bool = False) -> None:
        self._call("grant_role", username, role)
        if self.known_roles is not None and role not in self.known_roles:
            if not create_missing:
                raise KeycloakNotFoundError(f"Realm role not found: {role}", status_code=404)
            self.known_roles.add(role)
        self._require(username)
        self.user_roles[username].add(role)

    async def revoke_role(self, realm: str, username: str, role: str) -> None:
        self._call("revoke_role", username, role)
        if self.known_roles is not None and role not in self.known_roles:
            raise KeycloakNotFoundError(f"Realm role not found: {role}", status_code=404)
        self._require(username)
        self.user_roles[username].discard(role)


@pytest.fixture
def fake_keycloak() -> FakeKeycloak:
    return FakeKeycloak()


# -----------------------------------------------------------------------------
# HTTP-level Keycloak stub for the real client
# -----------------------------------------------------------------------------


class KeycloakStub:
    """Minimal Keycloak admin API served through httpx.MockTransport."""

    def __init__(self, realm: str = REALM):
        self.realm = realm
        self.users: dict[str, dict[str, Any]] = {}
        self.mappings: dict[str, set[str]] = {}
        self.roles: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.token_status = 200
        self._scripted: list[tuple[str, str, list[httpx.Response]]] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def add_role(self, name: str) -> None:
        self.roles[name] = {"id": f"role-{name}", "name": name}

    def add_user(self, username: str, *, enabled: bool = True, roles=(), **rep: Any) -> str:
        user_id = str(uuid.uuid4())
        self.users[user_id] = {"id": user_id, "username": username, "enabled": enabled, **rep}
        self.mappings[user_id] = set()
        for role in roles:
            if role not in self.roles:
                self.add_role(role)
            self.mappings[user_id].add(role)
        return user_id

    def user_id(self, username: str) -> str:
        return next(uid for uid, rep in self.users.items() if rep["username"] == username)

    def script(self, method: str, path_suffix: str, *responses: httpx.Response) -> None:
        """Answer the next matching requests with canned responses."""
        self._scripted.append((method, path_suffix, list(responses)))

    def count(self, method: str, path_suffix: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and r.url.path.endswith(path_suffix)
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        for method, suffix, responses in self._scripted:
            if responses and request.method == method and path.endswith(suffix):
                return responses.pop(0)

        if path.endswith("/protocol/openid-connect/token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "token", "expires_in": 300})

        prefix = f"/admin/realms/{self.realm}/"
        if not path.startswith(prefix):
            return httpx.Response(404)
        parts = path[len(prefix):].strip("/").split("/")
        body = json.loads(request.content) if request.content else None

        if parts == ["users"]:
            return self._users(request, body)
        if parts[0] == "users" and len(parts) == 2:
            return self._user(request, parts[1], body)
        if parts[0] == "users" and parts[2:] == ["role-mappings", "realm"]:
            return self._mappings(request, parts[1], body)
        if parts == ["roles"] and request.method == "POST":
            if body["name"] in self.roles:
                return httpx.Response(409, json={"errorMessage": "Role exists"})
            self.add_role(body["name"])
            return httpx.Response(201)
        if parts[0] == "roles" and len(parts) == 2 and request.method == "GET":
            role = self.roles.get(parts[1])
            return httpx.Response(200, json=role) if role else httpx.Response(404)
        return httpx.Response(404)

    def _users(self, request: httpx.Request, body: Any) -> httpx.Response:
        if request.method == "POST":
            if any(u["username"] == body["username"] for u in self.users.values()):
                return httpx.Response(409, json={"errorMessage": "User exists"})
            user_id = self.add_user(**body)
            return httpx.Response(
                201,
                headers={"Location": f"{request.url}/{user_id}"},
            )

        params = request.url.params
        users = list(self.users.values())
        if "username" in params:
            users = [u for u in users if u["username"] == params["username"]]
        else:
            first = int(params.get("first", 0))
            max_results = int(params.get("max", 100))
            users = users[first:first + max_results]
        return httpx.Response(200, json=users)

    def _user(self, request: httpx.Request, user_id: str, body: Any) -> httpx.Response:
        if user_id not in self.users:
            return httpx.Response(404)
        if request.method == "PUT":
            self.users[user_id].update(body)
            return httpx.Response(204)
        if request.method == "DELETE":
            del self.users[user_id]
            del self.mappings[user_id]
            return httpx.Response(204)
        return httpx.Response(200, json=self.users[user_id])

    def _mappings(self, request: httpx.Request, user_id: str, body: Any) -> httpx.Response:
        if user_id not in self.users:
            return httpx.Response(404)
        if request.method == "GET":
            return httpx.Response(
                200, json=[self.roles[name] for name in sorted(self.mappings[user_id])]
            )
        names = {r["name"] for r in body}
        if request.method == "POST":
            self.mappings[user_id] |= names
        else:
            self.mappings[user_id] -= names
        return httpx.Response(204)


@pytest.fixture
def keycloak_stub() -> KeycloakStub:
    return KeycloakStub()
