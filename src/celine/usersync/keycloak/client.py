"""Keycloak Admin API client.

Wraps the Keycloak Admin REST API for managing:
- Users (list, create, update, enable/disable, delete)
- Realm role mappings of users
- Realm roles (lookup, optional creation)

Users are addressed by username; the client resolves Keycloak user IDs from
the listing cache or an exact username search.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from celine.usersync.config import RunConfiguration
from celine.usersync.models import ATTRIBUTE_FIELDS, UserRecord

logger = logging.getLogger(__name__)

# Status codes Keycloak (or a proxy in front of it) uses for rate limiting.
THROTTLING_STATUS_CODES = {429, 503}


class KeycloakError(Exception):
    """Base exception for Keycloak API errors."""

    def __init__(
        self, message: str, status_code: int | None = None, response: dict | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class KeycloakAuthError(KeycloakError):
    """Authentication failed."""

    pass


class KeycloakNotFoundError(KeycloakError):
    """Resource not found."""

    pass


class KeycloakConflictError(KeycloakError):
    """Resource already exists."""

    pass


class KeycloakThrottledError(KeycloakError):
    """Request was rate limited; may be retried."""

    def __init__(self, message: str, status_code: int | None = None, retry_after: float | None = None):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


@dataclass
class TokenInfo:
    """OAuth token information."""

    access_token: str
    expires_at: float

    def is_valid(self, leeway: int = 30) -> bool:
        """Check if token is still valid."""
        return time.time() < (self.expires_at - leeway)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class KeycloakAdminClient:
    """Async client for the Keycloak Admin REST API."""

    def __init__(
        self,
        config: RunConfiguration,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config
        self._timeout = timeout
        self._transport = transport
        self._token: TokenInfo | None = None
        self._client: httpx.AsyncClient | None = None
        self._user_ids: dict[tuple[str, str], str] = {}
        self._roles: dict[tuple[str, str], dict[str, Any]] = {}

    async def __aenter__(self) -> "KeycloakAdminClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def config(self) -> RunConfiguration:
        """Get run configuration."""
        return self._config

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def authenticate(self) -> None:
        """Obtain an access token with the resource owner password grant."""
        data = {
            "grant_type": "password",
            "client_id": self._config.auth_client_id,
            "username": self._config.auth_username,
            "password": self._config.auth_password,
        }
        if self._config.auth_client_secret:
            data["client_secret"] = self._config.auth_client_secret

        logger.debug(
            "Authenticating as %s in realm %s",
            self._config.auth_username,
            self._config.auth_realm,
        )

        try:
            response = await self._client.post(self._config.token_url, data=data)
        except httpx.HTTPError as e:
            raise KeycloakAuthError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise KeycloakAuthError(
                f"Authentication failed: {response.text}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
            self._token = TokenInfo(
                access_token=payload["access_token"],
                expires_at=time.time() + float(payload.get("expires_in", 60)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise KeycloakAuthError(
                f"Unexpected token response: {e}", status_code=response.status_code
            ) from e
        logger.info("Authenticated as %s", self._config.auth_username)

    async def _ensure_token(self) -> str:
        """Ensure we have a valid token."""
        if not self._token or not self._token.is_valid():
            await self.authenticate()
        return self._token.access_token

    async def _headers(self) -> dict[str, str]:
        """Get request headers with auth token."""
        token = await self._ensure_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        realm: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        expected_status: list[int] | None = None,
    ) -> httpx.Response:
        """Send a request to the admin API, re-authenticating once on 401."""
        url = f"{self._config.admin_url(realm)}{path}"

        for attempt in (1, 2):
            headers = await self._headers()
            try:
                response = await self._client.request(
                    method, url, headers=headers, json=json, params=params
                )
            except httpx.TransportError as e:
                raise KeycloakError(f"{method} {path} failed: {e}") from e

            if response.status_code == 401 and attempt == 1:
                logger.debug("Token rejected, re-authenticating")
                self._token = None
                continue
            break

        self._handle_response(response, expected_status)
        return response

    async def _get(self, realm: str, path: str, params: dict[str, Any] | None = None) -> Any:
        """Make GET request to admin API."""
        response = await self._request("GET", realm, path, params=params)
        return self._json(response)

    async def _post(self, realm: str, path: str, json: list | dict | None = None) -> httpx.Response:
        """Make POST request to admin API."""
        return await self._request(
            "POST", realm, path, json=json, expected_status=[200, 201, 204]
        )

    async def _put(self, realm: str, path: str, json: dict | None = None) -> httpx.Response:
        """Make PUT request to admin API."""
        return await self._request("PUT", realm, path, json=json, expected_status=[200, 204])

    async def _delete(self, realm: str, path: str, json: list | None = None) -> httpx.Response:
        """Make DELETE request to admin API (role mappings take a body)."""
        return await self._request(
            "DELETE", realm, path, json=json, expected_status=[200, 204]
        )

    def _handle_response(
        self,
        response: httpx.Response,
        expected_status: list[int] | None = None,
    ) -> None:
        """Raise the matching KeycloakError for an unexpected status."""
        expected = expected_status or [200]

        if response.status_code == 404:
            raise KeycloakNotFoundError(
                f"Resource not found: {response.request.url}",
                status_code=404,
            )

        if response.status_code == 409:
            raise KeycloakConflictError(
                f"Resource already exists: {response.text}",
                status_code=409,
            )

        if response.status_code == 401:
            raise KeycloakAuthError(
                "Authentication expired or invalid",
                status_code=401,
            )

        if response.status_code in THROTTLING_STATUS_CODES:
            raise KeycloakThrottledError(
                f"Rate limited ({response.status_code})",
                status_code=response.status_code,
                retry_after=_retry_after(response),
            )

        if response.status_code not in expected:
            raise KeycloakError(
                f"Unexpected response {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def list_users(
        self, realm: str, first: int = 0, max_results: int = 100
    ) -> list[dict[str, Any]]:
        """List one page of users in the realm."""
        users = await self._get(
            realm,
            "/users",
            params={"first": first, "max": max_results, "briefRepresentation": "false"},
        )
        users = users or []
        for user in users:
            if user.get("username") and user.get("id"):
                self._user_ids[(realm, user["username"])] = user["id"]
        return users

    async def get_user_id(self, realm: str, username: str) -> str:
        """Resolve a username to its Keycloak user ID."""
        cached = self._user_ids.get((realm, username))
        if cached:
            return cached

        users = await self._get(
            realm, "/users", params={"username": username, "exact": "true"}
        )
        for user in users or []:
            # The search is case-insensitive on some versions; match exactly
            if user.get("username") == username:
                self._user_ids[(realm, username)] = user["id"]
                return user["id"]

        raise KeycloakNotFoundError(f"User not found: {username}", status_code=404)

    async def create_user(self, realm: str, record: UserRecord) -> str:
        """Create a user and return its ID."""
        payload: dict[str, Any] = {
            "username": record.username,
            "enabled": record.enabled,
        }
        for name, api_name in ATTRIBUTE_FIELDS.items():
            value = getattr(record, name)
            if value is not None:
                payload[api_name] = value

        logger.debug("Creating user: %s", record.username)
        response = await self._post(realm, "/users", json=payload)

        # Keycloak returns the new user's URL in the Location header
        location = response.headers.get("Location", "")
        user_id = location.rstrip("/").rsplit("/", 1)[-1] if location else ""
        if user_id:
            self._user_ids[(realm, record.username)] = user_id
        else:
            user_id = await self.get_user_id(realm, record.username)

        logger.info("Created user: %s (id=%s)", record.username, user_id)
        return user_id

    async def update_user(self, realm: str, username: str, fields: dict[str, Any]) -> None:
        """Update attributes of a user.

        ``fields`` uses record field names (``first_name``...); they are mapped
        to Keycloak's representation names here.
        """
        user_id = await self.get_user_id(realm, username)
        payload = {ATTRIBUTE_FIELDS.get(k, k): v for k, v in fields.items()}

        logger.debug("Updating user %s: %s", username, sorted(payload))
        await self._put(realm, f"/users/{user_id}", json=payload)
        logger.info("Updated user: %s", username)

    async def set_enabled(self, realm: str, username: str, enabled: bool) -> None:
        """Enable or disable a user."""
        user_id = await self.get_user_id(realm, username)
        await self._put(realm, f"/users/{user_id}", json={"enabled": enabled})
        logger.info("%s user: %s", "Enabled" if enabled else "Disabled", username)

    async def delete_user(self, realm: str, username: str) -> None:
        """Delete a user."""
        user_id = await self.get_user_id(realm, username)
        await self._delete(realm, f"/users/{user_id}")
        self._user_ids.pop((realm, username), None)
        logger.info("Deleted user: %s", username)

    # -------------------------------------------------------------------------
    # Realm roles
    # -------------------------------------------------------------------------

    async def get_realm_role(self, realm: str, role: str) -> dict[str, Any]:
        """Get a realm role representation by name."""
        cached = self._roles.get((realm, role))
        if cached:
            return cached
        representation = await self._get(realm, f"/roles/{quote(role, safe='')}")
        self._roles[(realm, role)] = representation
        return representation

    async def create_realm_role(self, realm: str, role: str) -> None:
        """Create a realm role."""
        logger.debug("Creating realm role: %s", role)
        await self._post(realm, "/roles", json={"name": role})
        logger.info("Created realm role: %s", role)

    async def get_user_roles(self, realm: str, username: str) -> set[str]:
        """Get the names of the realm roles directly mapped to a user."""
        user_id = await self.get_user_id(realm, username)
        roles = await self._get(realm, f"/users/{user_id}/role-mappings/realm")
        return {r["name"] for r in roles or [] if r.get("name")}

    async def grant_role(
        self, realm: str, username: str, role: str, create_missing: bool = False
    ) -> None:
        """Map a realm role to a user.

        With ``create_missing`` a role absent from the realm is created first.
        """
        try:
            representation = await self.get_realm_role(realm, role)
        except KeycloakNotFoundError as e:
            if not create_missing:
                raise KeycloakNotFoundError(f"Realm role not found: {role}", status_code=404) from e
            try:
                await self.create_realm_role(realm, role)
            except KeycloakConflictError:
                # Created concurrently by another worker
                pass
            representation = await self.get_realm_role(realm, role)

        user_id = await self.get_user_id(realm, username)
        await self._post(
            realm,
            f"/users/{user_id}/role-mappings/realm",
            json=[{"id": representation["id"], "name": representation["name"]}],
        )
        logger.info("Granted role %s to %s", role, username)

    async def revoke_role(self, realm: str, username: str, role: str) -> None:
        """Remove a realm role mapping from a user."""
        try:
            representation = await self.get_realm_role(realm, role)
        except KeycloakNotFoundError as e:
            raise KeycloakNotFoundError(f"Realm role not found: {role}", status_code=404) from e

        user_id = await self.get_user_id(realm, username)
        await self._delete(
            realm,
            f"/users/{user_id}/role-mappings/realm",
            json=[{"id": representation["id"], "name": representation["name"]}],
        )
        logger.info("Revoked role %s from %s", role, username)
