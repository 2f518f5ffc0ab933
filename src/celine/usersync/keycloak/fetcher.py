"""Observed-state snapshot of a Keycloak realm."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from celine.usersync.errors import ObservedStateUnavailable, PartialObservation
from celine.usersync.keycloak.client import KeycloakAdminClient, KeycloakError
from celine.usersync.models import UserRecord, UserSnapshot

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_PREFIX = "service-account-"


def _is_service_account(user: dict[str, Any]) -> bool:
    return bool(user.get("serviceAccountClientId")) or (user.get("username") or "").startswith(
        SERVICE_ACCOUNT_PREFIX
    )


class SnapshotFetcher:
    """Reads users and their realm role mappings from Keycloak."""

    def __init__(
        self,
        client: KeycloakAdminClient,
        page_size: int = 100,
        max_workers: int = 4,
        ignored_roles: Iterable[str] = (),
    ):
        self._client = client
        self._page_size = page_size
        self._max_workers = max_workers
        self._ignored_roles = frozenset(ignored_roles)

    async def fetch_observed(self, realm: str) -> UserSnapshot:
        """Fetch the current users of a realm.

        Raises:
            ObservedStateUnavailable: the user listing failed.
        """
        try:
            raw_users = await self._list_all(realm)
        except (KeycloakError, ValueError) as e:
            raise ObservedStateUnavailable(f"Cannot list users of realm {realm}: {e}") from e

        snapshot = UserSnapshot()
        for user in raw_users:
            if _is_service_account(user):
                continue
            try:
                record = UserRecord.model_validate(
                    {
                        "username": user.get("username"),
                        "email": user.get("email"),
                        "firstName": user.get("firstName"),
                        "lastName": user.get("lastName"),
                        "enabled": user.get("enabled", True),
                    }
                )
            except ValidationError as e:
                raise ObservedStateUnavailable(
                    f"Unexpected user representation in realm {realm}: {e}"
                ) from e
            # Overlapping pages (users created mid-listing) repeat entries
            snapshot.users.setdefault(record.username, record)

        await self._fetch_roles(realm, snapshot)

        logger.info(
            "Observed %d users in realm %s (%d with incomplete role mappings)",
            len(snapshot),
            realm,
            len(snapshot.partial),
        )
        return snapshot

    async def _list_all(self, realm: str) -> list[dict[str, Any]]:
        """Page through the user listing until a short page is returned."""
        users: list[dict[str, Any]] = []
        first = 0
        while True:
            page = await self._client.list_users(realm, first=first, max_results=self._page_size)
            users.extend(page)
            logger.debug("Listed %d users (first=%d)", len(page), first)
            if len(page) < self._page_size:
                return users
            first += len(page)

    async def _fetch_roles(self, realm: str, snapshot: UserSnapshot) -> None:
        semaphore = asyncio.Semaphore(self._max_workers)

        async def fetch(username: str) -> tuple[str, set[str] | PartialObservation]:
            async with semaphore:
                try:
                    return username, await self._client.get_user_roles(realm, username)
                except KeycloakError as e:
                    logger.warning("Could not read role mappings of %s: %s", username, e)
                    return username, PartialObservation(username, e)

        results = await asyncio.gather(*(fetch(u) for u in snapshot.users))
        for username, roles in results:
            if isinstance(roles, PartialObservation):
                snapshot.partial[username] = roles
                continue
            record = snapshot.users[username]
            snapshot.users[username] = record.model_copy(
                update={"roles": frozenset(roles - self._ignored_roles)}
            )
