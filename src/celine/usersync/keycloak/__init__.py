"""Keycloak access: admin API client and observed-state fetcher."""

from celine.usersync.keycloak.client import (
    KeycloakAdminClient,
    KeycloakAuthError,
    KeycloakConflictError,
    KeycloakError,
    KeycloakNotFoundError,
    KeycloakThrottledError,
)
from celine.usersync.keycloak.fetcher import SnapshotFetcher

__all__ = [
    "KeycloakAdminClient",
    "KeycloakAuthError",
    "KeycloakConflictError",
    "KeycloakError",
    "KeycloakNotFoundError",
    "KeycloakThrottledError",
    "SnapshotFetcher",
]
