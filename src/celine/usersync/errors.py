"""Error taxonomy for a user sync run.

Fatal errors (source and observed-state failures) abort the run before any
mutation is attempted. Operation errors are recorded on their own plan entry
and never escalate.
"""

from __future__ import annotations


class UserSyncError(Exception):
    """Base exception for user sync errors."""

    pass


class SourceError(UserSyncError):
    """The desired-state source could not be turned into a snapshot."""

    pass


class SourceUnavailable(SourceError):
    """I/O or network failure while reading the desired state."""

    pass


class SourceMalformed(SourceError):
    """The desired state violates the user record schema."""

    pass


class ObservedStateUnavailable(UserSyncError):
    """The identity provider's user listing could not be read."""

    pass


class PartialObservation(UserSyncError):
    """Role mappings of a single user could not be read.

    Recorded per user on the observed snapshot rather than raised.
    """

    def __init__(self, username: str, cause: BaseException | None = None):
        super().__init__(f"Role mappings unavailable for {username}: {cause}")
        self.username = username
        self.cause = cause


class OperationError(UserSyncError):
    """A single reconciliation operation failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class OperationThrottled(OperationError):
    """The identity provider kept throttling the operation."""

    pass


class OperationRejected(OperationError):
    """The identity provider rejected the operation (not retryable)."""

    pass


class RunAborted(UserSyncError):
    """The run stopped early (cancellation or lost authentication)."""

    pass
