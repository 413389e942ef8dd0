"""Exceptions raised by the sync engine."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync failures.

    ``kind`` is the stable category surfaced to callers: ``unauthorized``,
    ``transport_error``, ``rejected`` or ``configuration``.
    """

    kind = "sync_error"


class UnauthorizedError(SyncError):
    """No usable credential, even after one forced token refresh."""

    kind = "unauthorized"

    def __init__(self, message: str = "Authentication is required for sync.", status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


class ForbiddenError(UnauthorizedError):
    """The account is authenticated but not allowed to sync."""

    def __init__(self, message: str = "This account is not authorized for sync.") -> None:
        super().__init__(message, status_code=403)


class TransportError(SyncError):
    """Network failure, timeout, or a non-2xx response."""

    kind = "transport_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.reason = reason

    @property
    def is_retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code in (408, 429) or 500 <= self.status_code <= 599


class ResponseDecodingError(TransportError):
    """A 2xx response whose body is not the expected JSON object."""

    @property
    def is_retryable(self) -> bool:
        return False


class ConfigurationError(SyncError):
    """Sync cannot run with the current configuration."""

    kind = "configuration"


class InsecureEndpointError(ConfigurationError):
    """The configured sync endpoint does not use HTTPS."""


class MutationRejectedError(SyncError):
    """The authority refused a specific mutation; retrying it verbatim cannot succeed."""

    kind = "rejected"

    def __init__(self, op_id: str, reason: str, entity: str = "", entity_id: str = "") -> None:
        super().__init__(f"Mutation {op_id} rejected: {reason}")
        self.op_id = op_id
        self.reason = reason
        self.entity = entity
        self.entity_id = entity_id
