"""Exception hierarchy for the chat vector sync engine.

Transient errors are retried with backoff; everything else is either
rejected locally or reported in a batch result.
"""


class ServiceError(Exception):
    """Base class for all errors raised by this project."""


class ConfigurationError(ServiceError, ValueError):
    """A required setting is missing or malformed."""


class ValidationError(ServiceError):
    """Input rejected locally, before any call to an external service."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class AuthorizationError(ServiceError):
    """An administrative operation was requested without the admin credential."""


class ClientRequestError(ServiceError):
    """A backend answered with a non-retryable error status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientClientError(ServiceError):
    """Network failure, timeout, rate limit or 5xx from a backend."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientIndexError(TransientClientError):
    pass


class TransientEmbeddingError(TransientClientError):
    pass


class TransientCompletionError(TransientClientError):
    pass


class TransientStoreError(TransientClientError):
    pass


class SyncFailure(ServiceError):
    """Retries for a single record are exhausted.

    Attributes:
        entity_id: Id of the record that could not be synced.
        cause: The last error raised while syncing it.
    """

    def __init__(self, entity_id: str, cause: Exception):
        super().__init__(f"Sync failed for entity '{entity_id}': {cause}")
        self.entity_id = entity_id
        self.cause = cause


class MigrationInProgressError(ServiceError):
    """A reset or a second migration was requested while a migration runs."""
