"""
Error kinds shared across the backup pipeline.

Concrete exceptions live next to the code that raises them (exporter,
compression, storage, ...) and inherit from one of the kinds below, so the
executor and the retry policy can classify failures without knowing every
module.
"""


class BackupError(Exception):
    """
    Base class for all pipeline errors.

    ``stage`` is set by the executor to the stage that was running when the
    error escaped.
    """
    stage = None


class ConfigError(BackupError):
    """Required configuration or credentials are missing or malformed."""
    pass


class TransportError(BackupError):
    """A remote endpoint failed or returned a non-success status."""
    pass


class EmptyResultError(BackupError):
    """An operation reported success but produced zero bytes."""
    pass


class VerificationError(BackupError):
    """A post-write integrity check failed."""
    pass


class PartialFailureError(BackupError):
    """Some sub-operations of a batch failed."""
    pass


class MissingInputError(BackupError):
    """A local file the stage depends on does not exist."""
    pass


class NotificationError(BackupError):
    """Delivering a status notification failed."""
    pass


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a stage should be retried after this error.

    Missing configuration or local inputs are never retried, nor are empty
    results: repeating the call without changing its cause cannot succeed.
    """
    return not isinstance(error, (ConfigError, MissingInputError, EmptyResultError))
