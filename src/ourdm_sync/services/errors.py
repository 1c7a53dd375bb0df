"""Error taxonomy for the messaging core.

Precondition failures (authorization, window, type) are raised synchronously
and never retried. Relay failures leave local state intact and are retryable.
"""


class MessagingError(RuntimeError):
    """Base exception raised by the messaging core."""


class NotFoundError(MessagingError):
    """Raised when a message or chat is absent from the local store."""


class AuthorizationError(MessagingError):
    """Raised when the actor is not allowed to edit or delete the message."""


class WindowExpiredError(MessagingError):
    """Raised when an edit or delete-for-everyone is outside its time window."""


class UnsupportedTypeError(MessagingError):
    """Raised when an edit targets a message that is not plain text."""


class EncryptionError(MessagingError):
    """Raised when content cannot be sealed, e.g. because no key is loaded."""


class DecryptionError(MessagingError):
    """Raised when a payload is corrupt or the key needed to open it is missing."""


class RelayUnavailableError(MessagingError):
    """Raised for transient network or relay failures.

    The local record is left in `pending` or `failed` and may be retried.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RelayDisabledError(RelayUnavailableError):
    """Raised when relay operations are attempted without a configured relay."""


class CapacityExceededError(MessagingError):
    """Raised internally when a per-chat cap is reached.

    Pinning converts this into a silent no-op; it is never surfaced to callers.
    """


class InvalidStateError(MessagingError):
    """Raised when an operation does not apply to the record's current status."""
