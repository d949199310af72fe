"""Exception hierarchy for cardsync."""

from __future__ import annotations


class CardSyncError(RuntimeError):
    """Base cardsync error."""


class VCardParseError(CardSyncError, ValueError):
    """Raised when vCard text cannot be parsed into contact data."""


class CardDavError(CardSyncError):
    """Base CardDAV transport error."""


class CardDavRequestError(CardDavError):
    """Raised when the CardDAV server answers with a non-success status."""

    def __init__(self, *, status_code: int, message: str, url: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.url = url
        super().__init__(f"CardDAV request failed ({status_code}): {message}")


class CardDavNetworkError(CardDavError):
    """Raised when the CardDAV server cannot be reached."""


class CardDavProtocolError(CardDavError):
    """Raised when a CardDAV response cannot be interpreted."""


class UnsafeServerUrlError(CardSyncError, ValueError):
    """Raised when a server URL fails SSRF validation."""


class SecretDecryptionError(CardSyncError):
    """Raised when a stored credential cannot be decrypted."""


class ConnectionNotFoundError(CardSyncError):
    """Raised when a CardDAV connection does not exist for the caller."""


class SyncAlreadyRunningError(CardSyncError):
    """Raised when another sync run holds the connection's lease."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Sync already in progress for connection {connection_id}")


class ConflictNotFoundError(CardSyncError):
    """Raised when a conflict does not exist or is not owned by the caller."""


class ConflictAlreadyResolvedError(CardSyncError):
    """Raised when resolving a conflict that already has a resolution."""


class PersonNotFoundError(CardSyncError):
    """Raised when a person is missing among the caller's active persons."""


class MergeValidationError(CardSyncError, ValueError):
    """Raised when merge arguments are rejected before any write."""


class SyncDisabledError(CardSyncError):
    """Raised when syncing a connection whose sync is switched off."""
