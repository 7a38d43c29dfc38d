"""Error kinds raised by the scheduling engine."""


class SRSError(Exception):
    """Base exception for all scheduling engine errors."""

    error_code: str = "srs_error"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str) -> None:
        """Initialize exception with a human-readable message."""
        self.message = message
        super().__init__(message)


class InvalidQuality(SRSError):
    """Quality grade outside the 0-5 scale."""

    error_code = "invalid_quality"
    status_code = 422

    def __init__(self, quality: object) -> None:
        """Initialize with the rejected quality value."""
        self.quality = quality
        super().__init__(f"Quality must be an integer between 0 and 5, got {quality!r}")


class CardNotFound(SRSError):
    error_code = "card_not_found"
    status_code = 404

    def __init__(self, card_id: int) -> None:
        """Initialize with the unknown card ID."""
        self.card_id = card_id
        super().__init__(f"Card with id {card_id} not found")


class DuplicateCard(SRSError):
    """A card already exists for the (owner, item) pair."""

    error_code = "duplicate_card"
    status_code = 409

    def __init__(self, owner_id: str, item_ids: list[str]) -> None:
        """Initialize with the owner and the offending item IDs."""
        self.owner_id = owner_id
        self.item_ids = item_ids
        super().__init__(f"Owner {owner_id!r} already has cards for items: {', '.join(item_ids)}")


class ConcurrentModification(SRSError):
    """The card changed between read and write; re-fetch and retry."""

    error_code = "concurrent_modification"
    status_code = 409
    retryable = True

    def __init__(self, card_id: int) -> None:
        """Initialize with the contested card ID."""
        self.card_id = card_id
        super().__init__(f"Card {card_id} was modified concurrently")


class StorageTimeout(SRSError):
    error_code = "storage_timeout"
    status_code = 503
    retryable = True

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        """Initialize with the storage operation that timed out."""
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Storage operation {operation!r} timed out after {timeout_seconds}s")


class OutOfOrder(SRSError):
    """A card was answered or skipped while another card is surfaced."""

    error_code = "out_of_order"
    status_code = 409

    def __init__(self, card_id: int, expected_card_id: int | None) -> None:
        """Initialize with the submitted and the surfaced card IDs."""
        self.card_id = card_id
        self.expected_card_id = expected_card_id
        super().__init__(f"Card {card_id} is not the current card (expected {expected_card_id})")


class SessionInProgress(SRSError):
    error_code = "session_in_progress"
    status_code = 409

    def __init__(self, owner_id: str) -> None:
        """Initialize with the owner whose session is still running."""
        self.owner_id = owner_id
        super().__init__(f"Owner {owner_id!r} already has a review session in progress")


class NoActiveSession(SRSError):
    error_code = "no_active_session"
    status_code = 404

    def __init__(self, owner_id: str) -> None:
        """Initialize with the owner that has no session."""
        self.owner_id = owner_id
        super().__init__(f"Owner {owner_id!r} has no review session")


class SessionStateError(SRSError):
    """The requested transition is not valid from the session's current state."""

    error_code = "invalid_session_state"
    status_code = 409
