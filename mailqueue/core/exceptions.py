"""
Error taxonomy for the email delivery pipeline.
"""

from typing import Optional


class EmailQueueError(Exception):
    """Base class for all email pipeline errors."""


class ValidationError(EmailQueueError):
    """Malformed enqueue or campaign input; rejected before anything is stored."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Build a readable error from a pydantic ValidationError."""
        details = exc.errors()
        parts = []
        for err in details:
            location = ".".join(str(part) for part in err.get("loc", ()))
            parts.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
        return cls("; ".join(parts) or str(exc), errors=details)


class SendFailure(EmailQueueError):
    """A transport could not deliver a message."""

    permanent = False


class TransientSendFailure(SendFailure):
    """Timeout or temporary rejection; the entry is retried up to its budget."""


class PermanentSendFailure(SendFailure):
    """The message can never be delivered (e.g. the recipient address is refused)."""

    permanent = True


class ConcurrencyConflict(EmailQueueError):
    """Another worker claimed the entry first. The worker turns it into a skip."""


class StoreUnavailable(EmailQueueError):
    """The persistence layer failed; the current unit of work was rolled back."""


class EntryNotFound(EmailQueueError):
    pass


class CampaignNotFound(EmailQueueError):
    pass


class CampaignStateError(EmailQueueError):
    """The requested campaign operation is not allowed in its current status."""
