"""
Email Queue Service
===================

Database-driven email queue. Callers enqueue messages here; the delivery
worker picks them up on its next tick. Every state change goes straight to
the store in its own unit of work, nothing is cached in memory.
"""

from datetime import timedelta
from typing import Iterable, List, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from mailqueue.core.config import settings
from mailqueue.core.exceptions import ValidationError
from mailqueue.models.email_queue import EmailStatus, EmailType
from mailqueue.schemas.email_queue import EmailQueueCreate, EmailQueueStats, QueueEntry
from mailqueue.store.base import BaseQueueStore
from mailqueue.utils import timezone as tz
from mailqueue.utils.pagination import PaginatedResponse, PaginationMeta, PaginationParams

logger = logging.getLogger(__name__)


def build_request(
    recipient_email: str,
    recipient_name: str,
    subject: str,
    body: str,
    email_type: EmailType,
    scheduled_date=None,
    max_attempts: Optional[int] = None,
    priority: int = 5,
    campaign_id: Optional[int] = None,
    registration_id: Optional[int] = None,
) -> EmailQueueCreate:
    """Validate one enqueue request, raising our ValidationError on bad input."""
    try:
        return EmailQueueCreate(
            recipient_email=recipient_email,
            recipient_name=recipient_name or "",
            subject=subject,
            body=body,
            email_type=email_type,
            scheduled_date=scheduled_date,
            max_attempts=max_attempts if max_attempts is not None else settings.DEFAULT_MAX_ATTEMPTS,
            priority=priority,
            campaign_id=campaign_id,
            registration_id=registration_id,
        )
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e) from e


def enqueue(
    store: BaseQueueStore,
    recipient_email: str,
    recipient_name: str,
    subject: str,
    body: str,
    email_type: EmailType,
    scheduled_date=None,
    max_attempts: Optional[int] = None,
    priority: int = 5,
    campaign_id: Optional[int] = None,
    registration_id: Optional[int] = None,
) -> QueueEntry:
    """
    Add an email to the queue.

    Args:
        store: Queue store
        recipient_email: Destination address (validated)
        recipient_name: Display name, may be empty
        subject: Non-blank subject line
        body: Non-blank (HTML) body
        email_type: Kind of email
        scheduled_date: Not sent before this time (default: now)
        max_attempts: Delivery attempt budget (default: DEFAULT_MAX_ATTEMPTS)

    Returns:
        QueueEntry: The PENDING entry as stored

    Raises:
        ValidationError: malformed input; nothing is stored
    """
    request = build_request(
        recipient_email, recipient_name, subject, body, email_type,
        scheduled_date=scheduled_date, max_attempts=max_attempts, priority=priority,
        campaign_id=campaign_id, registration_id=registration_id,
    )
    entry = store.add_entry(request)
    logger.info(
        f"Email queued: {entry.email_type.value} for {entry.recipient_email} "
        f"scheduled at {entry.scheduled_date}"
    )
    return entry


def enqueue_many(store: BaseQueueStore, requests: Iterable[EmailQueueCreate]) -> List[QueueEntry]:
    """
    Persist several already-validated requests in a single unit of work.

    Either all entries are stored or none are.
    """
    requests = list(requests)
    if not requests:
        return []
    entries = store.add_entries(requests)
    logger.info(f"Queued {len(entries)} emails")
    return entries


def retry(store: BaseQueueStore, entry_id: int, extra_attempts: int = 0) -> bool:
    """
    Put a FAILED entry back in the queue, due immediately.

    attempt_count is kept, so an entry whose budget is spent will be failed
    again by the worker without sending unless extra_attempts raises
    max_attempts. last_error is kept as a record of the last failure.

    Returns:
        bool: False if the entry does not exist or is not FAILED
    """
    if extra_attempts < 0:
        raise ValidationError("extra_attempts cannot be negative")

    entry = store.get_entry(entry_id)
    if entry is None or not entry.can_retry:
        logger.warning(f"Email {entry_id} cannot be retried (not found or not failed)")
        return False

    changes = {"scheduled_date": tz.now()}
    if extra_attempts:
        changes["max_attempts"] = entry.max_attempts + extra_attempts

    if store.compare_and_set_status(entry_id, EmailStatus.FAILED, EmailStatus.PENDING, **changes):
        logger.info(
            f"Email {entry_id} re-queued for retry "
            f"(attempts {entry.attempt_count}/{changes.get('max_attempts', entry.max_attempts)})"
        )
        return True
    return False


def cancel(store: BaseQueueStore, entry_id: int) -> bool:
    """
    Cancel a PENDING entry.

    Loses silently to a worker that has already claimed the entry.
    """
    cancelled = store.compare_and_set_status(entry_id, EmailStatus.PENDING, EmailStatus.CANCELLED)
    if cancelled:
        logger.info(f"Email {entry_id} cancelled")
    return cancelled


def get_entry(store: BaseQueueStore, entry_id: int) -> Optional[QueueEntry]:
    return store.get_entry(entry_id)


def get_by_status(
    store: BaseQueueStore,
    status: EmailStatus,
    page: int = 1,
    page_size: int = 50,
) -> PaginatedResponse[QueueEntry]:
    """Entries with the given status, newest first, one page at a time."""
    try:
        params = PaginationParams(page=page, limit=page_size)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e) from e
    items = store.find_by_status(status, offset=params.offset, limit=params.limit)
    total = store.count_by_status()[status]
    return PaginatedResponse[QueueEntry](
        items=items,
        pagination=PaginationMeta.create(params.page, params.limit, total),
    )


def get_by_campaign(store: BaseQueueStore, campaign_id: int) -> List[QueueEntry]:
    return store.find_by_campaign(campaign_id)


def get_failed(store: BaseQueueStore, limit: int = 100) -> List[QueueEntry]:
    """Failed entries, candidates for manual retry."""
    return store.find_by_status(EmailStatus.FAILED, offset=0, limit=limit)


def get_statistics(store: BaseQueueStore) -> EmailQueueStats:
    """Get email queue statistics."""
    counts = store.count_by_status()
    return EmailQueueStats(
        total_emails=sum(counts.values()),
        pending_count=counts[EmailStatus.PENDING],
        processing_count=counts[EmailStatus.PROCESSING],
        sent_count=counts[EmailStatus.SENT],
        failed_count=counts[EmailStatus.FAILED],
        cancelled_count=counts[EmailStatus.CANCELLED],
        total_sent_24h=store.count_sent_since(tz.now() - timedelta(hours=24)),
        type_counts=store.count_by_type(),
        next_scheduled=store.next_scheduled(),
        last_sent=store.last_sent(),
    )
