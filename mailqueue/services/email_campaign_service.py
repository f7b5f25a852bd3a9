"""
Email Campaign Service
======================

Campaign lifecycle and fan-out.

    DRAFT --schedule--> SCHEDULED --due / send--> SENDING --all entries done--> SENT
    DRAFT --send--> SENDING                SENDING <--pause / resume--> PAUSED
    any but SENT / CANCELLED --cancel--> CANCELLED
    SENDING with an empty audience --> FAILED

Sending a campaign creates one CAMPAIGN queue entry per recipient in a
single unit of work; the delivery worker does the actual sending. The
campaign counters are a cache, always recomputed from its queue entries.
"""

from datetime import datetime
from typing import List, Optional, Union
import logging

from pydantic import ValidationError as PydanticValidationError

from mailqueue.core.exceptions import (
    CampaignNotFound, CampaignStateError, ValidationError,
)
from mailqueue.models.email_campaign import CampaignStatus
from mailqueue.models.email_queue import EmailStatus, EmailType
from mailqueue.schemas.email_campaign import (
    Campaign, CampaignCounts, CampaignCreate, CampaignStats, CampaignUpdate, Recipient,
)
from mailqueue.services import email_queue_service
from mailqueue.services.recipients import RecipientResolver
from mailqueue.store.base import BaseQueueStore
from mailqueue.utils import timezone as tz
from mailqueue.utils.pagination import PaginatedResponse, PaginationMeta, PaginationParams

logger = logging.getLogger(__name__)

SENDABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
LOCKED_STATUSES = (CampaignStatus.SENDING, CampaignStatus.PAUSED, CampaignStatus.SENT)
CANCELLABLE_STATUSES = (
    CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.SENDING,
    CampaignStatus.PAUSED, CampaignStatus.FAILED,
)

def personalize_content(content: str, recipient: Recipient) -> str:
    """Replace the recipient placeholders in a subject or body."""
    if not content:
        return content
    return (
        content
        .replace("{{fullName}}", recipient.name or "")
        .replace("{{email}}", recipient.email)
        .replace("{{teamName}}", recipient.team_name or "")
        .replace("{{registrationDate}}",
                 recipient.registration_date.isoformat() if recipient.registration_date else "")
    )


def _require_campaign(store: BaseQueueStore, campaign_id: int) -> Campaign:
    campaign = store.get_campaign(campaign_id)
    if campaign is None:
        raise CampaignNotFound(f"Campaign {campaign_id} not found")
    return campaign


# ── CRUD ──────────────────────────────────────────────────────

def create_campaign(store: BaseQueueStore, data: Union[CampaignCreate, dict]) -> Campaign:
    """
    Create a campaign in DRAFT status.

    Args:
        store: Queue store
        data: CampaignCreate or a dict of its fields

    Raises:
        ValidationError: missing or malformed fields
    """
    if not isinstance(data, CampaignCreate):
        try:
            data = CampaignCreate(**data)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e) from e

    campaign = store.add_campaign(data)
    logger.info(f"Created email campaign {campaign.id}: {campaign.name}")
    return campaign


def update_campaign(store: BaseQueueStore, campaign_id: int, data: Union[CampaignUpdate, dict]) -> Campaign:
    """Edit a campaign that has not started sending."""
    if not isinstance(data, CampaignUpdate):
        try:
            data = CampaignUpdate(**data)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e) from e

    campaign = _require_campaign(store, campaign_id)
    if campaign.status in LOCKED_STATUSES:
        raise CampaignStateError(f"Cannot edit campaign {campaign_id} in status {campaign.status.value}")

    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        return campaign
    return store.update_campaign(campaign_id, **changes)


def get_campaign(store: BaseQueueStore, campaign_id: int) -> Optional[Campaign]:
    return store.get_campaign(campaign_id)


def list_campaigns(store: BaseQueueStore, page: int = 1, page_size: int = 50) -> PaginatedResponse[Campaign]:
    params = PaginationParams(page=page, limit=page_size)
    items = store.list_campaigns(offset=params.offset, limit=params.limit)
    return PaginatedResponse[Campaign](
        items=items,
        pagination=PaginationMeta.create(params.page, params.limit, store.count_campaigns()),
    )


def get_campaigns_by_status(store: BaseQueueStore, status: CampaignStatus, limit: int = 100) -> List[Campaign]:
    return store.list_campaigns(statuses=[status], limit=limit)


def delete_campaign(store: BaseQueueStore, campaign_id: int) -> bool:
    """Delete a campaign that never produced any queue entries."""
    _require_campaign(store, campaign_id)
    if store.find_by_campaign(campaign_id):
        raise CampaignStateError(f"Campaign {campaign_id} has queued emails and cannot be deleted")
    deleted = store.delete_campaign(campaign_id)
    if deleted:
        logger.info(f"Deleted email campaign {campaign_id}")
    return deleted


# ── Lifecycle ─────────────────────────────────────────────────

def schedule_campaign(store: BaseQueueStore, campaign_id: int, when: datetime) -> Campaign:
    """Schedule a DRAFT (or reschedule a SCHEDULED) campaign."""
    if when is None:
        raise ValidationError("Scheduled date is required")
    campaign = _require_campaign(store, campaign_id)
    when = tz.ensure_aware(when)

    if not store.compare_and_set_campaign_status(
        campaign_id, SENDABLE_STATUSES, CampaignStatus.SCHEDULED, scheduled_date=when
    ):
        raise CampaignStateError(f"Campaign {campaign_id} cannot be scheduled in status {campaign.status.value}")

    logger.info(f"Scheduled campaign {campaign_id} for {when}")
    return store.get_campaign(campaign_id)


def send_campaign(store: BaseQueueStore, campaign_id: int, resolver: RecipientResolver) -> Campaign:
    """
    Fan a campaign out into one queue entry per recipient.

    The DRAFT|SCHEDULED -> SENDING transition is a conditional update, so
    of two concurrent calls exactly one creates entries and the other gets
    CampaignStateError.

    Raises:
        CampaignNotFound: no such campaign
        CampaignStateError: campaign is not DRAFT or SCHEDULED
    """
    _require_campaign(store, campaign_id)
    if not store.compare_and_set_campaign_status(campaign_id, SENDABLE_STATUSES, CampaignStatus.SENDING):
        current = store.get_campaign(campaign_id)
        raise CampaignStateError(
            f"Campaign {campaign_id} cannot be sent in status {current.status.value if current else 'DELETED'}"
        )

    try:
        # Content as of the transition; SENDING campaigns cannot be edited
        campaign = _require_campaign(store, campaign_id)
        recipients = resolver.resolve_audience(campaign.target_audience)
        requests = _build_requests(campaign, recipients)
        if not requests:
            store.compare_and_set_campaign_status(
                campaign_id, [CampaignStatus.SENDING], CampaignStatus.FAILED,
                total_recipients=0, emails_pending=0,
            )
            logger.warning(f"Campaign {campaign_id} has no valid recipients for audience {campaign.target_audience}")
            return store.get_campaign(campaign_id)

        entries = email_queue_service.enqueue_many(store, requests)
    except Exception as e:
        logger.error(f"Error sending campaign {campaign_id}: {e}")
        store.compare_and_set_campaign_status(campaign_id, [CampaignStatus.SENDING], CampaignStatus.FAILED)
        raise

    logger.info(f"Campaign {campaign_id} queued {len(entries)} emails")
    # Counters always come from the entries; a worker may already have sent some
    return refresh_campaign_statistics(store, campaign_id)


def _build_requests(campaign: Campaign, recipients: List[Recipient]) -> list:
    requests = []
    seen = set()
    for recipient in recipients:
        key = (recipient.email or "").strip().lower()
        if not key or key in seen:
            logger.warning(f"Campaign {campaign.id}: skipping duplicate or empty address {recipient.email!r}")
            continue
        try:
            request = email_queue_service.build_request(
                recipient.email.strip(),
                recipient.name,
                personalize_content(campaign.subject, recipient),
                personalize_content(campaign.body, recipient),
                EmailType.CAMPAIGN,
                max_attempts=campaign.max_retry_attempts,
                priority=campaign.priority,
                campaign_id=campaign.id,
                registration_id=recipient.registration_id,
            )
        except ValidationError as e:
            logger.warning(f"Campaign {campaign.id}: skipping invalid recipient {recipient.email!r}: {e}")
            continue
        seen.add(key)
        requests.append(request)
    return requests


def process_scheduled_campaigns(store: BaseQueueStore, resolver: RecipientResolver) -> int:
    """
    Send every SCHEDULED campaign whose time has come.

    Returns:
        int: number of campaigns fanned out
    """
    started = 0
    try:
        due = store.find_campaigns_due(tz.now())
    except Exception as e:
        logger.error(f"Error loading scheduled campaigns: {e}")
        return 0

    for campaign in due:
        try:
            send_campaign(store, campaign.id, resolver)
            started += 1
        except CampaignStateError:
            logger.debug(f"Campaign {campaign.id} already picked up")
        except Exception as e:
            logger.error(f"Error processing scheduled campaign {campaign.id}: {e}")
    return started


def cancel_campaign(store: BaseQueueStore, campaign_id: int) -> Campaign:
    """Cancel a campaign and its still-pending emails. Sent and failed emails are kept."""
    campaign = _require_campaign(store, campaign_id)
    if not store.compare_and_set_campaign_status(campaign_id, CANCELLABLE_STATUSES, CampaignStatus.CANCELLED):
        raise CampaignStateError(f"Campaign {campaign_id} cannot be cancelled in status {campaign.status.value}")

    cancelled = store.cancel_pending_for_campaign(campaign_id)
    logger.info(f"Cancelled campaign {campaign_id} ({cancelled} pending emails cancelled)")
    return refresh_campaign_statistics(store, campaign_id)


def pause_campaign(store: BaseQueueStore, campaign_id: int) -> Campaign:
    """Stop the worker picking up this campaign's emails."""
    campaign = _require_campaign(store, campaign_id)
    if not store.compare_and_set_campaign_status(campaign_id, [CampaignStatus.SENDING], CampaignStatus.PAUSED):
        raise CampaignStateError(f"Campaign {campaign_id} cannot be paused in status {campaign.status.value}")
    logger.info(f"Paused campaign {campaign_id}")
    return store.get_campaign(campaign_id)


def resume_campaign(store: BaseQueueStore, campaign_id: int) -> Campaign:
    campaign = _require_campaign(store, campaign_id)
    if not store.compare_and_set_campaign_status(campaign_id, [CampaignStatus.PAUSED], CampaignStatus.SENDING):
        raise CampaignStateError(f"Campaign {campaign_id} cannot be resumed in status {campaign.status.value}")
    logger.info(f"Resumed campaign {campaign_id}")
    return refresh_campaign_statistics(store, campaign_id)


# ── Statistics ────────────────────────────────────────────────

def count_campaign_entries(store: BaseQueueStore, campaign_id: int) -> CampaignCounts:
    counts = store.count_by_status(campaign_id)
    return CampaignCounts(
        total=sum(counts.values()),
        sent=counts[EmailStatus.SENT],
        failed=counts[EmailStatus.FAILED],
        pending=counts[EmailStatus.PENDING] + counts[EmailStatus.PROCESSING],
        cancelled=counts[EmailStatus.CANCELLED],
    )


def refresh_campaign_statistics(store: BaseQueueStore, campaign_id: int) -> Campaign:
    """
    Recompute the campaign counters from its queue entries.

    A SENDING campaign with nothing left in flight becomes SENT.
    """
    _require_campaign(store, campaign_id)
    counts = count_campaign_entries(store, campaign_id)
    campaign = store.update_campaign(
        campaign_id,
        total_recipients=counts.total,
        emails_sent=counts.sent,
        emails_failed=counts.failed,
        emails_pending=counts.pending,
    )

    if campaign.status == CampaignStatus.SENDING and counts.pending == 0 and counts.total > 0:
        if store.compare_and_set_campaign_status(
            campaign_id, [CampaignStatus.SENDING], CampaignStatus.SENT, sent_date=tz.now()
        ):
            logger.info(
                f"Campaign {campaign_id} completed: {counts.sent} sent, {counts.failed} failed"
            )
            campaign = store.get_campaign(campaign_id)
    return campaign


def refresh_active_campaigns(store: BaseQueueStore) -> int:
    """Refresh every SENDING campaign. Returns how many were refreshed."""
    refreshed = 0
    for campaign in store.list_campaigns(statuses=[CampaignStatus.SENDING], limit=1000):
        try:
            refresh_campaign_statistics(store, campaign.id)
            refreshed += 1
        except Exception as e:
            logger.error(f"Error refreshing campaign {campaign.id}: {e}")
    return refreshed


def get_campaign_statistics(store: BaseQueueStore) -> CampaignStats:
    status_counts = store.campaign_counts_by_status()
    return CampaignStats(
        status_counts=status_counts,
        type_counts=store.campaign_counts_by_type(),
        total_campaigns=sum(status_counts.values()),
        active_campaigns=(status_counts.get(CampaignStatus.SENDING.value, 0)
                          + status_counts.get(CampaignStatus.SCHEDULED.value, 0)),
        scheduled_campaigns=status_counts.get(CampaignStatus.SCHEDULED.value, 0),
        sent_campaigns=status_counts.get(CampaignStatus.SENT.value, 0),
    )
