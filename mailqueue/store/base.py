"""
Abstract Queue Store: Interface for all storage backends.

Implementations:
  - SqlQueueStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryQueueStore (dict-based, single-process, no persistence)

Every method is its own unit of work: it either commits completely or
leaves the store untouched. Methods return detached pydantic records, so
callers never hold live rows and always re-read the latest persisted state.

compare_and_set_status() is the one atomic primitive the delivery worker
relies on to claim an entry; implementations must guarantee that, among
concurrent callers with the same expected status, at most one succeeds.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from mailqueue.models.email_campaign import CampaignStatus
from mailqueue.models.email_queue import EmailStatus
from mailqueue.schemas.email_campaign import Campaign, CampaignCreate
from mailqueue.schemas.email_queue import EmailQueueCreate, QueueEntry

# Entry columns a conditional update may change alongside the status
MUTABLE_ENTRY_FIELDS = frozenset({
    "scheduled_date", "sent_date", "claimed_date", "attempt_count",
    "max_attempts", "last_error", "priority",
})

MUTABLE_CAMPAIGN_FIELDS = frozenset({
    "name", "description", "subject", "body", "campaign_type", "target_audience",
    "scheduled_date", "sent_date", "total_recipients", "emails_sent",
    "emails_failed", "emails_pending", "priority", "max_retry_attempts",
})


def check_fields(changes: dict[str, Any], allowed: frozenset) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Cannot update fields: {sorted(unknown)}")


class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    # ── Queue entries ─────────────────────────────────────────

    @abstractmethod
    def add_entry(self, data: EmailQueueCreate) -> QueueEntry:
        ...

    @abstractmethod
    def add_entries(self, items: list[EmailQueueCreate]) -> list[QueueEntry]:
        """Persist all entries in a single unit of work."""
        ...

    @abstractmethod
    def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    def find_due(self, now: datetime, limit: int) -> list[QueueEntry]:
        """PENDING entries with scheduled_date <= now, oldest schedule first.

        Entries belonging to a PAUSED campaign are not due.
        """
        ...

    @abstractmethod
    def compare_and_set_status(
        self,
        entry_id: int,
        expected: EmailStatus,
        new: EmailStatus,
        **changes: Any,
    ) -> bool:
        """Set status (and the given columns) only if the status is still `expected`."""
        ...

    @abstractmethod
    def release_stale_claims(self, claimed_before: datetime) -> int:
        """Return PROCESSING entries claimed before the cutoff to PENDING."""
        ...

    @abstractmethod
    def find_by_status(self, status: EmailStatus, offset: int = 0, limit: int = 50) -> list[QueueEntry]:
        ...

    @abstractmethod
    def find_by_campaign(self, campaign_id: int) -> list[QueueEntry]:
        ...

    @abstractmethod
    def count_by_status(self, campaign_id: Optional[int] = None) -> dict[EmailStatus, int]:
        """Entry counts per status, optionally restricted to one campaign."""
        ...

    @abstractmethod
    def count_by_type(self) -> dict[str, int]:
        ...

    @abstractmethod
    def count_sent_since(self, since: datetime) -> int:
        ...

    @abstractmethod
    def next_scheduled(self) -> Optional[datetime]:
        ...

    @abstractmethod
    def last_sent(self) -> Optional[datetime]:
        ...

    @abstractmethod
    def cancel_pending_for_campaign(self, campaign_id: int) -> int:
        """Conditionally cancel every still-PENDING entry of a campaign."""
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    def add_campaign(self, data: CampaignCreate) -> Campaign:
        ...

    @abstractmethod
    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        ...

    @abstractmethod
    def update_campaign(self, campaign_id: int, **changes: Any) -> Optional[Campaign]:
        ...

    @abstractmethod
    def compare_and_set_campaign_status(
        self,
        campaign_id: int,
        expected: Iterable[CampaignStatus],
        new: CampaignStatus,
        **changes: Any,
    ) -> bool:
        ...

    @abstractmethod
    def list_campaigns(
        self,
        statuses: Optional[Iterable[CampaignStatus]] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Campaign]:
        """Campaigns newest first, optionally filtered by status."""
        ...

    @abstractmethod
    def count_campaigns(self, statuses: Optional[Iterable[CampaignStatus]] = None) -> int:
        ...

    @abstractmethod
    def find_campaigns_due(self, now: datetime) -> list[Campaign]:
        """SCHEDULED campaigns whose scheduled_date has arrived, by priority."""
        ...

    @abstractmethod
    def campaign_counts_by_status(self) -> dict[str, int]:
        ...

    @abstractmethod
    def campaign_counts_by_type(self) -> dict[str, int]:
        ...

    @abstractmethod
    def delete_campaign(self, campaign_id: int) -> bool:
        ...
