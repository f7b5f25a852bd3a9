"""
InMemoryQueueStore: Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database)
  - Full interface compatibility with SqlQueueStore
  - Thread-safe: a single lock makes every method atomic, which is what
    gives compare_and_set_status its claim semantics here
  - All data lost on process restart
"""
from __future__ import annotations

import itertools
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Optional

from mailqueue.models.email_campaign import CampaignStatus
from mailqueue.models.email_queue import EmailStatus
from mailqueue.schemas.email_campaign import Campaign, CampaignCreate
from mailqueue.schemas.email_queue import EmailQueueCreate, QueueEntry
from mailqueue.store.base import (
    BaseQueueStore, MUTABLE_CAMPAIGN_FIELDS, MUTABLE_ENTRY_FIELDS, check_fields,
)
from mailqueue.utils import timezone as tz

logger = logging.getLogger(__name__)


class InMemoryQueueStore(BaseQueueStore):
    """Same interface as SqlQueueStore; callers get copies, never the stored records."""

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: dict[int, QueueEntry] = {}
        self._campaigns: dict[int, Campaign] = {}
        self._entry_ids = itertools.count(1)
        self._campaign_ids = itertools.count(1)
        logger.info("In-memory queue store initialized")

    # ── Queue entries ─────────────────────────────────────────

    def add_entry(self, data: EmailQueueCreate) -> QueueEntry:
        return self.add_entries([data])[0]

    def add_entries(self, items: list[EmailQueueCreate]) -> list[QueueEntry]:
        now = tz.now()
        created = []
        with self._lock:
            for item in items:
                entry = QueueEntry(
                    id=next(self._entry_ids),
                    recipient_email=item.recipient_email,
                    recipient_name=item.recipient_name,
                    subject=item.subject,
                    body=item.body,
                    email_type=item.email_type,
                    status=EmailStatus.PENDING,
                    priority=item.priority,
                    scheduled_date=item.scheduled_date or now,
                    attempt_count=0,
                    max_attempts=item.max_attempts,
                    campaign_id=item.campaign_id,
                    registration_id=item.registration_id,
                    created_date=now,
                    updated_date=now,
                )
                self._entries[entry.id] = entry
                created.append(entry.model_copy())
        return created

    def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy() if entry is not None else None

    def find_due(self, now: datetime, limit: int) -> list[QueueEntry]:
        now = tz.ensure_aware(now)
        with self._lock:
            paused = {c.id for c in self._campaigns.values() if c.status == CampaignStatus.PAUSED}
            due = [
                e.model_copy() for e in self._entries.values()
                if e.status == EmailStatus.PENDING
                and e.scheduled_date <= now
                and e.campaign_id not in paused
            ]
        due.sort(key=lambda e: (e.scheduled_date, e.priority, e.id))
        return due[:limit]

    def compare_and_set_status(
        self,
        entry_id: int,
        expected: EmailStatus,
        new: EmailStatus,
        **changes: Any,
    ) -> bool:
        check_fields(changes, MUTABLE_ENTRY_FIELDS)
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != expected:
                return False
            self._entries[entry_id] = entry.model_copy(
                update={**changes, "status": new, "updated_date": tz.now()}
            )
            return True

    def release_stale_claims(self, claimed_before: datetime) -> int:
        claimed_before = tz.ensure_aware(claimed_before)
        released = 0
        with self._lock:
            for entry in list(self._entries.values()):
                if (entry.status == EmailStatus.PROCESSING
                        and entry.claimed_date is not None
                        and entry.claimed_date < claimed_before):
                    self._entries[entry.id] = entry.model_copy(update={
                        "status": EmailStatus.PENDING, "claimed_date": None, "updated_date": tz.now(),
                    })
                    released += 1
        return released

    def find_by_status(self, status: EmailStatus, offset: int = 0, limit: int = 50) -> list[QueueEntry]:
        with self._lock:
            matches = [e.model_copy() for e in self._entries.values() if e.status == status]
        matches.sort(key=lambda e: (e.created_date, e.id), reverse=True)
        return matches[offset:offset + limit]

    def find_by_campaign(self, campaign_id: int) -> list[QueueEntry]:
        with self._lock:
            return sorted(
                (e.model_copy() for e in self._entries.values() if e.campaign_id == campaign_id),
                key=lambda e: e.id,
            )

    def count_by_status(self, campaign_id: Optional[int] = None) -> dict[EmailStatus, int]:
        counts = {status: 0 for status in EmailStatus}
        with self._lock:
            for entry in self._entries.values():
                if campaign_id is None or entry.campaign_id == campaign_id:
                    counts[entry.status] += 1
        return counts

    def count_by_type(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(e.email_type.value for e in self._entries.values()))

    def count_sent_since(self, since: datetime) -> int:
        since = tz.ensure_aware(since)
        with self._lock:
            return sum(
                1 for e in self._entries.values()
                if e.status == EmailStatus.SENT and e.sent_date is not None and e.sent_date >= since
            )

    def next_scheduled(self) -> Optional[datetime]:
        with self._lock:
            dates = [e.scheduled_date for e in self._entries.values() if e.status == EmailStatus.PENDING]
        return min(dates) if dates else None

    def last_sent(self) -> Optional[datetime]:
        with self._lock:
            dates = [e.sent_date for e in self._entries.values()
                     if e.status == EmailStatus.SENT and e.sent_date is not None]
        return max(dates) if dates else None

    def cancel_pending_for_campaign(self, campaign_id: int) -> int:
        cancelled = 0
        with self._lock:
            for entry in list(self._entries.values()):
                if entry.campaign_id == campaign_id and entry.status == EmailStatus.PENDING:
                    self._entries[entry.id] = entry.model_copy(
                        update={"status": EmailStatus.CANCELLED, "updated_date": tz.now()}
                    )
                    cancelled += 1
        return cancelled

    # ── Campaigns ─────────────────────────────────────────────

    def add_campaign(self, data: CampaignCreate) -> Campaign:
        now = tz.now()
        with self._lock:
            campaign = Campaign(
                id=next(self._campaign_ids),
                status=CampaignStatus.DRAFT,
                created_date=now,
                updated_date=now,
                **data.model_dump(),
            )
            self._campaigns[campaign.id] = campaign
            return campaign.model_copy()

    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        with self._lock:
            campaign = self._campaigns.get(campaign_id)
            return campaign.model_copy() if campaign is not None else None

    def update_campaign(self, campaign_id: int, **changes: Any) -> Optional[Campaign]:
        check_fields(changes, MUTABLE_CAMPAIGN_FIELDS)
        with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None
            campaign = campaign.model_copy(update={**changes, "updated_date": tz.now()})
            self._campaigns[campaign_id] = campaign
            return campaign.model_copy()

    def compare_and_set_campaign_status(
        self,
        campaign_id: int,
        expected: Iterable[CampaignStatus],
        new: CampaignStatus,
        **changes: Any,
    ) -> bool:
        check_fields(changes, MUTABLE_CAMPAIGN_FIELDS)
        expected = set(expected)
        with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.status not in expected:
                return False
            self._campaigns[campaign_id] = campaign.model_copy(
                update={**changes, "status": new, "updated_date": tz.now()}
            )
            return True

    def _select_campaigns(self, statuses: Optional[Iterable[CampaignStatus]]) -> list[Campaign]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [c.model_copy() for c in self._campaigns.values() if wanted is None or c.status in wanted]

    def list_campaigns(
        self,
        statuses: Optional[Iterable[CampaignStatus]] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Campaign]:
        campaigns = self._select_campaigns(statuses)
        campaigns.sort(key=lambda c: (c.created_date, c.id), reverse=True)
        return campaigns[offset:offset + limit]

    def count_campaigns(self, statuses: Optional[Iterable[CampaignStatus]] = None) -> int:
        return len(self._select_campaigns(statuses))

    def find_campaigns_due(self, now: datetime) -> list[Campaign]:
        now = tz.ensure_aware(now)
        due = [
            c for c in self._select_campaigns([CampaignStatus.SCHEDULED])
            if c.scheduled_date is not None and c.scheduled_date <= now
        ]
        due.sort(key=lambda c: (c.priority, c.scheduled_date))
        return due

    def campaign_counts_by_status(self) -> dict[str, int]:
        return dict(Counter(c.status.value for c in self._select_campaigns(None)))

    def campaign_counts_by_type(self) -> dict[str, int]:
        return dict(Counter(c.campaign_type.value for c in self._select_campaigns(None)))

    def delete_campaign(self, campaign_id: int) -> bool:
        with self._lock:
            return self._campaigns.pop(campaign_id, None) is not None
