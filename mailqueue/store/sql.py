"""
SqlQueueStore: SQLAlchemy-backed queue store.

Each public method opens its own session from the session factory, commits
on success and rolls back on any error, so one entry's failure can never
undo another entry's committed state. SQLAlchemy errors surface as
StoreUnavailable.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import select, update, delete, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from mailqueue.core.exceptions import StoreUnavailable
from mailqueue.models.email_campaign import EmailCampaign, CampaignStatus
from mailqueue.models.email_queue import EmailQueue, EmailStatus
from mailqueue.schemas.email_campaign import Campaign, CampaignCreate
from mailqueue.schemas.email_queue import EmailQueueCreate, QueueEntry
from mailqueue.store.base import (
    BaseQueueStore, MUTABLE_CAMPAIGN_FIELDS, MUTABLE_ENTRY_FIELDS, check_fields,
)
from mailqueue.utils import timezone as tz

logger = logging.getLogger(__name__)


class SqlQueueStore(BaseQueueStore):
    """Queue store on any SQLAlchemy-supported database."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        if session_factory is None:
            from mailqueue.core.database import get_session_local
            session_factory = get_session_local()
        self._session_factory = session_factory

    @contextmanager
    def _unit_of_work(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Queue store operation failed: {e}")
            raise StoreUnavailable(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ── Queue entries ─────────────────────────────────────────

    def _new_row(self, data: EmailQueueCreate, now: datetime) -> EmailQueue:
        return EmailQueue(
            recipient_email=data.recipient_email,
            recipient_name=data.recipient_name,
            subject=data.subject,
            body=data.body,
            email_type=data.email_type,
            status=EmailStatus.PENDING,
            priority=data.priority,
            scheduled_date=data.scheduled_date or now,
            attempt_count=0,
            max_attempts=data.max_attempts,
            campaign_id=data.campaign_id,
            registration_id=data.registration_id,
            created_date=now,
            updated_date=now,
        )

    def add_entry(self, data: EmailQueueCreate) -> QueueEntry:
        return self.add_entries([data])[0]

    def add_entries(self, items: list[EmailQueueCreate]) -> list[QueueEntry]:
        now = tz.now()
        with self._unit_of_work() as db:
            rows = [self._new_row(item, now) for item in items]
            db.add_all(rows)
            db.flush()
            return [QueueEntry.model_validate(row) for row in rows]

    def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        with self._unit_of_work() as db:
            row = db.get(EmailQueue, entry_id)
            return QueueEntry.model_validate(row) if row else None

    def find_due(self, now: datetime, limit: int) -> list[QueueEntry]:
        paused = select(EmailCampaign.id).where(EmailCampaign.status == CampaignStatus.PAUSED)
        query = (
            select(EmailQueue)
            .where(
                EmailQueue.status == EmailStatus.PENDING,
                EmailQueue.scheduled_date <= tz.ensure_aware(now),
                or_(EmailQueue.campaign_id.is_(None), EmailQueue.campaign_id.not_in(paused)),
            )
            .order_by(EmailQueue.scheduled_date.asc(), EmailQueue.priority.asc(), EmailQueue.id.asc())
            .limit(limit)
        )
        with self._unit_of_work() as db:
            return [QueueEntry.model_validate(row) for row in db.scalars(query)]

    def compare_and_set_status(
        self,
        entry_id: int,
        expected: EmailStatus,
        new: EmailStatus,
        **changes: Any,
    ) -> bool:
        check_fields(changes, MUTABLE_ENTRY_FIELDS)
        stmt = (
            update(EmailQueue)
            .where(EmailQueue.id == entry_id, EmailQueue.status == expected)
            .values(status=new, updated_date=tz.now(), **changes)
            .execution_options(synchronize_session=False)
        )
        with self._unit_of_work() as db:
            result = db.execute(stmt)
            return result.rowcount == 1

    def release_stale_claims(self, claimed_before: datetime) -> int:
        stmt = (
            update(EmailQueue)
            .where(
                EmailQueue.status == EmailStatus.PROCESSING,
                EmailQueue.claimed_date < tz.ensure_aware(claimed_before),
            )
            .values(status=EmailStatus.PENDING, claimed_date=None, updated_date=tz.now())
            .execution_options(synchronize_session=False)
        )
        with self._unit_of_work() as db:
            return db.execute(stmt).rowcount

    def find_by_status(self, status: EmailStatus, offset: int = 0, limit: int = 50) -> list[QueueEntry]:
        query = (
            select(EmailQueue)
            .where(EmailQueue.status == status)
            .order_by(EmailQueue.created_date.desc(), EmailQueue.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with self._unit_of_work() as db:
            return [QueueEntry.model_validate(row) for row in db.scalars(query)]

    def find_by_campaign(self, campaign_id: int) -> list[QueueEntry]:
        query = (
            select(EmailQueue)
            .where(EmailQueue.campaign_id == campaign_id)
            .order_by(EmailQueue.id.asc())
        )
        with self._unit_of_work() as db:
            return [QueueEntry.model_validate(row) for row in db.scalars(query)]

    def count_by_status(self, campaign_id: Optional[int] = None) -> dict[EmailStatus, int]:
        query = select(EmailQueue.status, func.count(EmailQueue.id)).group_by(EmailQueue.status)
        if campaign_id is not None:
            query = query.where(EmailQueue.campaign_id == campaign_id)
        with self._unit_of_work() as db:
            counts = {status: 0 for status in EmailStatus}
            for status, count in db.execute(query):
                counts[EmailStatus(status)] = count
            return counts

    def count_by_type(self) -> dict[str, int]:
        query = select(EmailQueue.email_type, func.count(EmailQueue.id)).group_by(EmailQueue.email_type)
        with self._unit_of_work() as db:
            return {email_type.value: count for email_type, count in db.execute(query)}

    def count_sent_since(self, since: datetime) -> int:
        query = select(func.count(EmailQueue.id)).where(
            EmailQueue.status == EmailStatus.SENT,
            EmailQueue.sent_date >= tz.ensure_aware(since),
        )
        with self._unit_of_work() as db:
            return db.scalar(query) or 0

    def next_scheduled(self) -> Optional[datetime]:
        query = select(func.min(EmailQueue.scheduled_date)).where(EmailQueue.status == EmailStatus.PENDING)
        with self._unit_of_work() as db:
            return tz.ensure_aware(db.scalar(query))

    def last_sent(self) -> Optional[datetime]:
        query = select(func.max(EmailQueue.sent_date)).where(EmailQueue.status == EmailStatus.SENT)
        with self._unit_of_work() as db:
            return tz.ensure_aware(db.scalar(query))

    def cancel_pending_for_campaign(self, campaign_id: int) -> int:
        stmt = (
            update(EmailQueue)
            .where(EmailQueue.campaign_id == campaign_id, EmailQueue.status == EmailStatus.PENDING)
            .values(status=EmailStatus.CANCELLED, updated_date=tz.now())
            .execution_options(synchronize_session=False)
        )
        with self._unit_of_work() as db:
            return db.execute(stmt).rowcount

    # ── Campaigns ─────────────────────────────────────────────

    def add_campaign(self, data: CampaignCreate) -> Campaign:
        now = tz.now()
        with self._unit_of_work() as db:
            row = EmailCampaign(
                **data.model_dump(),
                status=CampaignStatus.DRAFT,
                created_date=now,
                updated_date=now,
            )
            db.add(row)
            db.flush()
            return Campaign.model_validate(row)

    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        with self._unit_of_work() as db:
            row = db.get(EmailCampaign, campaign_id)
            return Campaign.model_validate(row) if row else None

    def update_campaign(self, campaign_id: int, **changes: Any) -> Optional[Campaign]:
        check_fields(changes, MUTABLE_CAMPAIGN_FIELDS)
        with self._unit_of_work() as db:
            row = db.get(EmailCampaign, campaign_id)
            if row is None:
                return None
            for field, value in changes.items():
                setattr(row, field, value)
            row.updated_date = tz.now()
            db.flush()
            return Campaign.model_validate(row)

    def compare_and_set_campaign_status(
        self,
        campaign_id: int,
        expected: Iterable[CampaignStatus],
        new: CampaignStatus,
        **changes: Any,
    ) -> bool:
        check_fields(changes, MUTABLE_CAMPAIGN_FIELDS)
        stmt = (
            update(EmailCampaign)
            .where(EmailCampaign.id == campaign_id, EmailCampaign.status.in_(list(expected)))
            .values(status=new, updated_date=tz.now(), **changes)
            .execution_options(synchronize_session=False)
        )
        with self._unit_of_work() as db:
            return db.execute(stmt).rowcount == 1

    def _campaign_filter(self, query, statuses: Optional[Iterable[CampaignStatus]]):
        if statuses is not None:
            query = query.where(EmailCampaign.status.in_(list(statuses)))
        return query

    def list_campaigns(
        self,
        statuses: Optional[Iterable[CampaignStatus]] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[Campaign]:
        query = self._campaign_filter(select(EmailCampaign), statuses)
        query = query.order_by(EmailCampaign.created_date.desc(), EmailCampaign.id.desc()).offset(offset).limit(limit)
        with self._unit_of_work() as db:
            return [Campaign.model_validate(row) for row in db.scalars(query)]

    def count_campaigns(self, statuses: Optional[Iterable[CampaignStatus]] = None) -> int:
        query = self._campaign_filter(select(func.count(EmailCampaign.id)), statuses)
        with self._unit_of_work() as db:
            return db.scalar(query) or 0

    def find_campaigns_due(self, now: datetime) -> list[Campaign]:
        query = (
            select(EmailCampaign)
            .where(
                EmailCampaign.status == CampaignStatus.SCHEDULED,
                EmailCampaign.scheduled_date <= tz.ensure_aware(now),
            )
            .order_by(EmailCampaign.priority.asc(), EmailCampaign.scheduled_date.asc())
        )
        with self._unit_of_work() as db:
            return [Campaign.model_validate(row) for row in db.scalars(query)]

    def campaign_counts_by_status(self) -> dict[str, int]:
        query = select(EmailCampaign.status, func.count(EmailCampaign.id)).group_by(EmailCampaign.status)
        with self._unit_of_work() as db:
            return {status.value: count for status, count in db.execute(query)}

    def campaign_counts_by_type(self) -> dict[str, int]:
        query = select(EmailCampaign.campaign_type, func.count(EmailCampaign.id)).group_by(EmailCampaign.campaign_type)
        with self._unit_of_work() as db:
            return {campaign_type.value: count for campaign_type, count in db.execute(query)}

    def delete_campaign(self, campaign_id: int) -> bool:
        with self._unit_of_work() as db:
            result = db.execute(delete(EmailCampaign).where(EmailCampaign.id == campaign_id))
            return result.rowcount == 1
