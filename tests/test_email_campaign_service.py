"""
Tests for the email campaign service.
"""
from datetime import date, timedelta

import pytest

from mailqueue.core.exceptions import CampaignNotFound, CampaignStateError, ValidationError
from mailqueue.models.email_campaign import CampaignStatus, CampaignType
from mailqueue.models.email_queue import EmailStatus, EmailType
from mailqueue.schemas.email_campaign import Recipient
from mailqueue.services import email_campaign_service as campaigns
from mailqueue.services.delivery_worker import DeliveryWorker
from mailqueue.services.email_service import MockTransport
from mailqueue.services.recipients import MappingRecipientResolver
from mailqueue.store.memory import InMemoryQueueStore
from mailqueue.utils import timezone as tz


def _create(store, **kwargs):
    data = {
        "name": "Spring hunt",
        "subject": "Hello {{fullName}}",
        "body": "<p>{{fullName}} ({{email}}) of {{teamName}}, registered {{registrationDate}}</p>",
        "campaign_type": CampaignType.ANNOUNCEMENT,
        "target_audience": "ALL",
    }
    data.update(kwargs)
    return campaigns.create_campaign(store, data)


class EagerDeliveryStore(InMemoryQueueStore):
    """Runs a delivery tick as soon as entries are queued."""

    def __init__(self):
        super().__init__()
        self.worker = None

    def add_entries(self, items):
        created = super().add_entries(items)
        if self.worker is not None:
            self.worker.run_tick()
        return created


class ConcurrentEditStore(InMemoryQueueStore):
    """Applies an edit just before the campaign moves to SENDING."""

    def compare_and_set_campaign_status(self, campaign_id, expected, new, **changes):
        if new == CampaignStatus.SENDING:
            self.update_campaign(campaign_id, subject="Last-minute subject")
        return super().compare_and_set_campaign_status(campaign_id, expected, new, **changes)


class TestCampaignCrud:

    def test_create_campaign_is_draft(self, store):
        campaign = _create(store, description="Kick-off", created_by="organizer")

        assert campaign.status == CampaignStatus.DRAFT
        assert campaign.can_be_sent is True
        assert campaign.is_active is False
        assert campaign.created_by == "organizer"
        assert campaigns.get_campaign(store, campaign.id).name == "Spring hunt"

    def test_create_campaign_rejects_blank_subject(self, store):
        with pytest.raises(ValidationError):
            _create(store, subject="  ")

    def test_update_campaign(self, store):
        campaign = _create(store)

        updated = campaigns.update_campaign(store, campaign.id, {"subject": "New subject", "priority": 1})

        assert updated.subject == "New subject"
        assert updated.priority == 1
        assert updated.name == "Spring hunt"

    def test_update_rejected_while_sending(self, store, resolver):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)

        with pytest.raises(CampaignStateError):
            campaigns.update_campaign(store, campaign.id, {"subject": "Too late"})

    def test_list_and_filter(self, store, resolver):
        first = _create(store, name="First")
        _create(store, name="Second")
        campaigns.send_campaign(store, first.id, resolver)

        page = campaigns.list_campaigns(store, page=1, page_size=10)
        assert page.pagination.total == 2
        assert [c.id for c in campaigns.get_campaigns_by_status(store, CampaignStatus.SENDING)] == [first.id]

    def test_delete_only_without_entries(self, store, resolver):
        unused = _create(store, name="Unused")
        used = _create(store, name="Used")
        campaigns.send_campaign(store, used.id, resolver)

        assert campaigns.delete_campaign(store, unused.id) is True
        assert campaigns.get_campaign(store, unused.id) is None
        with pytest.raises(CampaignStateError):
            campaigns.delete_campaign(store, used.id)
        with pytest.raises(CampaignNotFound):
            campaigns.delete_campaign(store, unused.id)


class TestSendCampaign:

    def test_fan_out_to_every_recipient(self, store, resolver):
        campaign = _create(store, priority=2, max_retry_attempts=4)

        sent = campaigns.send_campaign(store, campaign.id, resolver)

        entries = store.find_by_campaign(campaign.id)
        assert sent.status == CampaignStatus.SENDING
        assert sent.total_recipients == 5
        assert sent.emails_pending == 5
        assert len(entries) == 5
        assert all(e.status == EmailStatus.PENDING for e in entries)
        assert all(e.email_type == EmailType.CAMPAIGN for e in entries)
        assert all(e.campaign_id == campaign.id for e in entries)
        assert all(e.priority == 2 and e.max_attempts == 4 for e in entries)

    def test_personalization(self, store, resolver):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)

        alice = next(e for e in store.find_by_campaign(campaign.id) if e.recipient_email == "alice@example.com")
        bob = next(e for e in store.find_by_campaign(campaign.id) if e.recipient_email == "bob@example.com")

        assert alice.subject == "Hello Alice Smith"
        assert alice.body == "<p>Alice Smith (alice@example.com) of Explorers, registered 2025-03-01</p>"
        assert alice.registration_id == 1
        assert bob.body == "<p>Bob Jones (bob@example.com) of , registered 2025-03-02</p>"

    def test_second_send_creates_nothing(self, store, resolver):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)

        with pytest.raises(CampaignStateError):
            campaigns.send_campaign(store, campaign.id, resolver)

        assert len(store.find_by_campaign(campaign.id)) == 5

    def test_invalid_and_duplicate_addresses_are_dropped(self, store):
        resolver = MappingRecipientResolver({"ALL": [
            Recipient(email="ok@example.com", name="Ok", registration_date=date(2025, 1, 1)),
            Recipient(email="OK@example.com", name="Ok again"),
            Recipient(email="not-an-address", name="Broken"),
            Recipient(email="", name="Empty"),
        ]})
        campaign = _create(store)

        sent = campaigns.send_campaign(store, campaign.id, resolver)

        assert sent.total_recipients == 1
        assert [e.recipient_email for e in store.find_by_campaign(campaign.id)] == ["ok@example.com"]

    def test_empty_audience_fails_campaign(self, store, resolver):
        campaign = _create(store, target_audience="RECENT_REGISTRATIONS")

        result = campaigns.send_campaign(store, campaign.id, resolver)

        assert result.status == CampaignStatus.FAILED
        assert result.total_recipients == 0
        assert store.find_by_campaign(campaign.id) == []

    def test_unknown_campaign(self, store, resolver):
        with pytest.raises(CampaignNotFound):
            campaigns.send_campaign(store, 777, resolver)

    def test_campaign_completes_after_all_sent(self, store, resolver, make_worker):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)
        transport = MockTransport()

        result = make_worker(transport).run_tick()

        assert result.sent == 5
        assert result.campaigns_refreshed == 1
        done = campaigns.get_campaign(store, campaign.id)
        assert done.status == CampaignStatus.SENT
        assert done.emails_sent == 5
        assert done.emails_pending == 0
        assert done.emails_failed == 0
        assert done.sent_date is not None
        assert done.success_rate == 100.0

    def test_counters_reflect_sends_during_fan_out(self, resolver):
        store = EagerDeliveryStore()
        campaign = _create(store)
        transport = MockTransport()
        store.worker = DeliveryWorker(store, transport, pool_size=2, backoff_seconds=0)
        try:
            result = campaigns.send_campaign(store, campaign.id, resolver)
        finally:
            store.worker.shutdown()

        assert len(transport.sent) == 5
        assert result.status == CampaignStatus.SENT
        assert result.total_recipients == 5
        assert result.emails_sent == 5
        assert result.emails_pending == 0
        assert campaigns.get_campaign(store, campaign.id).emails_sent == 5

    def test_fan_out_uses_content_at_send_time(self, resolver):
        store = ConcurrentEditStore()
        campaign = _create(store)

        campaigns.send_campaign(store, campaign.id, resolver)

        entries = store.find_by_campaign(campaign.id)
        assert len(entries) == 5
        assert {e.subject for e in entries} == {"Last-minute subject"}

    def test_campaign_stays_sending_while_retries_remain(self, store, resolver, make_worker):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)
        transport = MockTransport({"bob@example.com": [RuntimeError("temporary")]})

        make_worker(transport).run_tick()

        in_progress = campaigns.get_campaign(store, campaign.id)
        assert in_progress.status == CampaignStatus.SENDING
        assert in_progress.emails_sent == 4
        assert in_progress.emails_pending == 1


class TestCampaignLifecycle:

    def test_schedule_and_process_due_campaigns(self, store, resolver):
        due = _create(store, name="Due")
        later = _create(store, name="Later")
        campaigns.schedule_campaign(store, due.id, tz.now() - timedelta(minutes=1))
        scheduled = campaigns.schedule_campaign(store, later.id, tz.now() + timedelta(days=1))

        assert scheduled.status == CampaignStatus.SCHEDULED
        assert scheduled.is_active is True
        assert campaigns.process_scheduled_campaigns(store, resolver) == 1
        assert campaigns.get_campaign(store, due.id).status == CampaignStatus.SENDING
        assert campaigns.get_campaign(store, later.id).status == CampaignStatus.SCHEDULED
        assert campaigns.process_scheduled_campaigns(store, resolver) == 0

    def test_schedule_rejected_after_send(self, store, resolver):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)

        with pytest.raises(CampaignStateError):
            campaigns.schedule_campaign(store, campaign.id, tz.now() + timedelta(hours=1))

    def test_cancel_keeps_sent_emails(self, store, resolver):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)
        first = store.find_by_campaign(campaign.id)[0]
        store.compare_and_set_status(first.id, EmailStatus.PENDING, EmailStatus.SENT, sent_date=tz.now())

        cancelled = campaigns.cancel_campaign(store, campaign.id)

        assert cancelled.status == CampaignStatus.CANCELLED
        assert cancelled.emails_sent == 1
        assert cancelled.emails_pending == 0
        statuses = [e.status for e in store.find_by_campaign(campaign.id)]
        assert statuses.count(EmailStatus.SENT) == 1
        assert statuses.count(EmailStatus.CANCELLED) == 4

        with pytest.raises(CampaignStateError):
            campaigns.cancel_campaign(store, campaign.id)

    def test_pause_and_resume(self, store, resolver, make_worker):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)
        transport = MockTransport()
        worker = make_worker(transport)

        paused = campaigns.pause_campaign(store, campaign.id)
        assert paused.status == CampaignStatus.PAUSED
        assert worker.run_tick().claimed == 0

        campaigns.resume_campaign(store, campaign.id)
        assert worker.run_tick().sent == 5
        assert campaigns.get_campaign(store, campaign.id).status == CampaignStatus.SENT

        with pytest.raises(CampaignStateError):
            campaigns.pause_campaign(store, campaign.id)

    def test_refresh_active_campaigns(self, store, resolver):
        campaign = _create(store)
        campaigns.send_campaign(store, campaign.id, resolver)
        for entry in store.find_by_campaign(campaign.id):
            store.compare_and_set_status(entry.id, EmailStatus.PENDING, EmailStatus.FAILED, attempt_count=3)

        assert campaigns.refresh_active_campaigns(store) == 1

        finished = campaigns.get_campaign(store, campaign.id)
        assert finished.status == CampaignStatus.SENT
        assert finished.emails_failed == 5
        assert finished.failure_rate == 100.0

    def test_campaign_statistics(self, store, resolver):
        sent = _create(store, name="Sent")
        _create(store, name="Draft", campaign_type=CampaignType.NEWSLETTER)
        scheduled = _create(store, name="Scheduled")
        campaigns.send_campaign(store, sent.id, resolver)
        campaigns.schedule_campaign(store, scheduled.id, tz.now() + timedelta(days=1))

        stats = campaigns.get_campaign_statistics(store)

        assert stats.total_campaigns == 3
        assert stats.active_campaigns == 2
        assert stats.scheduled_campaigns == 1
        assert stats.status_counts == {"SENDING": 1, "DRAFT": 1, "SCHEDULED": 1}
        assert stats.type_counts == {"ANNOUNCEMENT": 2, "NEWSLETTER": 1}
