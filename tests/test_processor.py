"""
Tests for configuration, the background processor and the CLI.
"""
import asyncio

import pytest
from pydantic import ValidationError as PydanticValidationError

from mailqueue import email_processor
from mailqueue.core.config import Settings
from mailqueue.models.email_campaign import CampaignStatus, CampaignType
from mailqueue.models.email_queue import EmailStatus, EmailType
from mailqueue.services import background_email_processor as processor
from mailqueue.services import email_campaign_service as campaigns
from mailqueue.services import email_queue_service as queue
from mailqueue.services.delivery_worker import DeliveryWorker
from mailqueue.services.email_service import MockTransport, SmtpTransport, create_transport
from mailqueue.store.memory import InMemoryQueueStore
from mailqueue.utils import timezone as tz


class TestSettings:

    def test_defaults(self):
        config = Settings(_env_file=None)

        assert config.BATCH_SIZE == 10
        assert config.WORKER_POOL_SIZE == 4
        assert config.RETRY_BACKOFF_STRATEGY == "linear"
        assert config.DEFAULT_MAX_ATTEMPTS == 3

    @pytest.mark.parametrize("field,value", [
        ("BATCH_SIZE", 0),
        ("WORKER_POOL_SIZE", -1),
        ("RETRY_BACKOFF_SECONDS", -5),
        ("RETRY_BACKOFF_STRATEGY", "random"),
        ("STORE_BACKEND", "redis"),
        ("TIMEZONE", "Mars/Olympus"),
    ])
    def test_rejects_bad_values(self, field, value):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, **{field: value})

    def test_strategy_is_case_insensitive(self):
        assert Settings(_env_file=None, RETRY_BACKOFF_STRATEGY="Exponential").RETRY_BACKOFF_STRATEGY == "exponential"

    def test_create_transport(self):
        assert isinstance(create_transport(Settings(_env_file=None, TRANSPORT="mock")), MockTransport)
        assert isinstance(create_transport(Settings(_env_file=None, TRANSPORT="smtp"), dry_run=True), MockTransport)

        smtp = create_transport(Settings(_env_file=None, TRANSPORT="smtp", SMTP_HOST="mail.example.com",
                                         SEND_TIMEOUT_SECONDS=12))
        assert isinstance(smtp, SmtpTransport)
        assert smtp.host == "mail.example.com"
        assert smtp.timeout == 12

    def test_smtp_message_headers(self):
        smtp = SmtpTransport("localhost", 25, from_email="noreply@example.com", from_name="Hunt Team")
        msg = smtp.build_message("a@x.com", "Alice", "Hi", "<b>hi</b>")

        assert msg["To"] == "Alice <a@x.com>"
        assert msg["From"] == "Hunt Team <noreply@example.com>"
        assert msg["Subject"] == "Hi"
        assert msg.get_payload()[0].get_content_subtype() == "html"


class TestBackgroundProcessor:

    def test_run_cycle_sends_scheduled_campaign(self, resolver):
        store = InMemoryQueueStore()
        campaign = campaigns.create_campaign(store, {
            "name": "Reminder",
            "subject": "Don't forget, {{fullName}}",
            "body": "<p>Tomorrow!</p>",
            "campaign_type": CampaignType.REMINDER,
        })
        campaigns.schedule_campaign(store, campaign.id, tz.now())
        worker = DeliveryWorker(store, MockTransport(), pool_size=2, backoff_seconds=0)
        try:
            claimed = asyncio.run(processor.run_cycle(worker, resolver))
        finally:
            worker.shutdown()

        assert claimed == 5
        assert campaigns.get_campaign(store, campaign.id).status == CampaignStatus.SENT

    def test_start_and_stop(self):
        store = InMemoryQueueStore()
        queue.enqueue(store, "a@x.com", "A", "Hi", "<b>hi</b>", EmailType.WELCOME)
        worker = DeliveryWorker(store, MockTransport(), pool_size=1, backoff_seconds=0)

        async def scenario():
            await processor.start_background_email_processor(worker, interval=1)
            assert processor.is_background_processor_running() is True
            status = processor.get_background_processor_status()
            assert status["running"] is True
            for _ in range(50):
                if store.count_by_status()[EmailStatus.SENT] == 1:
                    break
                await asyncio.sleep(0.05)
            await processor.stop_background_email_processor()

        asyncio.run(scenario())

        assert processor.is_background_processor_running() is False
        assert processor.get_background_processor_status()["running"] is False
        assert store.count_by_status()[EmailStatus.SENT] == 1


class TestCommandLine:

    def test_single_batch_dry_run(self, monkeypatch):
        store = InMemoryQueueStore()
        entry = queue.enqueue(store, "a@x.com", "A", "Hi", "<b>hi</b>", EmailType.STATUS_UPDATE)
        monkeypatch.setattr(email_processor, "create_store", lambda: store)
        monkeypatch.setattr(email_processor.signal, "signal", lambda *args: None)

        email_processor.main(["--dry-run", "--batch-size", "5"])

        assert store.get_entry(entry.id).status == EmailStatus.SENT

    def test_single_batch_leaves_scheduled_campaigns(self, monkeypatch):
        store = InMemoryQueueStore()
        campaign = campaigns.create_campaign(store, {
            "name": "Reminder",
            "subject": "Hi",
            "body": "<p>Soon</p>",
            "campaign_type": CampaignType.REMINDER,
        })
        campaigns.schedule_campaign(store, campaign.id, tz.now())
        monkeypatch.setattr(email_processor, "create_store", lambda: store)
        monkeypatch.setattr(email_processor.signal, "signal", lambda *args: None)

        email_processor.main(["--dry-run"])

        assert campaigns.get_campaign(store, campaign.id).status == CampaignStatus.SCHEDULED
        assert store.find_by_campaign(campaign.id) == []

    def test_failure_exits_non_zero(self, monkeypatch):
        def broken_store():
            raise RuntimeError("no database")

        monkeypatch.setattr(email_processor, "create_store", broken_store)
        monkeypatch.setattr(email_processor.signal, "signal", lambda *args: None)

        with pytest.raises(SystemExit) as exc_info:
            email_processor.main(["--dry-run"])
        assert exc_info.value.code == 1
