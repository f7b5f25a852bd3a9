"""
Delivery Worker
===============

Claims due queue entries and sends them through a transport.

One tick:
  1. Return claims older than the claim timeout to PENDING
  2. Load up to batch_size due PENDING entries (oldest schedule first)
  3. Claim each entry with a conditional PENDING -> PROCESSING update
  4. Send through the transport with a per-call timeout
  5. Record SENT, a retry with backoff, or FAILED
  6. Refresh the statistics of every campaign touched

Each entry is its own unit of work, so one bad entry never undoes another.
A tick never raises; poll failures are logged and reported to the optional
health reporter. Ticks do not overlap: a tick started while another is
running returns an empty result immediately.

Delivery is at-least-once. A send that times out may still reach the relay
after the entry has been rescheduled.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from mailqueue.core.config import settings
from mailqueue.core.exceptions import (
    ConcurrencyConflict, EntryNotFound, SendFailure, TransientSendFailure,
)
from mailqueue.models.email_queue import EmailStatus
from mailqueue.schemas.email_queue import EmailProcessingResult, QueueEntry, TickResult
from mailqueue.services.email_service import Transport
from mailqueue.store.base import BaseQueueStore
from mailqueue.utils import timezone as tz

logger = logging.getLogger(__name__)

# Consecutive poll failures before the worker reports itself unhealthy
UNHEALTHY_AFTER_FAILURES = 3


def compute_backoff(attempt: int, base_seconds: int, strategy: str = "linear") -> timedelta:
    """
    Delay before the next attempt after `attempt` failed attempts.

    fixed:       base
    linear:      base * attempt
    exponential: base * 2 ** (attempt - 1)
    """
    attempt = max(attempt, 1)
    if strategy == "fixed":
        seconds = base_seconds
    elif strategy == "linear":
        seconds = base_seconds * attempt
    elif strategy == "exponential":
        seconds = base_seconds * 2 ** (attempt - 1)
    else:
        raise ValueError(f"Unknown backoff strategy: {strategy}")
    return timedelta(seconds=seconds)


class WorkerStats(BaseModel):
    """Snapshot of worker counters for health endpoints and logs."""
    running: bool = False
    ticks: int = 0
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0
    last_tick: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_poll_failures: int = 0
    healthy: bool = True


HealthReporter = Callable[[WorkerStats], None]


class DeliveryWorker:
    """Sends due queue entries in bounded, non-overlapping ticks."""

    def __init__(
        self,
        store: BaseQueueStore,
        transport: Transport,
        batch_size: Optional[int] = None,
        pool_size: Optional[int] = None,
        send_timeout: Optional[float] = None,
        backoff_seconds: Optional[int] = None,
        backoff_strategy: Optional[str] = None,
        claim_timeout: Optional[int] = None,
        health_reporter: Optional[HealthReporter] = None,
    ):
        self.store = store
        self.transport = transport
        self.batch_size = batch_size or settings.BATCH_SIZE
        self.pool_size = pool_size or settings.WORKER_POOL_SIZE
        self.send_timeout = send_timeout or settings.SEND_TIMEOUT_SECONDS
        self.backoff_seconds = settings.RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.backoff_strategy = backoff_strategy or settings.RETRY_BACKOFF_STRATEGY
        self.claim_timeout = claim_timeout or settings.CLAIM_TIMEOUT_SECONDS
        self.health_reporter = health_reporter

        # Fail fast on an unknown strategy
        compute_backoff(1, self.backoff_seconds, self.backoff_strategy)

        self._tick_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = WorkerStats()
        # Send threads that outlived their timeout; they hold no pool slot
        self._abandoned_sends: list[threading.Thread] = []

    # ── Stats ─────────────────────────────────────────────────

    @property
    def stats(self) -> WorkerStats:
        with self._stats_lock:
            return self._stats.model_copy()

    def _record_outcomes(self, results: list[EmailProcessingResult]) -> None:
        with self._stats_lock:
            for r in results:
                if r.outcome == "skipped":
                    continue
                self._stats.processed += 1
                if r.outcome == "sent":
                    self._stats.sent += 1
                elif r.outcome == "retry":
                    self._stats.retried += 1
                elif r.outcome == "failed":
                    self._stats.failed += 1
                elif r.outcome == "error":
                    self._stats.errors += 1
                    self._stats.last_error = r.error_message

    def _record_poll(self, error: Optional[Exception]) -> None:
        with self._stats_lock:
            previous = self._stats.consecutive_poll_failures
            if error is None:
                self._stats.consecutive_poll_failures = 0
            else:
                self._stats.consecutive_poll_failures += 1
                self._stats.last_error = str(error)
            self._stats.healthy = self._stats.consecutive_poll_failures < UNHEALTHY_AFTER_FAILURES
            snapshot = self._stats.model_copy()

        if self.health_reporter and (error is not None or previous > 0):
            try:
                self.health_reporter(snapshot)
            except Exception as e:
                logger.error(f"Health reporter failed: {e}")

    # ── Ticks ─────────────────────────────────────────────────

    def run_tick(self) -> TickResult:
        """Process one batch of due entries. Never raises."""
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Delivery tick already in progress, skipping")
            return TickResult()

        started = time.monotonic()
        result = TickResult()
        with self._stats_lock:
            self._stats.running = True
        try:
            try:
                now = tz.now()
                result.released = self.store.release_stale_claims(now - timedelta(seconds=self.claim_timeout))
                if result.released:
                    logger.warning(f"Released {result.released} stale claims back to the queue")
                due = self.store.find_due(now, self.batch_size)
            except Exception as e:
                logger.error(f"Error polling email queue: {e}")
                result.poll_failed = True
                self._record_poll(e)
                return result
            self._record_poll(None)

            result.due = len(due)
            if not due:
                return result

            with ThreadPoolExecutor(max_workers=min(self.pool_size, len(due)),
                                    thread_name_prefix="mail-worker") as pool:
                outcomes = list(pool.map(self._process_safely, due))

            self._record_outcomes(outcomes)
            for outcome in outcomes:
                if outcome.outcome == "skipped":
                    result.skipped += 1
                    continue
                result.claimed += 1
                if outcome.outcome == "sent":
                    result.sent += 1
                elif outcome.outcome == "retry":
                    result.retried += 1
                elif outcome.outcome == "failed":
                    result.failed += 1
                else:
                    result.errors += 1

            touched = {o.campaign_id for o in outcomes if o.campaign_id is not None and o.outcome != "skipped"}
            result.campaigns_refreshed = self._refresh_campaigns(touched)

            logger.info(
                f"Delivery tick: {result.sent} sent, {result.retried} retried, "
                f"{result.failed} failed, {result.errors} errors, {result.skipped} skipped"
            )
            return result
        finally:
            result.duration_seconds = time.monotonic() - started
            with self._stats_lock:
                self._stats.running = False
                self._stats.ticks += 1
                self._stats.last_tick = tz.now()
            self._tick_lock.release()

    def process_entry_now(self, entry_id: int) -> EmailProcessingResult:
        """
        Send one PENDING entry immediately, ignoring its scheduled_date.

        Raises:
            EntryNotFound: no such entry
        """
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"Email queue entry {entry_id} not found")
        if entry.status != EmailStatus.PENDING:
            logger.warning(f"Email {entry_id} is {entry.status.value}, not sending")
            return EmailProcessingResult(
                entry_id=entry_id, outcome="skipped", attempt_count=entry.attempt_count,
                campaign_id=entry.campaign_id,
            )

        outcome = self._process_safely(entry)
        self._record_outcomes([outcome])
        if outcome.campaign_id is not None and outcome.outcome != "skipped":
            self._refresh_campaigns({outcome.campaign_id})
        return outcome

    @property
    def hung_sends(self) -> int:
        """Timed-out transport calls that have still not returned."""
        with self._stats_lock:
            self._abandoned_sends = [t for t in self._abandoned_sends if t.is_alive()]
            return len(self._abandoned_sends)

    def shutdown(self) -> None:
        hung = self.hung_sends
        if hung:
            logger.warning(f"Shutting down with {hung} timed-out sends still running")

    # ── Per-entry processing ──────────────────────────────────

    def _refresh_campaigns(self, campaign_ids: set) -> int:
        from mailqueue.services.email_campaign_service import refresh_campaign_statistics

        refreshed = 0
        for campaign_id in sorted(campaign_ids):
            try:
                refresh_campaign_statistics(self.store, campaign_id)
                refreshed += 1
            except Exception as e:
                logger.error(f"Error refreshing statistics for campaign {campaign_id}: {e}")
        return refreshed

    def _process_safely(self, entry: QueueEntry) -> EmailProcessingResult:
        try:
            return self._process_entry(entry)
        except ConcurrencyConflict as e:
            logger.debug(f"{e}, skipping")
            return EmailProcessingResult(entry_id=entry.id, outcome="skipped", campaign_id=entry.campaign_id)
        except Exception as e:
            logger.error(f"Error processing email {entry.id}: {e}", exc_info=True)
            try:
                self.store.compare_and_set_status(
                    entry.id, EmailStatus.PROCESSING, EmailStatus.FAILED,
                    last_error=f"Unexpected error: {e}", claimed_date=None,
                )
            except Exception as store_error:
                logger.error(f"Could not mark email {entry.id} as failed: {store_error}")
            return EmailProcessingResult(
                entry_id=entry.id, outcome="error", error_message=str(e),
                attempt_count=entry.attempt_count, campaign_id=entry.campaign_id,
            )

    def _process_entry(self, entry: QueueEntry) -> EmailProcessingResult:
        if not self.store.compare_and_set_status(
            entry.id, EmailStatus.PENDING, EmailStatus.PROCESSING, claimed_date=tz.now()
        ):
            raise ConcurrencyConflict(f"Email {entry.id} already claimed")

        # Re-read: the entry may have been retried or edited since it was polled
        entry = self.store.get_entry(entry.id) or entry

        if entry.is_budget_exhausted:
            self._finish(entry, EmailStatus.FAILED, last_error=entry.last_error or "Attempt budget exhausted")
            logger.error(f"Email {entry.id} has no attempts left ({entry.attempt_count}/{entry.max_attempts})")
            return self._result(entry, "failed", entry.last_error)

        success, failure = self.send_email_safely(entry)

        if success:
            self._finish(entry, EmailStatus.SENT, sent_date=tz.now())
            logger.info(f"Email sent: {entry.email_type.value} to {entry.recipient_email}")
            return self._result(entry, "sent")

        attempts = entry.attempt_count + 1
        error_message = str(failure)

        if failure.permanent:
            self._finish(entry, EmailStatus.FAILED, attempt_count=attempts, last_error=error_message)
            logger.error(f"Email {entry.id} failed permanently: {error_message}")
            return self._result(entry, "failed", error_message, attempts)

        if attempts >= entry.max_attempts:
            self._finish(entry, EmailStatus.FAILED, attempt_count=attempts, last_error=error_message)
            logger.error(f"Email {entry.id} failed after {attempts} attempts: {error_message}")
            return self._result(entry, "failed", error_message, attempts)

        next_attempt = tz.now() + compute_backoff(attempts, self.backoff_seconds, self.backoff_strategy)
        self._finish(
            entry, EmailStatus.PENDING,
            attempt_count=attempts, last_error=error_message, scheduled_date=next_attempt,
        )
        logger.warning(
            f"Email {entry.id} will be retried at {next_attempt} "
            f"(attempt {attempts}/{entry.max_attempts}): {error_message}"
        )
        return self._result(entry, "retry", error_message, attempts)

    def _finish(self, entry: QueueEntry, status: EmailStatus, **changes) -> None:
        if not self.store.compare_and_set_status(
            entry.id, EmailStatus.PROCESSING, status, claimed_date=None, **changes
        ):
            # The claim was released as stale and the entry moved on without us
            logger.warning(f"Email {entry.id} was no longer PROCESSING; {status.value} not recorded")

    @staticmethod
    def _result(entry: QueueEntry, outcome: str, error: Optional[str] = None,
                attempts: Optional[int] = None) -> EmailProcessingResult:
        return EmailProcessingResult(
            entry_id=entry.id,
            outcome=outcome,
            error_message=error,
            attempt_count=entry.attempt_count if attempts is None else attempts,
            campaign_id=entry.campaign_id,
        )

    def send_email_safely(self, entry: QueueEntry) -> tuple[bool, Optional[SendFailure]]:
        """
        Send one entry through the transport under the send timeout.

        Returns:
            tuple: (success, failure). Unknown exceptions and timeouts
            come back as TransientSendFailure.

        The call runs on its own daemon thread and the timeout starts when
        that thread starts. A call that times out is abandoned, so it never
        delays the sends behind it.
        """
        outcome: dict = {}

        def call():
            try:
                self.transport.send(entry.recipient_email, entry.recipient_name, entry.subject, entry.body)
            except Exception as e:
                outcome["error"] = e

        sender = threading.Thread(target=call, name=f"mail-send-{entry.id}", daemon=True)
        sender.start()
        sender.join(self.send_timeout)

        if sender.is_alive():
            with self._stats_lock:
                self._abandoned_sends.append(sender)
            return False, TransientSendFailure(f"Send timed out after {self.send_timeout}s")

        error = outcome.get("error")
        if error is None:
            return True, None
        if isinstance(error, SendFailure):
            return False, error
        return False, TransientSendFailure(f"Failed to send email: {error}")
