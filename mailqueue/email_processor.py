"""
Email Queue Processor
=====================

Standalone command that processes the email queue outside the host
application.

It only delivers queue entries. Fanning out SCHEDULED campaigns needs the
host application's recipient data, so that stays with the in-app
background processor (background_email_processor.run_cycle).

Usage:
    mailqueue-processor [--daemon] [--interval SECONDS] [--batch-size N]

Options:
    --daemon        Run as daemon (continuous processing)
    --interval      Check interval in seconds (default: CHECK_INTERVAL_SECONDS)
    --batch-size    Number of emails to process per tick (default: BATCH_SIZE)
    --dry-run       Don't actually send emails, just log what would be sent
    --verbose       Enable verbose logging
"""

import argparse
import logging
import signal
import sys
import time
from datetime import datetime
from typing import Optional

from mailqueue.core.config import settings
from mailqueue.services.delivery_worker import DeliveryWorker
from mailqueue.services.email_campaign_service import refresh_active_campaigns
from mailqueue.services.email_service import create_transport
from mailqueue.store.factory import create_store

logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


def configure_logging(verbose: bool = False, log_file: Optional[str] = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def build_worker(batch_size: Optional[int] = None, dry_run: bool = False) -> DeliveryWorker:
    """Create the store, transport and worker from settings."""
    store = create_store()
    transport = create_transport(dry_run=dry_run)
    return DeliveryWorker(store, transport, batch_size=batch_size)


def run_daemon(worker: DeliveryWorker, check_interval: int, dry_run: bool = False):
    """
    Run email processor as daemon.

    Args:
        worker: Delivery worker
        check_interval: Seconds between queue checks
        dry_run: If True, don't actually send emails
    """
    logger.info(f"Starting email processor daemon (check_interval={check_interval}s, batch_size={worker.batch_size})")

    if dry_run:
        logger.info("DRY RUN MODE: No emails will actually be sent")

    last_activity = datetime.now()

    while not shutdown_requested:
        try:
            start_time = datetime.now()
            result = worker.run_tick()
            refresh_active_campaigns(worker.store)

            if result.claimed > 0:
                last_activity = start_time
                logger.info(f"Processed {result.claimed} emails in {result.duration_seconds:.1f}s")
            elif (datetime.now() - last_activity).total_seconds() > 300:
                logger.info("Email processor is running, no pending emails")
                last_activity = datetime.now()

            for _ in range(check_interval):
                if shutdown_requested:
                    break
                time.sleep(1)

        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt, shutting down...")
            break
        except Exception as e:
            logger.error(f"Unexpected error in daemon loop: {e}")
            time.sleep(check_interval)

    logger.info("Email processor daemon stopped")


def run_single_batch(worker: DeliveryWorker, dry_run: bool = False) -> int:
    """Run one delivery tick and return the number of entries processed."""
    logger.info(f"Running single batch processing (batch_size={worker.batch_size})")

    if dry_run:
        logger.info("DRY RUN MODE: No emails will actually be sent")

    result = worker.run_tick()
    refresh_active_campaigns(worker.store)
    logger.info(
        f"Single batch completed: {result.claimed} emails processed in {result.duration_seconds:.1f}s "
        f"({result.sent} sent, {result.retried} retried, {result.failed} failed)"
    )
    return result.claimed


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Email Queue Processor')
    parser.add_argument('--daemon', action='store_true', help='Run as daemon')
    parser.add_argument('--interval', type=int, default=settings.CHECK_INTERVAL_SECONDS,
                        help='Check interval in seconds')
    parser.add_argument('--batch-size', type=int, default=settings.BATCH_SIZE, help='Emails per tick')
    parser.add_argument('--dry-run', action='store_true', help='Don\'t actually send emails')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', default=None, help='Also write logs to this file')

    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    worker = None
    try:
        worker = build_worker(args.batch_size, args.dry_run)
        if args.daemon:
            run_daemon(worker, args.interval, args.dry_run)
        else:
            run_single_batch(worker, args.dry_run)
    except Exception as e:
        logger.error(f"Email processor failed: {e}")
        sys.exit(1)
    finally:
        if worker is not None:
            worker.shutdown()


if __name__ == "__main__":
    main()
