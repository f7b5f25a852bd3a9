"""
Pytest configuration and fixtures for the email pipeline tests.
"""
from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

from mailqueue.core.database import Base, build_engine, init_db
from mailqueue.schemas.email_campaign import Recipient
from mailqueue.services.delivery_worker import DeliveryWorker
from mailqueue.services.email_service import MockTransport
from mailqueue.services.recipients import MappingRecipientResolver
from mailqueue.store.memory import InMemoryQueueStore
from mailqueue.store.sql import SqlQueueStore


@pytest.fixture(scope="function")
def sql_store():
    """SQL store on a fresh in-memory SQLite database (shared connection)."""
    engine = build_engine("sqlite://")
    init_db(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    yield SqlQueueStore(factory)

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def memory_store():
    return InMemoryQueueStore()


@pytest.fixture(scope="function", params=["sql", "memory"])
def store(request):
    """Run the test against both store backends."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture(scope="function")
def transport():
    return MockTransport()


@pytest.fixture(scope="function")
def make_worker(store):
    """Build a delivery worker on the current store; shut down after the test."""
    workers = []

    def _make(transport, **kwargs):
        options = {
            "batch_size": 10,
            # One processing thread: the in-memory SQLite fixture shares a single connection
            "pool_size": 1,
            "send_timeout": 5.0,
            "backoff_seconds": 0,
            "backoff_strategy": "linear",
            "claim_timeout": 900,
        }
        options.update(kwargs)
        worker = DeliveryWorker(store, transport, **options)
        workers.append(worker)
        return worker

    yield _make

    for worker in workers:
        worker.shutdown()


@pytest.fixture(scope="function")
def recipients():
    return [
        Recipient(email="alice@example.com", name="Alice Smith", team_name="Explorers",
                  registration_date=date(2025, 3, 1), registration_id=1),
        Recipient(email="bob@example.com", name="Bob Jones", registration_date=date(2025, 3, 2),
                  registration_id=2),
        Recipient(email="carol@example.com", name="Carol White", team_name="Seekers",
                  registration_date=date(2025, 3, 3), registration_id=3),
        Recipient(email="dave@example.com", name="Dave Brown", registration_date=date(2025, 3, 4),
                  registration_id=4),
        Recipient(email="erin@example.com", name="Erin Green", registration_date=date(2025, 3, 5),
                  registration_id=5),
    ]


@pytest.fixture(scope="function")
def resolver(recipients):
    return MappingRecipientResolver({
        "ALL": recipients,
        "TEAM_REGISTRATIONS": [r for r in recipients if r.team_name],
        "RECENT_REGISTRATIONS": [],
    })
