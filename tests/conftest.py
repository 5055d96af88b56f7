from __future__ import annotations

import pytest

from blockdesk.metrics import MetricsRegistry, register_default_metrics
from blockdesk.services.blob_stores import InMemoryBlobStore
from blockdesk.services.content_store import ContentStoreClient
from blockdesk.services.ledger import InMemoryLedger
from blockdesk.tickets.directory import TicketDirectory
from blockdesk.tickets.models import ActorContext
from blockdesk.tickets.reconciler import EventReconciler
from blockdesk.tickets.service import TicketService
from blockdesk.tickets.workflow import WorkflowEngine
from factories import AGENT, MANAGER, USER, BlockClock, FakeClock


@pytest.fixture
def metrics():
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return InMemoryLedger(clock=BlockClock())


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def content_store(blob_store, clock, metrics):
    return ContentStoreClient(blob_store, negative_ttl=5.0, retry_backoff=0.0, clock=clock, metrics=metrics)


@pytest.fixture
def service(ledger, content_store, metrics):
    return TicketService(
        ledger,
        content_store,
        directory=TicketDirectory(metrics=metrics),
        reconciler=EventReconciler(content_store, metrics=metrics),
        workflow=WorkflowEngine(ledger, metrics=metrics),
        inline_content_limit=256,
        metrics=metrics,
    )


@pytest.fixture
def manager():
    return ActorContext(address=MANAGER, role="manager")


@pytest.fixture
def agent():
    return ActorContext(address=AGENT, role="agent")


@pytest.fixture
def user():
    return ActorContext(address=USER, role="user")
