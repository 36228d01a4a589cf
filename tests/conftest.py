"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from journey_engine.config import get_testing_config
from journey_engine.core.ab_allocator import ABAllocator
from journey_engine.core.collaborators import (
    AIClient,
    DeliveryReceipt,
    InMemoryContactDirectory,
    LoggingActionClient,
    MessagingClient,
    WakeScheduler,
    WebhookClient,
    WebhookResponse,
)
from journey_engine.core.execution_engine import ExecutionEngine
from journey_engine.core.graph_manager import GraphManager
from journey_engine.core.state_manager import ExecutionStore
from journey_engine.executors import ExecutorServices, build_default_registry
from journey_engine.models.core import WorkflowDefinition
from journey_engine.storage.database import create_tables, drop_tables


START = datetime(2024, 3, 1, 9, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingMessagingClient(MessagingClient):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.failures = 0

    def send(self, phone_number, content):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("provider unavailable")
        self.sent.append({"phone_number": phone_number, "content": content})
        return DeliveryReceipt(delivery_id=f"msg-{len(self.sent)}", status="sent")


class FakeWebhookClient(WebhookClient):
    """Returns queued responses in order, then 200s."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.responses: List[WebhookResponse] = []

    def call(self, url, method, auth, body, headers, timeout):
        self.calls.append({"url": url, "method": method, "auth": auth, "body": body,
                           "headers": headers, "timeout": timeout})
        if self.responses:
            return self.responses.pop(0)
        return WebhookResponse(status_code=200, body={"ok": True})


class FakeAIClient(AIClient):
    def __init__(self):
        self.requests: List[Dict[str, Any]] = []

    def classify(self, text, kind, options=None):
        self.requests.append({"text": text, "kind": kind, "options": options})
        return {"kind": kind, "label": "positive", "score": 0.9}


class RecordingScheduler(WakeScheduler):
    def __init__(self):
        self.wakes = []

    def schedule_wake(self, execution_id, wake_condition):
        self.wakes.append((execution_id, wake_condition))


def make_workflow(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                  workflow_id: str = "wf-1", status: str = "active",
                  settings: Optional[Dict[str, Any]] = None, **extra) -> WorkflowDefinition:
    """Build a WorkflowDefinition from plain dicts."""
    return WorkflowDefinition.model_validate({
        "id": workflow_id,
        "organization_id": "org-1",
        "name": extra.pop("name", "Welcome journey"),
        "status": status,
        "nodes": nodes,
        "edges": edges,
        "settings": settings or {},
        **extra,
    })


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    edge_id = f"{source}-{handle}-{target}" if handle else f"{source}-{target}"
    return {"id": edge_id, "source": source, "target": target, "source_handle": handle}


def trigger(node_id: str = "start") -> Dict[str, Any]:
    return {"id": node_id, "type": "trigger", "data": {"trigger_type": "contact_created"}}


def message(node_id: str, text: str = "Hi {{name}}!") -> Dict[str, Any]:
    return {"id": node_id, "type": "message", "data": {"custom_message": text, "use_contact_name": True}}


def delay(node_id: str, amount: float = 1, unit: str = "days") -> Dict[str, Any]:
    return {"id": node_id, "type": "delay", "data": {"amount": amount, "unit": unit}}


def goal(node_id: str = "goal", name: str = "Converted") -> Dict[str, Any]:
    return {"id": node_id, "type": "goal", "data": {"goal_name": name}}


def linear_workflow(workflow_id: str = "wf-1", **kwargs) -> WorkflowDefinition:
    """trigger -> message -> delay (1 day) -> goal"""
    return make_workflow(
        [trigger(), message("welcome"), delay("wait"), goal()],
        [edge("start", "welcome"), edge("welcome", "wait"), edge("wait", "goal")],
        workflow_id=workflow_id,
        **kwargs
    )


@pytest.fixture
def db_engine():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def config():
    return get_testing_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def graph_manager(session_factory):
    return GraphManager(session_factory=session_factory)


@pytest.fixture
def store(session_factory):
    return ExecutionStore(session_factory=session_factory)


@pytest.fixture
def allocator(session_factory, graph_manager, clock):
    return ABAllocator(session_factory=session_factory, graph_manager=graph_manager, clock=clock)


@pytest.fixture
def messaging():
    return RecordingMessagingClient()


@pytest.fixture
def webhooks():
    return FakeWebhookClient()


@pytest.fixture
def ai_client():
    return FakeAIClient()


@pytest.fixture
def contacts():
    return InMemoryContactDirectory({
        "c-1": {"id": "c-1", "name": "Ada", "phone": "+15550001", "tags": ["vip"], "score": 42},
        "c-2": {"id": "c-2", "name": "", "phone": "+15550002", "tags": []},
        "c-3": {"id": "c-3", "name": "Grace"},
    })


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def services(messaging, webhooks, ai_client, allocator):
    return ExecutorServices(
        messaging=messaging,
        actions=LoggingActionClient(),
        ai=ai_client,
        webhooks=webhooks,
        allocator=allocator,
        webhook_timeout=5,
    )


@pytest.fixture
def engine(graph_manager, store, services, contacts, scheduler, config, clock):
    execution_engine = ExecutionEngine(
        graph_manager=graph_manager,
        store=store,
        registry=build_default_registry(),
        services=services,
        contacts=contacts,
        scheduler=scheduler,
        config=config,
        clock=clock,
    )
    yield execution_engine
    execution_engine.shutdown()
