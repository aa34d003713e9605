"""Shared test fixtures."""
import json
from typing import Callable, Generator, List

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from tasksync.models.task import Task  # noqa: F401
from tasksync.models.sync import SyncLog, SyncQueueEntry  # noqa: F401
from tasksync.services.task_service import TaskService
from tasksync.sync.change_log import ChangeLog
from tasksync.sync.protocol import BatchProtocolClient

BASE_URL = "http://remote.test/api"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="change_log")
def change_log_fixture(engine) -> ChangeLog:
    return ChangeLog(engine)


@pytest.fixture(name="task_service")
def task_service_fixture(engine, change_log) -> TaskService:
    return TaskService(engine, change_log)


class RemoteAuthority:
    """
    Scriptable stand-in for the remote authority, served via httpx.MockTransport.

    ``respond`` decides the per-item answer; by default every item succeeds
    with server_id "srv_<n>". With ``per_record`` set, only the first item for
    each record is answered. Every /batch request body is kept in ``batches``.
    """

    def __init__(self):
        self.batches: List[dict] = []
        self.healthy = True
        self.fail_batches = False
        self.per_record = False
        self.respond: Callable[[dict], dict] = self._success
        self._counter = 0

    def _success(self, item: dict) -> dict:
        self._counter += 1
        return {
            "client_id": item["record_id"],
            "server_id": f"srv_{self._counter}",
            "status": "success",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/health"):
            if not self.healthy:
                return httpx.Response(503, json={"error": "down"})
            return httpx.Response(200, json={"status": "ok"})

        body = json.loads(request.content)
        self.batches.append(body)
        if self.fail_batches:
            return httpx.Response(500, json={"error": "Failed to process batch"})
        items = body["items"]
        if self.per_record:
            first = {}
            for item in items:
                first.setdefault(item["record_id"], item)
            items = list(first.values())
        return httpx.Response(
            200,
            json={"processed_items": [self.respond(item) for item in items]},
        )

    def client(self) -> BatchProtocolClient:
        return BatchProtocolClient(BASE_URL, transport=httpx.MockTransport(self.handler))


@pytest.fixture(name="remote")
def remote_fixture() -> RemoteAuthority:
    return RemoteAuthority()
