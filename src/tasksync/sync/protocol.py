"""
Async HTTP client for the remote authority's batch sync API.

One exchange() call is one POST {base}/batch round trip. Any failure of the
round trip itself (transport error, timeout, non-2xx, unparseable body) is
raised as ProtocolError for the whole batch; per-item rejections come back
as Failure outcomes.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from tasksync.models.sync import (
    BatchSyncRequest,
    BatchSyncResponse,
    ProcessedItem,
    RemoteTask,
    SyncItem,
    SyncQueueEntry,
)
from tasksync.timeutil import utcnow

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    """The batch round trip did not complete."""


# ─── Per-item outcomes ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Success:
    remote_id: Optional[str]


@dataclass(frozen=True)
class Conflict:
    remote_snapshot: Optional[RemoteTask]  # None when the remote sent nothing usable
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class Failure:
    message: str


Outcome = Union[Success, Conflict, Failure]


@dataclass(frozen=True)
class ItemOutcome:
    client_id: str  # record_id of the entry this outcome answers
    outcome: Outcome


def _to_outcome(item: ProcessedItem) -> Outcome:
    if item.status == "success":
        return Success(remote_id=item.server_id)
    if item.status == "conflict":
        snapshot = None
        if item.resolved_data is not None:
            try:
                snapshot = RemoteTask.model_validate(item.resolved_data)
            except ValidationError as exc:
                logger.warning(
                    "Unusable conflict snapshot for %s: %s", item.client_id, exc
                )
        return Conflict(remote_snapshot=snapshot, remote_id=item.server_id)
    return Failure(message=item.error or "Sync error")


def _describe(exc: Exception) -> str:
    """httpx timeouts often stringify to ''; fall back to the exception type."""
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


# ─── Client ───────────────────────────────────────────────────────────────────


class BatchProtocolClient:
    """Client for the remote authority's /batch and /health endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Remote authority URL, e.g. http://localhost:3000/api
            timeout: Request timeout in seconds for batch exchanges
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def exchange(self, batch: Sequence[SyncQueueEntry]) -> List[ItemOutcome]:
        """Send one batch and return the per-item outcomes in response order.

        Raises:
            ProtocolError: the round trip failed as a whole.
        """
        request = BatchSyncRequest(
            items=[SyncItem.from_entry(entry) for entry in batch],
            client_timestamp=utcnow(),
        )
        try:
            response = await self.client.post(
                f"{self.base_url}/batch",
                json=request.model_dump(mode="json"),
            )
            response.raise_for_status()
            body = BatchSyncResponse.model_validate(response.json())
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            # ValueError covers both bad JSON and pydantic ValidationError
            raise ProtocolError(_describe(exc)) from exc

        return [
            ItemOutcome(client_id=item.client_id, outcome=_to_outcome(item))
            for item in body.processed_items
        ]

    async def health(self, timeout: Optional[float] = None) -> None:
        """Hit the liveness endpoint.

        Raises:
            httpx.HTTPError: Request failed or returned non-2xx
        """
        response = await self.client.get(
            f"{self.base_url}/health",
            timeout=timeout if timeout is not None else self.timeout,
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class ConnectivityProber:
    """Bounded-timeout liveness check, used as a gate before a sync pass."""

    def __init__(self, client: BatchProtocolClient, timeout: float = 5.0):
        self.client = client
        self.timeout = timeout
        self.last_result: Optional[bool] = None

    async def probe(self, timeout: Optional[float] = None) -> bool:
        try:
            await self.client.health(timeout=timeout if timeout is not None else self.timeout)
            online = True
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.info("Remote authority unreachable: %s", _describe(exc))
            online = False
        self.last_result = online
        return online
