"""Sync trigger, status, and loopback remote-authority routes."""
import logging
import secrets
from datetime import datetime
from typing import AsyncGenerator, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from tasksync.config import get_settings
from tasksync.db.engine import get_engine
from tasksync.models.sync import (
    BatchSyncRequest,
    BatchSyncResponse,
    ProcessedItem,
    SyncResult,
    SyncStatusReport,
)
from tasksync.sync.change_log import ChangeLog
from tasksync.sync.orchestrator import (
    SyncAlreadyRunningError,
    build_orchestrator,
    build_status_report,
)
from tasksync.sync.protocol import BatchProtocolClient, ConnectivityProber
from tasksync.timeutil import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


class DeadLetterResponse(BaseModel):
    id: str
    record_id: str
    operation: str
    created_at: datetime
    retry_count: int
    error_message: Optional[str]


class RequeueRequest(BaseModel):
    entry_ids: Optional[List[str]] = None  # If None, requeues every dead letter


async def get_protocol_client() -> AsyncGenerator[BatchProtocolClient, None]:
    """FastAPI dependency that yields a client for the configured remote authority."""
    settings = get_settings()
    async with BatchProtocolClient(
        settings.api_base_url, timeout=settings.request_timeout_seconds
    ) as client:
        yield client


def _prober(client: BatchProtocolClient) -> ConnectivityProber:
    return ConnectivityProber(client, timeout=get_settings().health_timeout_seconds)


@router.post("/sync", response_model=SyncResult)
async def trigger_sync(
    engine=Depends(get_engine),
    client: BatchProtocolClient = Depends(get_protocol_client),
):
    """Run one sync pass now, if the remote authority is reachable."""
    if not await _prober(client).probe():
        raise HTTPException(status_code=503, detail="Service Unavailable")
    try:
        return await build_orchestrator(engine, client).run()
    except SyncAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except SQLAlchemyError:
        logger.exception("Sync pass aborted by a store fault")
        raise HTTPException(status_code=500, detail="Failed to sync")


@router.get("/status", response_model=SyncStatusReport)
async def sync_status(
    engine=Depends(get_engine),
    client: BatchProtocolClient = Depends(get_protocol_client),
):
    online = await _prober(client).probe()
    return build_status_report(engine, online)


@router.get("/dead-letters", response_model=List[DeadLetterResponse])
def list_dead_letters(engine=Depends(get_engine)):
    """Entries set aside from normal drains, awaiting manual intervention."""
    return [
        DeadLetterResponse(
            id=entry.id,
            record_id=entry.record_id,
            operation=entry.operation,
            created_at=entry.created_at,
            retry_count=entry.retry_count,
            error_message=entry.error_message,
        )
        for entry in ChangeLog(engine).dead_letters()
    ]


@router.post("/dead-letters/requeue")
def requeue_dead_letters(request: RequeueRequest, engine=Depends(get_engine)):
    requeued = ChangeLog(engine).requeue_dead_letters(request.entry_ids)
    return {"requeued": requeued}


@router.post("/batch", response_model=BatchSyncResponse)
def batch(request: BatchSyncRequest):
    """
    Loopback remote authority for local testing: acknowledges every item.

    Reuses data.server_id when the client already has one, otherwise
    assigns a fresh srv_xxxxxx id.
    """
    processed = [
        ProcessedItem(
            client_id=item.record_id,
            server_id=item.data.get("server_id") or f"srv_{secrets.token_hex(3)}",
            status="success",
        )
        for item in request.items
    ]
    return BatchSyncResponse(processed_items=processed)


@router.get("/health")
def health():
    return {"status": "ok", "timestamp": utcnow()}
