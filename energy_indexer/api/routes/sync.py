"""
Indexer status endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from energy_indexer.api.dependencies import get_sync_scheduler
from energy_indexer.api.schemas import SyncStatusResponse
from energy_indexer.core.sync_scheduler import SyncScheduler


router = APIRouter(prefix="/sync", tags=["sync"])


def build_sync_status(scheduler: Optional[SyncScheduler]) -> SyncStatusResponse:
    if scheduler is None:
        return SyncStatusResponse(enabled=False)

    status = scheduler.status()
    lag = None
    if status.head is not None and status.checkpoint is not None:
        lag = max(status.head - status.checkpoint, 0)

    return SyncStatusResponse(
        enabled=True,
        phase=status.phase,
        running=status.running,
        checkpoint=status.checkpoint,
        head=status.head,
        lag=lag,
        consecutiveFailures=status.consecutive_failures,
        lastError=status.last_error,
        lastSuccessAt=status.last_success_at,
        deferredEvents=status.deferred_events,
        healthy=status.healthy,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(
    scheduler: Optional[SyncScheduler] = Depends(get_sync_scheduler)
) -> SyncStatusResponse:
    """
    Get checkpoint, head, lag and failure state of the background indexer.
    """
    return build_sync_status(scheduler)
