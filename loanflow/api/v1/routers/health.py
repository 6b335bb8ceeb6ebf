from fastapi import APIRouter, Depends

from loanflow.api import deps
from loanflow.core.health import live_payload, ready_payload, status_summary_payload
from loanflow.core.limiter import limiter
from loanflow.services.record_store import RecordStore

router = APIRouter(tags=["health"])


@router.get("/health/live", summary="Service liveness check")
@limiter.exempt
async def health_live() -> dict:
    return await live_payload()


@router.get("/health/ready", summary="Service readiness check")
@limiter.exempt
async def health_ready(store: RecordStore = Depends(deps.get_record_store)) -> dict:
    return await ready_payload(store)


@router.get("/status/summary", tags=["status"], summary="Service status summary")
@limiter.exempt
async def status_summary(store: RecordStore = Depends(deps.get_record_store)) -> dict:
    return await status_summary_payload(store)
