import logging
from fastapi import APIRouter, HTTPException, Query, status
from app.core.config import MAX_RETRIES
from app.models.outbox import utcnow
from app.relay.store import count_by_state, list_dead_letters
from app.relay.worker import get_relay_worker
from app.schemas.outbox import DeadLetterResponse, OutboxStatsResponse
from app.schemas.response import SuccessResponse

router = APIRouter()
log = logging.getLogger("uvicorn")


@router.get("/stats", response_model=SuccessResponse)
async def outbox_stats():
    """Counts outbox messages per relay state, for monitoring and alerting."""
    worker = get_relay_worker()
    try:
        counts = await count_by_state(utcnow(), worker.policy.max_retries if worker else MAX_RETRIES)
    except Exception as e:
        log.error(f"Error counting outbox messages: {e}")
        raise HTTPException(status_code=500, detail="Server failed to read outbox state.")

    data = OutboxStatsResponse(**counts, relay_running=bool(worker and worker.running)).model_dump()
    return SuccessResponse(data=data)


@router.get("/dead-letters", response_model=SuccessResponse)
async def outbox_dead_letters(limit: int = Query(50, ge=1, le=500)):
    """Lists messages the relay stopped retrying, most recent failure first."""
    try:
        messages = await list_dead_letters(limit)
    except Exception as e:
        log.error(f"Error listing dead letters: {e}")
        raise HTTPException(status_code=500, detail="Server failed to list dead letters.")

    data = [DeadLetterResponse.model_validate(m).model_dump(mode="json") for m in messages]
    return SuccessResponse(data=data)


@router.post("/relay/trigger", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def trigger_relay():
    """Wakes the in-app relay without waiting for the next poll interval."""
    worker = get_relay_worker()
    if worker is None or not worker.running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Outbox relay is not running in this process.")
    worker.notify()
    return SuccessResponse(data={"message": "Relay pass requested."})
