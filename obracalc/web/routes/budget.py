"""Budget generation routes.

Routes:
- POST /budget/resolve   - Resolve a single task (debugging aid)
- POST /budget/generate  - Generate a full budget; events go to the scope id
- GET  /budget/stream    - SSE stream of a scope's generation events
"""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from obracalc.budget.orchestrator import BudgetGenerationError, GenerationCancelled
from obracalc.config import get_config
from obracalc.core.logging import bind_scope
from obracalc.models import Budget
from obracalc.services import Services
from obracalc.web.dependencies import HEARTBEAT, SSE_HEADERS, get_services, sse, watch_disconnect
from obracalc.web.models import GenerateBudgetRequest, ResolveRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/budget", tags=["budget"])


@router.post("/resolve")
async def resolve_item(payload: ResolveRequest, services: Services = Depends(get_services)):
    item = await services.resolver.resolve(
        payload.task,
        payload.quantity,
        payload.unit,
        context=payload.context,
        year=payload.year,
    )
    return item.model_dump(mode="json")


@router.post("/generate", response_model=Budget)
async def generate_budget(
    payload: GenerateBudgetRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    """Generate a budget; cancelled if the client disconnects mid-run."""
    scope_id = payload.scope_id or str(uuid4())
    bind_scope(scope_id=scope_id)

    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(watch_disconnect(request, cancel_event))
    try:
        return await services.orchestrator.generate_budget(
            payload.description,
            scope_id=scope_id,
            total_area=payload.total_area,
            context=payload.context,
            year=payload.year,
            cancel_event=cancel_event,
        )
    except BudgetGenerationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except GenerationCancelled as e:
        logger.info(f"Budget generation for {scope_id} cancelled: {e}")
        raise HTTPException(status_code=499, detail="Client closed request")
    finally:
        watcher.cancel()


@router.get("/stream")
async def stream_events(
    scope_id: str,
    request: Request,
    replay: bool = True,
    services: Services = Depends(get_services),
):
    """Ordered event stream for a scope, with periodic heartbeats."""
    heartbeat_seconds = get_config().stream.heartbeat_seconds

    async def event_source():
        async with services.events.subscribe(scope_id, replay=replay) as subscription:
            while not await request.is_disconnected():
                event = await subscription.get(timeout=heartbeat_seconds)
                if event is None:
                    yield HEARTBEAT
                    continue
                yield sse(event.model_dump_json())
                if event.type.is_terminal:
                    return

    return StreamingResponse(event_source(), media_type="text/event-stream", headers=SSE_HEADERS)
