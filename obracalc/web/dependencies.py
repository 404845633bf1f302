"""Shared dependencies for obracalc web routes.

Usage:
    from fastapi import Depends
    from obracalc.web.dependencies import get_services

    @router.get("/endpoint")
    async def handler(services: Services = Depends(get_services)):
        ...

Tests override ``get_services`` through ``app.dependency_overrides``.
"""

from __future__ import annotations

import asyncio

from fastapi import Request

from obracalc.services import Services
from obracalc.services import get_services as _get_services

DISCONNECT_POLL_SECONDS = 1.0


def get_services() -> Services:
    return _get_services()


async def watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def sse(payload: str) -> str:
    return f"data: {payload}\n\n"


HEARTBEAT = ": heartbeat\n\n"
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
