"""Long-poll endpoints.

`GET /status` holds the request open until the event changes after
`last_updated` or the coordinator's timeout elapses.
"""

import asyncio
import contextlib
from typing import Any, Awaitable, Optional

from fastapi import APIRouter, Query, Request, Response

from pollgate.app.core.config import settings
from pollgate.app.core.logging import get_log_context, get_logger
from pollgate.app.exceptions import InvalidArgumentError, WaitTimeoutError
from pollgate.app.services.long_poll import LongPollCoordinator, WaitOutcome

logger = get_logger(__name__)
router = APIRouter()

# Client closed request
CLIENT_CLOSED_STATUS = 499


def get_coordinator(request: Request) -> LongPollCoordinator:
    return request.app.state.coordinator


async def wait_unless_disconnected(
    request: Request,
    awaitable: Awaitable[WaitOutcome],
    poll_interval: Optional[float] = None,
) -> Optional[WaitOutcome]:
    """Await `awaitable` while watching for client disconnect.

    On disconnect the wait is cancelled, which deregisters it from the
    coordinator, and None is returned.
    """
    interval = poll_interval or settings.long_poll_disconnect_poll_interval
    wait_task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({wait_task}, timeout=interval)
            if done:
                return wait_task.result()
            if await request.is_disconnected():
                wait_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await wait_task
                return None
    finally:
        if not wait_task.done():
            wait_task.cancel()


@router.get("/status", response_model=None)
async def get_status(
    request: Request,
    event_id: Optional[str] = Query(default=None, alias="eventId"),
    last_updated: Optional[str] = Query(default=None),
) -> Any:
    """Return the event once it changes after `last_updated`.

    Responds 200 with the item, 408 on timeout, 404 for unknown events and
    400 for missing or malformed parameters.
    """
    if not event_id or last_updated is None:
        raise InvalidArgumentError("eventId and last_updated are required")

    coordinator = get_coordinator(request)
    outcome = await wait_unless_disconnected(
        request, coordinator.await_change(event_id, last_updated)
    )

    if outcome is None:
        logger.debug(
            "Client disconnected during long poll",
            extra=get_log_context(resource_id=event_id),
        )
        # The peer is gone; this response is only logged, never delivered
        return Response(status_code=CLIENT_CLOSED_STATUS)

    if outcome.timed_out:
        raise WaitTimeoutError(event_id)

    return {
        "success": True,
        "message": "Data fetched successfully",
        "data": {"item": outcome.to_item()},
    }


@router.get("/events")
async def list_events(request: Request) -> dict:
    """Snapshot of every event with its pending long-poll count."""
    coordinator = get_coordinator(request)
    items = [
        {**resource.to_item(), "pendingRequests": coordinator.pending_count(resource.id)}
        for resource in coordinator.resources()
    ]
    return {"success": True, "data": {"items": items}}
