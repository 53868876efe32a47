"""
Order Stream Endpoint

Server-Sent Events feed of a user's committed order transitions.

Each event is ``event: order_transition`` with ``id: <order_id>:<sequence>``.
On reconnect the client passes what it already has, either
``last_sequence`` (one number for every existing order), ``cursor``
(``ord_a:3,ord_b:5``) or the standard ``Last-Event-ID`` header, and the
hub replays the gap before switching to live delivery.
"""
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse
from typing import Any, AsyncIterator, Dict, Optional
import json
import logging
import uuid

from ..container import ServiceContainer
from ..services.broadcast_service import Cursor
from .dependencies import get_container

logger = logging.getLogger(__name__)

router = APIRouter()


def format_sse_event(event_type: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
    """
    Format event as a Server-Sent Events message.

    Args:
        event_type: Event type (e.g., "order_transition", "resync")
        data: Event data payload
        event_id: Optional unique event ID

    Returns:
        Formatted SSE message string
    """
    lines = []

    if event_type:
        lines.append(f"event: {event_type}")

    if event_id:
        lines.append(f"id: {event_id}")

    if data:
        data_json = json.dumps(data)
        lines.append(f"data: {data_json}")

    lines.append("")
    lines.append("")

    return "\n".join(lines)


def parse_cursor(cursor: Optional[str], last_event_id: Optional[str]) -> Dict[str, int]:
    """
    Merge ``order_id:sequence`` pairs from the query cursor and Last-Event-ID.

    Raises:
        ValueError: a pair is malformed
    """
    positions: Dict[str, int] = {}
    for raw in (cursor, last_event_id):
        if not raw:
            continue
        for pair in raw.split(","):
            pair = pair.strip()
            if not pair:
                continue
            order_id, sep, sequence = pair.rpartition(":")
            if not sep or not order_id or not sequence.isdigit():
                raise ValueError(f"Malformed stream cursor: {pair!r}")
            positions[order_id] = max(positions.get(order_id, 0), int(sequence))
    return positions


@router.get("/stream")
async def order_stream_endpoint(
    request: Request,
    user_id: str = Query(..., min_length=1, description="User whose orders to follow"),
    last_sequence: int = Query(0, ge=0, description="Last sequence seen, applied to every existing order"),
    cursor: Optional[str] = Query(None, description="Per-order positions, e.g. ord_a:3,ord_b:5"),
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
    container: ServiceContainer = Depends(get_container)
):
    """
    Follow a user's order transitions.

    Streams SSE Events:
        - connected: subscription is open, replay follows
        - order_transition: one committed state change
        - resync: the client fell behind; reconnect with its cursor

    Example Usage:
        ```javascript
        const source = new EventSource(`/api/orders/stream?user_id=${userId}`);
        source.addEventListener('order_transition', (e) => render(JSON.parse(e.data)));
        ```
    """
    positions = parse_cursor(cursor, last_event_id)
    start: Cursor = positions if positions else last_sequence

    connection_id = f"conn_{uuid.uuid4().hex[:12]}"
    connection = await container.hub.subscribe(user_id, connection_id, start)
    heartbeat = container.settings.stream_heartbeat_seconds

    async def event_generator() -> AsyncIterator[str]:
        try:
            yield format_sse_event("connected", {
                "user_id": user_id,
                "connection_id": connection_id,
            })

            async for transition in connection.events(heartbeat_seconds=heartbeat):
                if transition is None:
                    if await request.is_disconnected():
                        break
                    yield ": keep-alive\n\n"
                    continue

                yield format_sse_event(
                    "order_transition",
                    transition.to_event_data(),
                    event_id=f"{transition.order_id}:{transition.sequence}",
                )

            if connection.overflowed:
                yield format_sse_event("resync", {
                    "reason": "subscriber_queue_overflow",
                    "acknowledged": dict(connection.acknowledged),
                })
        finally:
            await container.hub.unsubscribe(user_id, connection_id, connection)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
