"""Event replay endpoints: long-poll and Server-Sent Events."""

from collections.abc import AsyncIterator

from fastapi import APIRouter, Header, Query
from fastapi.responses import StreamingResponse

from exec_relay.api.deps import SessionDep
from exec_relay.core.events import EventStream
from exec_relay.models.events import Event
from exec_relay.models.responses import EventsResponse

router = APIRouter(prefix="/runs/{session_id}/events", tags=["Events"])

# Seconds between SSE comments that keep idle connections open
KEEPALIVE_SECONDS = 15.0


@router.get("", response_model=EventsResponse)
async def get_events(
    session: SessionDep,
    since: int = Query(0, ge=0, description="Return events with seq above this"),
    timeout: float | None = Query(
        None,
        ge=0,
        le=60,
        description="Long-poll timeout in seconds",
    ),
) -> EventsResponse:
    """Poll for run events.

    If timeout is specified and no newer events are buffered, waits up to
    timeout seconds for at least one event (long-polling).
    """
    stream = session.stream
    events = await stream.get_since(since, timeout=timeout)
    return EventsResponse(events=events, last_seq=stream.last_seq, closed=stream.closed)


@router.get("/stream")
async def stream_events(
    session: SessionDep,
    from_seq: int = Query(1, ge=1, description="First seq to deliver"),
    last_event_id: str | None = Header(None, alias="Last-Event-ID"),
) -> StreamingResponse:
    """Stream events as Server-Sent Events.

    Each message carries one event as JSON with ``id`` set to its seq, so
    a reconnecting client resumes via ``Last-Event-ID``. The response ends
    after the final event of the run.
    """
    start = from_seq
    if last_event_id and last_event_id.strip().isdigit():
        start = max(start, int(last_event_id.strip()) + 1)

    return StreamingResponse(
        _sse(session.stream, start),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def format_sse(event: Event) -> str:
    """Render one event as an SSE message."""
    return f"id: {event.seq}\nevent: {event.kind.value}\ndata: {event.model_dump_json()}\n\n"


async def _sse(stream: EventStream, from_seq: int) -> AsyncIterator[str]:
    async with stream.subscribe(from_seq) as subscription:
        while True:
            event = await subscription.get(timeout=KEEPALIVE_SECONDS)
            if event is None:
                if subscription.finished:
                    return
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
