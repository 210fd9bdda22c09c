"""HTTP command channel, Server-Sent Events stream and snapshot routes."""
import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from bonsai.core.errors import ExportPreconditionError, ValidationError
from bonsai.services.session_service import BonsaiSession, get_bonsai_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bonsai"])

# Seconds between keep-alive comments on an idle event stream
HEARTBEAT_INTERVAL = 15.0


def get_session() -> BonsaiSession:
    """Dependency returning the process-wide Bonsai session."""
    return get_bonsai_session()


def format_sse(message: Dict[str, Any]) -> str:
    """Encode one notification as a Server-Sent Events frame."""
    return f"data: {json.dumps(message)}\n\n"


async def _read_json(request: Request) -> Any:
    try:
        return json.loads(await request.body())
    except ValueError:
        return None


async def event_stream(
    request: Request,
    session: BonsaiSession,
    heartbeat: float = HEARTBEAT_INTERVAL
) -> AsyncIterator[str]:
    """
    Yield SSE frames: an ``:ok`` comment, the greeting sequence, then broadcasts.

    The subscription is released when the client goes away.
    """
    queue = session.broadcaster.subscribe()
    try:
        yield ":ok\n\n"
        for message in session.initial_messages():
            yield format_sse(message)

        while True:
            if await request.is_disconnected():
                break
            try:
                message = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield ":keep-alive\n\n"
                continue
            yield format_sse(message)
    finally:
        session.broadcaster.unsubscribe(queue)
        logger.debug("Event stream closed")


@router.post("/message", status_code=204)
async def post_message(
    request: Request,
    background_tasks: BackgroundTasks,
    session: BonsaiSession = Depends(get_session)
):
    """
    Accept one command.

    The command runs after the response is sent; its results arrive on the
    event stream.
    """
    message = await _read_json(request)
    if not isinstance(message, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    background_tasks.add_task(session.dispatch, message)
    return Response(status_code=204)


@router.get("/events")
async def get_events(request: Request, session: BonsaiSession = Depends(get_session)):
    """Server-Sent Events stream of every outbound notification."""
    return StreamingResponse(
        event_stream(request, session),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )


@router.get("/export")
async def export_snapshot(session: BonsaiSession = Depends(get_session)):
    """Download the whole tree as a bonsai.v1 document."""
    try:
        snapshot = await session.export_snapshot()
    except ExportPreconditionError as e:
        return JSONResponse(status_code=400, content={"error": e.message})

    filename = f"bonsai-{int(time.time() * 1000)}.json"
    return JSONResponse(
        content=snapshot,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


@router.post("/import", status_code=204)
async def import_snapshot(request: Request, session: BonsaiSession = Depends(get_session)):
    """Replace the tree with a bonsai.v1 document sent as the request body."""
    payload = await _read_json(request)
    if payload is None:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    try:
        await session.import_snapshot(payload)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": e.message})
    return Response(status_code=204)


@router.get("/api/state")
async def get_state(session: BonsaiSession = Depends(get_session)):
    """Current graph, history and selection of the active branch."""
    return session.state()
