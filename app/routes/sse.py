"""
SSE (Server-Sent Events) Routes

Endpoints:
    GET  /api/v1/sse/subscribe/{client_id}  - open an event stream for a client
    POST /api/v1/sse/notify                 - send an event to a client or broadcast
    GET  /api/v1/sse/metrics                - connection metrics
    GET  /api/v1/sse/clients                - per-client connection details
    POST /api/v1/sse/generate-id            - mint a fresh client id

Event format (one frame per event):
    event: <name>\\n
    data: <json>\\n\\n

The first frames on every stream are an ``:ok`` comment followed by a
``__connected`` event; a ``__heartbeat`` event arrives every
``sse_heartbeat_interval`` seconds.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from app.config import settings
from app.exceptions import ClientIdRequiredError
from app.schemas.sse import ClientList, ConnectionMetrics, GeneratedClientId, NotifyRequest, NotifyResponse
from app.services.sse_manager import SSEManager, get_sse_manager

router = APIRouter(tags=["Server-Sent Events"])
logger = logging.getLogger(__name__)


@router.get("/subscribe/{client_id}")
async def subscribe(
    client_id: str,
    request: Request,
    name: str | None = Query(None, description="Display name shown in the client list"),
    manager: SSEManager = Depends(get_sse_manager),
) -> StreamingResponse:
    """
    Open a long-lived event stream for ``client_id``.

    A client may open several streams at once (one per tab); events sent to
    the client id reach all of them.

    **Client-side example** (JavaScript):
    ```javascript
    const evtSrc = new EventSource('/api/v1/sse/subscribe/client_123?name=Alice');
    evtSrc.addEventListener('notification', (e) => console.log(JSON.parse(e.data)));
    ```
    """
    stream = manager.create_stream(client_id, name)
    return StreamingResponse(
        stream.iter_frames(
            is_disconnected=request.is_disconnected,
            poll_interval=settings.sse_disconnect_poll_interval,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable Nginx buffering for SSE
        },
    )


@router.post("/notify", response_model=NotifyResponse, response_model_exclude_none=True)
async def notify(
    body: NotifyRequest,
    manager: SSEManager = Depends(get_sse_manager),
) -> NotifyResponse:
    """
    Send an event to one client, or to everyone when ``broadcast`` is true.

    Sending to a client that is not connected is not an error: the response
    reports ``sent: false``.
    """
    if body.broadcast:
        delivered = await manager.broadcast(body.event, body.payload)
        return NotifyResponse(
            broadcast=True,
            delivered=delivered,
            connections=manager.total_connections(),
        )

    if not body.client_id:
        raise ClientIdRequiredError()

    sent = await manager.send_event(body.client_id, body.event, body.payload)
    return NotifyResponse(
        sent=sent,
        client_id=body.client_id,
        connections=manager.total_connections(),
    )


@router.get("/metrics", response_model=ConnectionMetrics)
async def connection_metrics(manager: SSEManager = Depends(get_sse_manager)) -> ConnectionMetrics:
    """Aggregate connection counts."""
    return ConnectionMetrics(**manager.connection_metrics())


@router.get("/clients", response_model=ClientList)
async def list_clients(manager: SSEManager = Depends(get_sse_manager)) -> ClientList:
    """Connected clients, most recently connected first."""
    return ClientList(clients=manager.details())


@router.post("/generate-id", response_model=GeneratedClientId)
async def generate_id() -> GeneratedClientId:
    """Generate a fresh client id for a new subscriber."""
    return GeneratedClientId(client_id=SSEManager.generate_client_id())
