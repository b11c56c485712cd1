"""
SSE (Server-Sent Events) Manager

Tracks open event-stream connections keyed by client id and pushes named
events with JSON payloads to one client or to every connected client.  A
client may hold several connections at once (one per browser tab); each
connection exclusively owns the sink its frames are written into.

A failed write is the only liveness signal: the connection is evicted and
delivery to every other connection carries on.  Connections whose client
vanished without a clean close are reaped by the heartbeat loop.

Classes:
    EventSink   - protocol for the write side of one stream
    QueueSink   - bounded asyncio.Queue sink read by the HTTP response
    Connection  - one open stream bound to a client id
    SSEStream   - frame generator handed to a StreamingResponse
    SSEManager  - registry, dispatch and introspection

Module-level singleton:
    sse_manager         - shared instance
    get_sse_manager()   - getter (dependency-injection friendly)
"""

import asyncio
import logging
import secrets
import string
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.config import settings
from app.exceptions import SinkClosedError, SinkFullError
from app.scheduler import scheduler as default_scheduler
from app.services.sse_heartbeat import HeartbeatLoop
from app.utils.metrics import record_frames_sent, record_write_failure, update_connection_gauges
from app.utils.sse_format import CONNECTED_EVENT, format_comment, format_event, now_ms

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


class EventSink(Protocol):
    """Write side of one physical event stream."""

    async def send(self, chunk: bytes) -> None: ...

    def close(self) -> None: ...


class QueueSink:
    """
    Sink backed by a bounded asyncio.Queue.

    The dispatcher puts frames in and the HTTP response generator takes them
    out.  A full queue means the reader has stalled; that is reported as a
    write failure so the connection is evicted instead of buffering forever.
    """

    def __init__(self, max_queue_size: int = 100, client_id: str | None = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._client_id = client_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, chunk: bytes) -> None:
        if self._closed:
            raise SinkClosedError(self._client_id)
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            raise SinkFullError(self._client_id) from None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Undelivered frames are dropped; the None sentinel wakes the reader.
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def receive(self, timeout: float | None = None) -> bytes | None:
        """Wait for the next frame.

        Returns None once the sink has been closed.  Raises
        ``asyncio.TimeoutError`` if ``timeout`` elapses first.
        """
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)


@dataclass(eq=False)
class Connection:
    """One open event stream.  Hashes by identity."""

    client_id: str
    sink: EventSink
    name: str | None = None
    connected_at: int = field(default_factory=now_ms)
    last_seen: int = 0
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        if not self.last_seen:
            self.last_seen = self.connected_at


class SSEStream:
    """
    Frame source for one HTTP event-stream response.

    Iterating ``iter_frames`` registers the connection, emits the ``:ok``
    comment and the ``__connected`` event, then relays every frame written
    to the sink.  When the generator is closed or cancelled, this connection
    (and only this one) is removed from the registry.
    """

    def __init__(self, manager: "SSEManager", client_id: str, name: str | None = None, max_queue_size: int = 100):
        self.manager = manager
        self.client_id = client_id
        self.name = name
        self.sink = QueueSink(max_queue_size=max_queue_size, client_id=client_id)

    async def iter_frames(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        poll_interval: float = 15.0,
    ) -> AsyncIterator[bytes]:
        connection = await self.manager.add(self.client_id, self.sink, self.name)
        try:
            hello = format_comment("ok") + format_event(
                CONNECTED_EVENT,
                {"message": "connected", "ts": now_ms(), "clientId": self.client_id, "name": self.name},
            )
            await self.manager.deliver([connection], hello, scope="connected")

            while True:
                if is_disconnected is not None and await is_disconnected():
                    logger.debug("SSE client disconnected", extra={"client_id": self.client_id})
                    break

                try:
                    chunk = await self.sink.receive(timeout=poll_interval if is_disconnected else None)
                except asyncio.TimeoutError:
                    continue

                if chunk is None:
                    break
                yield chunk
        finally:
            await asyncio.shield(self.manager.remove(self.client_id, self.sink))


class SSEManager:
    """
    Registry of event-stream connections keyed by client id.

    Mutations (``add``/``remove``) are serialised by one asyncio.Lock.  Read
    helpers contain no await points, so they see a consistent registry
    without taking the lock.  Dispatch snapshots its targets first and never
    writes while holding the lock.
    """

    def __init__(
        self,
        heartbeat_interval: int = 25,
        scheduler=None,
        max_queue_size: int = 100,
    ) -> None:
        # client id -> {id(sink): Connection}; a key never maps to an empty dict
        self._clients: dict[str, dict[int, Connection]] = {}
        self._lock = asyncio.Lock()
        self._max_queue_size = max_queue_size
        self.heartbeat = HeartbeatLoop(
            self,
            scheduler if scheduler is not None else default_scheduler,
            interval_seconds=heartbeat_interval,
        )

    # ── Registry ──────────────────────────────────────────────────────────────

    async def add(self, client_id: str, sink: EventSink, name: str | None = None) -> Connection:
        """Register a new connection for ``client_id`` and return its record."""
        async with self._lock:
            connections = self._clients.setdefault(client_id, {})
            existing = connections.get(id(sink))
            if existing is not None:
                logger.debug("SSE sink already registered for client %s", client_id)
                return existing

            now = now_ms()
            connection = Connection(client_id=client_id, sink=sink, name=name, connected_at=now, last_seen=now)
            connections[id(sink)] = connection
            total_connections = self.total_connections()
            total_clients = len(self._clients)

        self.heartbeat.start()
        update_connection_gauges(total_connections, total_clients)
        logger.info(
            "SSE client connected: %s",
            client_id,
            extra={
                "client_id": client_id,
                "client_name": name,
                "total_connections": total_connections,
                "total_clients": total_clients,
            },
        )
        return connection

    async def remove(self, client_id: str, sink: EventSink | None = None) -> None:
        """
        Remove connections for ``client_id`` and close their sinks.

        Args:
            client_id: Client whose connections are removed
            sink: Remove only the connection owning this sink; when omitted
                  every connection of the client is removed
        """
        async with self._lock:
            connections = self._clients.get(client_id)
            if connections is None:
                return

            if sink is None:
                removed = list(connections.values())
                del self._clients[client_id]
            else:
                connection = connections.get(id(sink))
                if connection is None or connection.sink is not sink:
                    return
                del connections[id(sink)]
                removed = [connection]
                if not connections:
                    del self._clients[client_id]

            client_gone = client_id not in self._clients
            total_connections = self.total_connections()
            total_clients = len(self._clients)

        for connection in removed:
            self._close_sink(connection)

        update_connection_gauges(total_connections, total_clients)
        extra = {"client_id": client_id, "total_connections": total_connections}
        if sink is None:
            logger.info(
                "SSE client disconnected (all connections): %s, %d closed",
                client_id,
                len(removed),
                extra=extra,
            )
        elif client_gone:
            logger.info("SSE client disconnected (last connection): %s", client_id, extra=extra)
        else:
            logger.debug("SSE connection closed for client %s", client_id, extra=extra)

    def has(self, client_id: str) -> bool:
        """Return True if the client holds at least one connection."""
        return bool(self._clients.get(client_id))

    def list_client_ids(self) -> list[str]:
        """Return the ids of every connected client."""
        return list(self._clients)

    def snapshot(self) -> list[Connection]:
        """Return a copy of every registered connection."""
        return [connection for connections in list(self._clients.values()) for connection in list(connections.values())]

    def details(self) -> list[dict[str, Any]]:
        """
        Describe every connected client, most recently connected first.

        ``name`` and ``connected_at`` come from the client's earliest
        surviving connection; ``last_seen`` is the freshest across all of
        them.
        """
        details = []
        for client_id, connections in list(self._clients.items()):
            members = list(connections.values())
            if not members:
                continue
            first = members[0]
            details.append(
                {
                    "id": client_id,
                    "name": first.name,
                    "connection_count": len(members),
                    "connected_at": first.connected_at,
                    "last_seen": max(c.last_seen for c in members),
                }
            )
        details.sort(key=lambda d: d["connected_at"], reverse=True)
        return details

    # ── Dispatch ──────────────────────────────────────────────────────────────

    async def send_event(self, client_id: str, event: str, payload: Any) -> bool:
        """
        Send a named event to every connection of one client.

        Returns:
            True if at least one connection received the frame
        """
        connections = list(self._clients.get(client_id, {}).values())
        if not connections:
            logger.warning(
                "SSE send_event failed - no connections for client %s, event %s",
                client_id,
                event,
                extra={"client_id": client_id, "event": event},
            )
            return False

        frame = self._build_frame(event, payload)
        if frame is None:
            return False

        results = await self.deliver(connections, frame, scope="unicast")
        sent = results.count(True)
        logger.info(
            "SSE event sent to client %s, event %s, sent %d/%d connections",
            client_id,
            event,
            sent,
            len(connections),
            extra={"client_id": client_id, "event": event, "delivered": sent, "attempted": len(connections)},
        )
        return sent > 0

    async def broadcast(self, event: str, payload: Any) -> int:
        """
        Send a named event to every connection of every client.

        Returns:
            Number of connections that received the frame
        """
        frame = self._build_frame(event, payload)
        if frame is None:
            return 0

        total_clients = len(self._clients)
        targets = self.snapshot()
        results = await self.deliver(targets, frame, scope="broadcast")
        delivered = results.count(True)
        logger.info(
            "SSE broadcast sent: event %s, sent %d to %d clients, total connections: %d",
            event,
            delivered,
            total_clients,
            self.total_connections(),
            extra={"event": event, "delivered": delivered, "attempted": len(targets)},
        )
        return delivered

    async def deliver(self, connections: Iterable[Connection], frame: bytes, scope: str) -> list[bool]:
        """
        Write one frame to each connection concurrently.

        A failing write evicts only its own connection.  Returns one success
        flag per connection, in order.
        """
        results = list(await asyncio.gather(*(self._write(connection, frame, scope) for connection in connections)))
        record_frames_sent(scope, results.count(True))
        return results

    # ── Metrics ───────────────────────────────────────────────────────────────

    def total_connections(self) -> int:
        """Return the number of open connections across all clients."""
        return sum(len(connections) for connections in self._clients.values())

    def connection_metrics(self) -> dict[str, Any]:
        """Return aggregate connection statistics."""
        total_connections = self.total_connections()
        total_clients = len(self._clients)
        average = total_connections / total_clients if total_clients else 0
        return {
            "total_connections": total_connections,
            "total_clients": total_clients,
            "average_connections_per_client": round(average, 2),
        }

    # ── Streams ───────────────────────────────────────────────────────────────

    def create_stream(self, client_id: str, name: str | None = None) -> SSEStream:
        """Create the frame source for a new HTTP event-stream response."""
        return SSEStream(self, client_id, name=name, max_queue_size=self._max_queue_size)

    @staticmethod
    def generate_client_id() -> str:
        """Return a fresh client id: ``client_<epoch ms>_<9 random chars>``."""
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        return f"client_{now_ms()}_{suffix}"

    # ── Private Methods ───────────────────────────────────────────────────────

    async def _write(self, connection: Connection, frame: bytes, scope: str) -> bool:
        try:
            async with connection.write_lock:
                await connection.sink.send(frame)
        except Exception as exc:
            logger.debug(
                "SSE write failed for client %s, evicting connection: %s",
                connection.client_id,
                exc,
                extra={"client_id": connection.client_id, "scope": scope},
            )
            record_write_failure(scope)
            await self.remove(connection.client_id, connection.sink)
            return False

        connection.last_seen = now_ms()
        return True

    @staticmethod
    def _build_frame(event: str, payload: Any) -> bytes | None:
        try:
            return format_event(event, payload)
        except (TypeError, ValueError) as exc:
            logger.error("SSE payload for event %s is not serializable: %s", event, exc, extra={"event": event})
            return None

    @staticmethod
    def _close_sink(connection: Connection) -> None:
        try:
            connection.sink.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing SSE sink for client %s: %s", connection.client_id, exc)


# ── Module-level singleton ────────────────────────────────────────────────────

sse_manager = SSEManager(
    heartbeat_interval=settings.sse_heartbeat_interval,
    max_queue_size=settings.sse_queue_size,
)


def get_sse_manager() -> SSEManager:
    """Return the global SSEManager singleton."""
    return sse_manager


# ── Convenience helpers ───────────────────────────────────────────────────────


def create_sse_stream(client_id: str, name: str | None = None) -> SSEStream:
    """Create an event stream for ``client_id`` on the shared manager."""
    return sse_manager.create_stream(client_id, name)


async def send_event(client_id: str, event: str, payload: Any) -> bool:
    """Send a named event to every connection of one client."""
    return await sse_manager.send_event(client_id, event, payload)


async def broadcast(event: str, payload: Any) -> int:
    """Broadcast a named event to every connected client."""
    return await sse_manager.broadcast(event, payload)


def total_connections() -> int:
    return sse_manager.total_connections()


def get_connection_metrics() -> dict[str, Any]:
    return sse_manager.connection_metrics()


def get_connected_clients() -> list[str]:
    return sse_manager.list_client_ids()


def has_client_connections(client_id: str) -> bool:
    return sse_manager.has(client_id)


def get_client_details() -> list[dict[str, Any]]:
    return sse_manager.details()


def generate_client_id() -> str:
    return SSEManager.generate_client_id()
