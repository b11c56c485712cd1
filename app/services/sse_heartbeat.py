"""
SSE Heartbeat

Recurring liveness probe for every open event-stream connection.  Runs as a
recurring APScheduler job on the application's shared AsyncIOScheduler; each
tick writes a ``__heartbeat`` frame to every connection, refreshing
``last_seen`` on success and evicting the connection when the write fails.
A probe write that has not finished by the end of the tick keeps running in
the background; that connection is skipped until the write settles.

The loop is started lazily by SSEManager on the first connection and stays
running for the life of the process.  ``start`` is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from app.utils.sse_format import HEARTBEAT_EVENT, format_event, now_ms

if TYPE_CHECKING:
    from app.services.sse_manager import SSEManager

logger = logging.getLogger(__name__)

HEARTBEAT_JOB_ID = "sse_heartbeat"


class HeartbeatLoop:
    """Periodic probe that keeps streams open and reaps dead connections."""

    def __init__(
        self,
        manager: SSEManager,
        scheduler,
        interval_seconds: int = 25,
        probe_wait: float | None = None,
    ) -> None:
        self._manager = manager
        self._scheduler = scheduler
        self._interval_seconds = interval_seconds
        # Longest one tick waits for its probe writes
        self._probe_wait = probe_wait if probe_wait is not None else interval_seconds
        self._pending_probes: set[asyncio.Future] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    def start(self) -> bool:
        """
        Register the heartbeat job with the scheduler.

        Returns:
            True if this call started the loop, False if it was already running.
        """
        if self._running:
            return False

        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=HEARTBEAT_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()

        self._running = True
        logger.info("sse_heartbeat: installed (interval=%ds)", self._interval_seconds)
        return True

    def stop(self) -> None:
        """Unregister the heartbeat job."""
        if not self._running:
            return
        try:
            self._scheduler.remove_job(HEARTBEAT_JOB_ID)
        except JobLookupError:
            pass  # Scheduler already shut down
        self._running = False
        logger.info("sse_heartbeat: stopped")

    async def tick(self) -> int:
        """Probe every connection once.

        Waits at most ``probe_wait`` seconds for the probe writes.  Writes
        still pending after that keep running in the background, and their
        connections are skipped by later ticks until the write settles.

        Returns:
            Number of connections evicted because their probe write failed.
        """
        # A connection with a write in flight is not probed again.
        connections = [c for c in self._manager.snapshot() if not c.write_lock.locked()]
        if not connections:
            return 0

        frame = format_event(HEARTBEAT_EVENT, {"ts": now_ms()})
        probes = [
            asyncio.ensure_future(self._manager.deliver([connection], frame, scope="heartbeat"))
            for connection in connections
        ]
        done, pending = await asyncio.wait(probes, timeout=self._probe_wait)
        for probe in pending:
            self._pending_probes.add(probe)
            probe.add_done_callback(self._pending_probes.discard)

        if pending:
            logger.debug("SSE heartbeat: %d probe write(s) still pending", len(pending))

        dead_connections = sum(probe.result().count(False) for probe in done)
        if dead_connections:
            active = self._manager.total_connections()
            logger.info(
                "SSE heartbeat cleanup: %d dead connection(s), %d active",
                dead_connections,
                active,
                extra={"dead_connections": dead_connections, "total_connections": active},
            )
        return dead_connections
