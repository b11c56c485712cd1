"""
Tests for the SSE heartbeat loop - scheduler registration and the
per-tick probe/eviction sweep.
"""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from app.services.sse_heartbeat import HEARTBEAT_JOB_ID, HeartbeatLoop
from utils.mocks import BlockingSink, FailingSink, FlakySink, RecordingSink, create_mock_scheduler


class TestHeartbeatScheduling:
    """start / stop against the shared APScheduler instance."""

    def test_not_running_initially(self, manager):
        assert manager.heartbeat.running is False

    def test_start_registers_interval_job(self, manager, mock_scheduler):
        assert manager.heartbeat.start() is True

        mock_scheduler.add_job.assert_called_once()
        call_kwargs = mock_scheduler.add_job.call_args.kwargs
        assert call_kwargs.get("id") == HEARTBEAT_JOB_ID
        assert call_kwargs.get("max_instances") == 1
        assert call_kwargs.get("replace_existing") is True
        assert isinstance(call_kwargs.get("trigger"), IntervalTrigger)
        assert call_kwargs["trigger"].interval.total_seconds() == 25

    def test_start_is_idempotent(self, manager, mock_scheduler):
        manager.heartbeat.start()
        assert manager.heartbeat.start() is False
        mock_scheduler.add_job.assert_called_once()

    def test_start_boots_stopped_scheduler(self):
        scheduler = create_mock_scheduler(running=False)
        loop = HeartbeatLoop(MagicMock(), scheduler, interval_seconds=5)

        loop.start()

        scheduler.start.assert_called_once()
        assert scheduler.add_job.call_args.kwargs["trigger"].interval.total_seconds() == 5

    def test_start_leaves_running_scheduler_alone(self, manager, mock_scheduler):
        manager.heartbeat.start()
        mock_scheduler.start.assert_not_called()

    def test_stop_removes_job(self, manager, mock_scheduler):
        manager.heartbeat.start()
        manager.heartbeat.stop()

        mock_scheduler.remove_job.assert_called_once_with(HEARTBEAT_JOB_ID)
        assert manager.heartbeat.running is False

    def test_stop_when_not_running_is_noop(self, manager, mock_scheduler):
        manager.heartbeat.stop()
        mock_scheduler.remove_job.assert_not_called()

    def test_stop_tolerates_missing_job(self, manager, mock_scheduler):
        mock_scheduler.remove_job.side_effect = JobLookupError(HEARTBEAT_JOB_ID)
        manager.heartbeat.start()

        manager.heartbeat.stop()

        assert manager.heartbeat.running is False

    def test_restart_after_stop(self, manager, mock_scheduler):
        manager.heartbeat.start()
        manager.heartbeat.stop()
        assert manager.heartbeat.start() is True
        assert mock_scheduler.add_job.call_count == 2


class TestHeartbeatTick:
    """One probe sweep over every connection."""

    @pytest.mark.asyncio
    async def test_tick_without_connections(self, manager):
        assert await manager.heartbeat.tick() == 0

    @pytest.mark.asyncio
    async def test_tick_sends_heartbeat_frame(self, manager):
        sink = RecordingSink()
        await manager.add("A", sink)

        assert await manager.heartbeat.tick() == 0

        [(event, payload)] = sink.events()
        assert event == "__heartbeat"
        assert set(payload) == {"ts"}
        assert isinstance(payload["ts"], int)
        assert sink.frames[0].startswith("event: __heartbeat\ndata: {")

    @pytest.mark.asyncio
    async def test_tick_updates_last_seen_for_survivors(self, manager):
        first = await manager.add("A", RecordingSink())
        second = await manager.add("B", RecordingSink())
        first.last_seen = second.last_seen = 1

        await manager.heartbeat.tick()

        assert first.last_seen > 1
        assert second.last_seen > 1

    @pytest.mark.asyncio
    async def test_tick_evicts_dead_connections_only(self, manager):
        healthy_a, dead_a, healthy_b = RecordingSink(), FailingSink(), RecordingSink()
        await manager.add("A", healthy_a)
        await manager.add("A", dead_a)
        await manager.add("B", healthy_b)

        assert await manager.heartbeat.tick() == 1

        assert dead_a.closed
        assert manager.total_connections() == 2
        assert len(healthy_a.frames) == 1
        assert len(healthy_b.frames) == 1

    @pytest.mark.asyncio
    async def test_tick_removes_client_whose_connections_all_died(self, manager):
        await manager.add("gone", FailingSink())
        await manager.add("gone", FailingSink())
        await manager.add("here", RecordingSink())

        assert await manager.heartbeat.tick() == 2
        assert manager.list_client_ids() == ["here"]

    @pytest.mark.asyncio
    async def test_tick_logs_summary_when_connections_die(self, manager, caplog):
        await manager.add("A", FailingSink())
        await manager.add("B", RecordingSink())
        caplog.set_level(logging.INFO, logger="app.services.sse_heartbeat")

        await manager.heartbeat.tick()

        [record] = [r for r in caplog.records if "heartbeat cleanup" in r.getMessage()]
        assert record.dead_connections == 1
        assert record.total_connections == 1

    @pytest.mark.asyncio
    async def test_tick_is_silent_when_all_alive(self, manager, caplog):
        await manager.add("A", RecordingSink())
        caplog.set_level(logging.INFO, logger="app.services.sse_heartbeat")

        await manager.heartbeat.tick()

        assert [r for r in caplog.records if "heartbeat cleanup" in r.getMessage()] == []

    @pytest.mark.asyncio
    async def test_connection_dying_between_ticks(self, manager):
        sink = FlakySink()
        await manager.add("A", sink)

        assert await manager.heartbeat.tick() == 0
        sink.fail = True
        assert await manager.heartbeat.tick() == 1
        assert not manager.has("A")
        assert await manager.heartbeat.tick() == 0

    @pytest.mark.asyncio
    async def test_blocked_sink_does_not_stall_later_ticks(self, manager):
        healthy, stuck = RecordingSink(), BlockingSink()
        await manager.add("A", healthy)
        stuck_connection = await manager.add("B", stuck)
        loop = HeartbeatLoop(manager, create_mock_scheduler(), interval_seconds=1, probe_wait=0.05)

        assert await asyncio.wait_for(loop.tick(), timeout=1) == 0
        assert stuck.started.is_set()
        assert stuck_connection.write_lock.locked()

        assert await asyncio.wait_for(loop.tick(), timeout=1) == 0

        assert [event for event, _ in healthy.events()] == ["__heartbeat", "__heartbeat"]
        assert manager.has("B")

        stuck.release.set()
        await asyncio.sleep(0.01)
        assert len(stuck.frames) == 1
        assert not stuck_connection.write_lock.locked()
