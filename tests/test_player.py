"""Tests for the action dispatcher and action execution."""
import pytest

from shared.config import SyncSettings
from shared.errors import MediaLoadFailed
from shared.player import ActionDispatcher, execute_action
from shared.protocol import Hello, PlaybackState
from shared.reconcile import NOOP, LoadMedia, Seek, SetPaused, SetRate
from shared.session import ConnectionSession, Role, SessionState


def _const(action):
    return lambda local: action


@pytest.mark.asyncio
async def test_execute_action_in_order(player):
    await execute_action(player, (LoadMedia("a.mkv"), SetPaused(False), SetRate(1.5), Seek(12.0)))
    assert player.calls == [("load", "a.mkv"), ("set_paused", False), ("set_rate", 1.5), ("seek", 12.0)]
    assert player.state == PlaybackState("a.mkv", 12.0, False, 1.5)


@pytest.mark.asyncio
async def test_execute_action_clamps_negative_seek(player):
    await execute_action(player, (Seek(-0.4),))
    assert player.calls == [("seek", 0.0)]


@pytest.mark.asyncio
async def test_full_queue_drops_oldest(player):
    d = ActionDispatcher(player, maxsize=2)
    d.submit(_const((Seek(1.0),)))
    d.submit(_const((Seek(2.0),)))
    d.submit(_const((Seek(3.0),)))
    assert d.pending == 2
    assert d.dropped == 1
    d.start()
    await d.join()
    assert player.calls == [("seek", 2.0), ("seek", 3.0)]
    await d.close()


@pytest.mark.asyncio
async def test_plan_sees_current_local_state(player):
    seen = []

    def plan(local):
        seen.append(local.position)
        return NOOP

    d = ActionDispatcher(player)
    d.submit(plan)
    player.state = PlaybackState("a.mkv", 33.0, True, 1.0)
    d.start()
    await d.join()
    assert seen == [33.0]
    assert player.calls == []
    await d.close()


@pytest.mark.asyncio
async def test_retry_then_success(player):
    applied = []
    d = ActionDispatcher(player, retry_attempts=3, retry_delay=0.001, on_applied=applied.append)
    player.failures = 2
    d.submit(_const((SetPaused(False),)))
    d.start()
    await d.join()
    assert player.calls == [("set_paused", False)]
    assert applied == [(SetPaused(False),)]
    await d.close()


@pytest.mark.asyncio
async def test_exhausted_retries_report_failure(player, clock):
    session = ConnectionSession(Role.FOLLOWER, SyncSettings(), clock=clock)
    session.begin_handshake()
    session.complete_handshake(Hello())
    failures = []

    def on_failure(e):
        failures.append(e)
        session.mark_degraded(str(e))

    d = ActionDispatcher(player, retry_attempts=2, retry_delay=0.001, on_failure=on_failure)
    player.failures = 100
    d.submit(_const((Seek(5.0),)))
    d.start()
    await d.join()
    assert len(failures) == 1
    assert player.calls == []
    assert session.state == SessionState.DEGRADED
    await d.close()


@pytest.mark.asyncio
async def test_closed_dispatcher_refuses_work(player):
    d = ActionDispatcher(player)
    d.start()
    await d.close()
    assert d.closed
    assert d.submit(_const((Seek(1.0),))) is False
    assert d.pending == 0


@pytest.mark.asyncio
async def test_failed_load_is_not_retried(player):
    failures = []
    d = ActionDispatcher(player, retry_attempts=5, retry_delay=0.001, on_failure=failures.append)
    player.unloadable.add("https://example.org/gone.mkv")
    d.submit(_const((LoadMedia("https://example.org/gone.mkv"), Seek(3.0))))
    d.start()
    await d.join()
    assert player.calls == [("load", "https://example.org/gone.mkv")]
    assert len(failures) == 1
    assert isinstance(failures[0], MediaLoadFailed)
    assert failures[0].media_ref == "https://example.org/gone.mkv"
    await d.close()
