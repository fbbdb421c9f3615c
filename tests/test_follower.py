"""Tests for the follower's epoch ordering, echo handling and convergence."""
import asyncio
import itertools

import pytest

from client.connection import FollowerClient
from conftest import MemoryPlayer, wait_until
from shared.config import Config
from shared.player import ActionDispatcher, ChangeOrigin, PlaybackStateChange
from shared.protocol import FullState, Hello, PlaybackState, StateDelta
from shared.session import ConnectionSession, Role, SessionState

FILM = "https://example.org/film.mkv"
SHOW = "https://example.org/show.mkv"


def _state(epoch: int, **kw) -> PlaybackState:
    base = dict(media_ref=FILM, position=float(epoch), paused=False, rate=1.0, epoch=epoch)
    base.update(kw)
    return PlaybackState(**base)


def _attach(client: FollowerClient, clock) -> ConnectionSession:
    """Wire up a synced session and a running dispatcher without a network."""
    session = ConnectionSession(Role.FOLLOWER, client.config.sync, clock=clock)
    session.begin_handshake()
    session.complete_handshake(Hello(username="host"))
    client.session = session
    client.dispatcher = ActionDispatcher(
        client.player,
        retry_attempts=client.config.player.retry_attempts,
        retry_delay=client.config.player.retry_delay_s,
        on_failure=client._on_player_failure,
        on_applied=client._on_applied,
    )
    client.dispatcher.start()
    return session


@pytest.mark.parametrize("order", list(itertools.permutations([3, 5, 8, 9])))
def test_highest_epoch_wins_in_any_order(order, player, clock):
    client = FollowerClient(player, clock=clock)
    for epoch in order:
        client.accept_state(_state(epoch))
    assert client.applied_epoch == 9
    assert client.authoritative == _state(9)


def test_older_epoch_after_newer_is_dropped(player, clock):
    client = FollowerClient(player, clock=clock)
    assert client.accept_state(_state(7)) is True
    assert client.accept_state(_state(6)) is False
    assert client.accept_state(_state(7)) is False
    assert client.authoritative.epoch == 7


def test_adapter_changes_are_echoes(player, clock):
    client = FollowerClient(player, clock=clock)
    change = PlaybackStateChange(property="pause", value=True, origin=ChangeOrigin.ADAPTER)
    assert client.is_echo(change)


def test_player_changes_inside_remote_window_are_echoes(player, clock):
    client = FollowerClient(player, clock=clock)
    client._on_applied(())
    change = PlaybackStateChange(property="seek", value=None, origin=ChangeOrigin.PLAYER)
    assert client.is_echo(change)
    clock.advance(client.config.player.echo_ignore_window_s + 0.01)
    assert not client.is_echo(change)


@pytest.mark.asyncio
async def test_join_in_progress_applies_full_state(player, clock):
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    state = PlaybackState(SHOW, 300.0, False, 1.25, epoch=41)
    await client._dispatch(None, session, FullState(state))
    await client.dispatcher.join()
    assert player.state.media_ref == SHOW
    assert player.state.position == pytest.approx(300.0)
    assert player.state.paused is False
    assert player.state.rate == 1.25
    assert client.applied_epoch == 41
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_stale_delta_is_not_applied(player, clock):
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    await client._dispatch(None, session, StateDelta(_state(7, position=70.0)))
    await client.dispatcher.join()
    await client._dispatch(None, session, StateDelta(_state(6, position=10.0, paused=True)))
    await client.dispatcher.join()
    assert player.state.position == pytest.approx(70.0)
    assert player.state.paused is False
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_own_commands_are_not_reissued(player, clock):
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    await client._dispatch(None, session, StateDelta(_state(1, position=50.0)))
    await client.dispatcher.join()
    issued = list(player.calls)
    # the player reporting our seek back must not queue anything new
    assert client.dispatcher.pending == 0
    await client.dispatcher.join()
    assert player.calls == issued
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_local_user_change_snaps_back(player, clock):
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    await client._dispatch(None, session, StateDelta(_state(2, position=20.0)))
    await client.dispatcher.join()
    clock.advance(5)
    # the authority has moved on 5s; someone pauses the follower by hand
    player.user_change("pause", paused=True)
    await client.dispatcher.join()
    assert player.state.paused is False
    assert player.state.position == pytest.approx(25.0)
    assert client.applied_epoch == 2
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_accept_source_off_keeps_local_media(clock):
    player = MemoryPlayer(PlaybackState("mine.mkv", 0.0, True, 1.0))
    config = Config()
    config.client.accept_source = False
    client = FollowerClient(player, config=config, clock=clock)
    session = _attach(client, clock)
    await client._dispatch(None, session, FullState(_state(3, media_ref="theirs.mkv", position=30.0)))
    await client.dispatcher.join()
    assert player.state.media_ref == "mine.mkv"
    assert player.state.position == pytest.approx(30.0)
    assert player.state.paused is False
    await wait_until(lambda: player.notices)
    assert len(player.notices) == 1
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_unresponsive_player_degrades_session(player, clock):
    config = Config()
    config.player.retry_attempts = 1
    config.player.retry_delay_s = 0.001
    client = FollowerClient(player, config=config, clock=clock)
    session = _attach(client, clock)
    player.failures = 10
    await client._dispatch(None, session, StateDelta(_state(1)))
    await client.dispatcher.join()
    assert session.state == SessionState.DEGRADED
    assert session.correction_params() == (0.0, config.sync.degraded_drift_tolerance_s)
    await client.dispatcher.close()


async def _reconcile_repeatedly(client: FollowerClient, times: int = 20) -> None:
    for _ in range(times):
        client.schedule_reconcile()
        await client.dispatcher.join()


@pytest.mark.asyncio
async def test_local_path_is_never_loaded(player, clock):
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    await client._dispatch(None, session, FullState(_state(3, media_ref="/home/alice/film.mkv", position=30.0)))
    await client.dispatcher.join()
    await _reconcile_repeatedly(client)
    assert not [c for c in player.calls if c[0] == "load"]
    assert player.state.position == pytest.approx(30.0)
    assert player.state.paused is False
    await wait_until(lambda: player.notices)
    assert player.notices == ["media does not match the authority's media"]
    assert session.state == SessionState.SYNCED
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_same_file_under_another_path_is_followed_quietly(clock):
    player = MemoryPlayer(PlaybackState("/mnt/videos/film.mkv", 0.0, True, 1.0))
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    await client._dispatch(None, session, FullState(_state(3, media_ref="/home/alice/film.mkv", position=30.0)))
    await client.dispatcher.join()
    await asyncio.sleep(0.01)
    assert player.state.media_ref == "/mnt/videos/film.mkv"
    assert player.state.position == pytest.approx(30.0)
    assert player.notices == []
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_unloadable_stream_is_tried_once(player, clock):
    config = Config()
    config.player.retry_attempts = 3
    config.player.retry_delay_s = 0.001
    client = FollowerClient(player, config=config, clock=clock)
    session = _attach(client, clock)
    player.unloadable.add(FILM)
    await client._dispatch(None, session, FullState(_state(3, position=30.0)))
    await client.dispatcher.join()
    await _reconcile_repeatedly(client)
    assert player.calls.count(("load", FILM)) == 1
    # the player itself is healthy, only the file is missing
    assert session.state == SessionState.SYNCED
    assert player.state.position == pytest.approx(30.0)
    await client.dispatcher.close()


@pytest.mark.asyncio
async def test_new_media_is_tried_after_a_failed_load(player, clock):
    client = FollowerClient(player, clock=clock)
    session = _attach(client, clock)
    player.unloadable.add(FILM)
    await client._dispatch(None, session, FullState(_state(3)))
    await client.dispatcher.join()
    await client._dispatch(None, session, StateDelta(_state(4, media_ref=SHOW, position=8.0)))
    await client.dispatcher.join()
    assert player.state.media_ref == SHOW
    assert player.state.position == pytest.approx(8.0)

    # coming back to the first file gives it another chance
    player.unloadable.clear()
    await client._dispatch(None, session, StateDelta(_state(5, position=12.0)))
    await client.dispatcher.join()
    assert player.state.media_ref == FILM
    assert player.state.position == pytest.approx(12.0)
    assert player.calls.count(("load", FILM)) == 2
    await client.dispatcher.close()
