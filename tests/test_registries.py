import json

import pytest
from fastapi import WebSocketDisconnect

from core.broadcast import Broadcaster
from core.connection_registry import Connection, ConnectionRegistry
from core.exceptions import AlreadyCashedOut, PlayerAlreadyRegistered
from core.player_registry import Player, PlayerRegistry
from conftest import FakeWebSocket, drain, frame_types


def make_player(connection_id="c1", bet=100):
    return Player(connection_id=connection_id, user_id=1, display_name="alice", bet=bet)


def test_player_wire_format_omits_unset_cashout():
    player = make_player()
    assert player.to_wire() == {"userId": 1, "discordName": "alice", "bet": 100}

    player.cashed_out_at = 1.8
    assert player.to_wire()["cashedOutAt"] == 1.8


def test_one_player_per_connection():
    registry = PlayerRegistry()
    registry.add(make_player())
    with pytest.raises(PlayerAlreadyRegistered):
        registry.add(make_player(bet=5))
    assert len(registry) == 1
    assert registry.get("c1").bet == 100


def test_lock_in_is_immutable():
    registry = PlayerRegistry()
    registry.add(make_player())
    registry.lock_in("c1", 1.5)
    with pytest.raises(AlreadyCashedOut):
        registry.lock_in("c1", 3.0)
    assert registry.get("c1").cashed_out_at == 1.5


def test_remove_and_clear():
    registry = PlayerRegistry()
    registry.add(make_player("c1"))
    registry.add(make_player("c2"))
    assert registry.remove("c1").connection_id == "c1"
    assert registry.remove("c1") is None
    registry.clear()
    assert len(registry) == 0
    assert registry.to_wire() == []


def test_connection_authenticates_once():
    connection = Connection(FakeWebSocket())
    assert not connection.is_authenticated
    assert connection.authenticate(1, "alice")
    assert not connection.authenticate(2, "mallory")
    assert (connection.user_id, connection.display_name) == (1, "alice")


def test_full_outbox_drops_frames():
    connection = Connection(FakeWebSocket(), outbox_size=2)
    assert connection.send({"type": "a"})
    assert connection.send({"type": "b"})
    assert not connection.send({"type": "c"})
    assert frame_types(drain(connection)) == ["a", "b"]


def test_closed_outbox_drops_frames():
    connection = Connection(FakeWebSocket())
    connection.close_outbox()
    assert not connection.send({"type": "a"})


def test_sweep_reports_only_closed_sockets():
    registry = ConnectionRegistry()
    quiet = registry.add(Connection(FakeWebSocket()))
    dropped = registry.add(Connection(FakeWebSocket()))

    assert registry.sweep() == []
    assert quiet.is_connected

    dropped.websocket.drop()
    assert not dropped.is_connected
    assert registry.sweep() == [dropped]
    assert dropped.id in registry
    assert drain(quiet) == []


def test_broadcast_is_not_blocked_by_a_full_outbox():
    registry = ConnectionRegistry()
    slow = registry.add(Connection(FakeWebSocket(), outbox_size=1))
    fast = registry.add(Connection(FakeWebSocket()))
    broadcaster = Broadcaster(registry)

    assert broadcaster.publish({"type": "one"}) == 2
    assert broadcaster.publish({"type": "two"}) == 1
    assert frame_types(drain(fast)) == ["one", "two"]
    assert frame_types(drain(slow)) == ["one"]


@pytest.mark.anyio
async def test_pump_writes_frames_until_outbox_closes():
    websocket = FakeWebSocket()
    connection = Connection(websocket)
    connection.send({"type": "a"})
    connection.send({"type": "b"})
    connection.close_outbox()

    await connection.pump()
    assert [json.loads(text)["type"] for text in websocket.sent] == ["a", "b"]


@pytest.mark.anyio
async def test_terminate_closes_socket():
    websocket = FakeWebSocket()
    connection = Connection(websocket)
    await connection.terminate()
    assert websocket.closed_with == 1001
    assert not connection.send({"type": "a"})


@pytest.mark.anyio
@pytest.mark.parametrize("error", [WebSocketDisconnect(code=1006), OSError("broken pipe")])
async def test_terminate_tolerates_a_dead_transport(error):
    class DeadWebSocket(FakeWebSocket):
        async def close(self, code=1000):
            raise error

    connection = Connection(DeadWebSocket())
    await connection.terminate()
    assert not connection.send({"type": "a"})
