from __future__ import annotations

import json
import logging

import pytest
import websockets

from pyrite_sfu.config import ClientConfig
from pyrite_sfu.errors import TransportError
from pyrite_sfu.net import protocol
from pyrite_sfu.net.signaling_channel import SignalingCallbacks, SignalingChannel
from pyrite_sfu.session import Session

from .fakes import FakePeerConnection, FakeSocket, settle


def make_channel(sock: FakeSocket, callbacks=None) -> SignalingChannel:
    async def connect_fn(url):
        return sock

    return SignalingChannel("ws://sfu.test/ws", "me", callbacks, connect_fn=connect_fn)


async def test_handshake_is_first_message(sock):
    connected = []

    async def on_connected():
        connected.append(True)

    channel = make_channel(sock, SignalingCallbacks(on_connected=on_connected))
    await channel.connect()

    assert sock.sent[0] == {"type": "handshake", "version": ["2"], "id": "me"}
    assert connected == [True]
    assert channel.is_open
    await channel.close()


async def test_ping_gets_pong(sock):
    channel = make_channel(sock)
    await channel.connect()
    sock.feed({"type": "ping"})
    await settle()
    assert sock.of_type("pong") == [{"type": "pong"}]
    await channel.close()


async def test_unknown_type_is_dropped(sock, caplog):
    channel = make_channel(sock)
    seen = []

    async def on_chat(msg):
        seen.append(msg)

    channel.set_handler("chat", on_chat)
    await channel.connect()
    caplog.set_level(logging.WARNING)
    sock.feed({"type": "bogus"})
    sock.feed_raw("{not json")
    sock.feed({"type": "chat", "value": "hi"})
    await settle()

    assert [m["value"] for m in seen] == ["hi"]
    assert "unexpected message type=bogus" in caplog.text
    assert "invalid json" in caplog.text
    await channel.close()


async def test_handler_error_does_not_stop_loop(sock):
    channel = make_channel(sock)
    seen = []

    async def on_chat(msg):
        if msg["value"] == "boom":
            raise RuntimeError("boom")
        seen.append(msg["value"])

    channel.set_handler("chat", on_chat)
    await channel.connect()
    sock.feed({"type": "chat", "value": "boom"})
    sock.feed({"type": "chat", "value": "after"})
    await settle()
    assert seen == ["after"]
    await channel.close()


async def test_set_handler_rejects_client_types(sock):
    channel = make_channel(sock)
    with pytest.raises(ValueError):
        channel.set_handler("join", lambda msg: None)


async def test_send_before_connect_raises(sock):
    channel = make_channel(sock)
    with pytest.raises(TransportError):
        await channel.send({"type": "chat"})


async def test_connect_failure_is_transport_error():
    async def connect_fn(url):
        raise OSError("connection refused")

    channel = SignalingChannel("ws://sfu.test/ws", "me", connect_fn=connect_fn)
    with pytest.raises(TransportError):
        await channel.connect()
    assert not channel.is_open


async def test_close_notifies_once(sock):
    closed = []

    async def on_close(code, reason):
        closed.append((code, reason))

    channel = make_channel(sock, SignalingCallbacks(on_close=on_close))
    await channel.connect()
    await channel.close("bye")
    await channel.close("again")

    assert closed == [(1000, "bye")]
    assert not channel.is_open


async def test_server_close_is_reported(sock):
    closed = []

    async def on_close(code, reason):
        closed.append((code, reason))

    channel = make_channel(sock, SignalingCallbacks(on_close=on_close))
    await channel.connect()
    await sock.close(1001, "going away")
    await settle()
    assert closed == [(1001, "going away")]


async def test_join_merges_credentials(sock):
    channel = make_channel(sock)
    await channel.connect()
    await channel.join("lobby", "alice", {"type": "token", "token": "t0k"}, {"mood": "ok"})
    assert sock.of_type("join") == [
        {
            "type": "join",
            "kind": "join",
            "group": "lobby",
            "username": "alice",
            "data": {"mood": "ok"},
            "token": "t0k",
        }
    ]
    await channel.close()


def test_groupaction_has_no_dest():
    msg = protocol.make_addressed(protocol.GROUPACTION, kind="lock", source="me", username="alice", dest="x", value="m")
    assert "dest" not in msg
    msg = protocol.make_addressed(protocol.CHAT, kind="", source="me", username="alice", dest="x", value="m")
    assert msg["dest"] == "x"


async def test_join_against_websocket_server(config):
    received = []

    async def handler(ws):
        async for raw in ws:
            msg = json.loads(raw)
            received.append(msg)
            if msg["type"] == "join":
                await ws.send(
                    json.dumps(
                        {
                            "type": "joined",
                            "kind": "join",
                            "group": msg["group"],
                            "username": msg["username"],
                            "permissions": ["present"],
                            "value": "hello",
                        }
                    )
                )

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        session = Session(config, pc_factory=FakePeerConnection)
        closed = []
        session.on("close", lambda code, reason: closed.append(code))

        await session.connect(f"ws://127.0.0.1:{port}/ws")
        message = await session.join("lobby", "alice", "secret")

        assert message == "hello"
        assert session.ready
        assert session.permissions == {"present"}
        await session.close()

    assert [m["type"] for m in received[:2]] == ["handshake", "join"]
    assert received[1]["password"] == "secret"
    assert closed == [1000]
