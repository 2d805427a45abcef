from __future__ import annotations

import pytest

from pyrite_sfu.errors import FileTransferError, TransportError
from pyrite_sfu.rtc.file_transfer import FileTransfer, TransferState, transfer_key
from pyrite_sfu.users import User

from .fakes import FakeDataChannel, settle
from .test_session import CANDIDATE, user_add


def ft_message(value: dict, source: str = "bob-id") -> dict:
    return {"type": "usermessage", "source": source, "username": "bob", "kind": "filetransfer", "value": value}


def ft_sent(sock, ftype: str) -> list:
    return [
        m["value"]
        for m in sock.of_type("usermessage")
        if m["kind"] == "filetransfer" and m["value"]["type"] == ftype
    ]


async def invited(session, sock, size: int = 10) -> FileTransfer:
    transfers = []
    session.on("filetransfer", transfers.append)
    sock.feed(ft_message({"type": "invite", "id": "f1", "name": "a.txt", "mimetype": "text/plain", "size": size}))
    await settle()
    assert len(transfers) == 1
    return transfers[0]


async def test_transition_table():
    f = FileTransfer(None, "u", "f", False, "bob", "a.txt", "text/plain", 1)
    with pytest.raises(FileTransferError):
        f._transition(TransferState.CONNECTING)

    f._transition(TransferState.INVITING)
    f._transition(TransferState.CONNECTING)
    f._transition(TransferState.CONNECTED)
    f._transition(TransferState.CONNECTED)
    f._transition(TransferState.DONE)
    with pytest.raises(FileTransferError):
        f._transition(TransferState.CANCELLED)
    f._transition(TransferState.CLOSED)
    with pytest.raises(FileTransferError):
        f._transition(TransferState.CLOSED)


def test_transfer_key_distinguishes_direction():
    assert transfer_key("u", "f", True) == "u+f"
    assert transfer_key("u", "f", False) == "u-f"


async def test_download_reassembles_exact_bytes(joined, sock, pcs):
    session = await joined()
    f = await invited(session, sock)
    assert f.state == TransferState.INVITING
    assert f.name == "a.txt" and f.size == 10 and f.username == "bob"
    assert session.get_transferred_file("bob-id", "f1", False) is f

    states = []
    f.on("state", lambda state, data: states.append((state, data)))
    await f.receive()
    assert ft_sent(sock, "offer") == [{"type": "offer", "sdp": "v=0 offer 1", "id": "f1"}]

    # sender's candidate arrives before its answer
    sock.feed(ft_message({"type": "upice", "id": "f1", "candidate": CANDIDATE}))
    await settle()
    assert pcs[0].added_candidates == []

    sock.feed(ft_message({"type": "answer", "id": "f1", "sdp": "v=0 answer"}))
    await settle()
    assert f.state == TransferState.CONNECTED
    assert len(pcs[0].added_candidates) == 1

    dc = pcs[0].channels[0]
    for chunk in (b"abcd", b"efgh", b"ij"):
        dc.emit("message", chunk)
    assert f.state == TransferState.DONE
    await settle()
    assert dc.sent == ["done"]

    dc.close()
    await settle()
    assert f.state == TransferState.CLOSED
    assert ("done", b"abcdefghij") in states
    assert [s for s, _ in states] == ["connecting", "connected", "connected", "connected", "done", "closed"]
    assert session.transferred_files == {}
    assert pcs[0].closed


async def test_download_size_mismatch_cancels(joined, sock, pcs):
    session = await joined()
    f = await invited(session, sock, size=5)
    await f.receive()
    sock.feed(ft_message({"type": "answer", "id": "f1", "sdp": "v=0 answer"}))
    await settle()

    pcs[0].channels[0].emit("message", b"abcdef")
    await settle()

    assert f.state == TransferState.CLOSED
    assert ft_sent(sock, "reject") == [{"type": "reject", "message": "unexpected file size", "id": "f1"}]


async def test_empty_file_completes_when_channel_opens(joined, sock, pcs):
    session = await joined()
    f = await invited(session, sock, size=0)
    results = []
    f.on("state", lambda state, data: results.append((state, data)))
    await f.receive()
    sock.feed(ft_message({"type": "answer", "id": "f1", "sdp": "v=0 answer"}))
    await settle()

    pcs[0].channels[0].emit("open")
    assert ("done", b"") in results
    pcs[0].channels[0].close()
    await settle()
    assert f.state == TransferState.CLOSED


async def test_invite_without_subscriber_is_rejected(joined, sock):
    session = await joined()
    sock.feed(ft_message({"type": "invite", "id": "f1", "name": "a.txt", "mimetype": "text/plain", "size": 3}))
    await settle()

    rejected = ft_sent(sock, "reject")
    assert len(rejected) == 1
    assert rejected[0]["id"] == "f1"
    assert session.transferred_files == {}


async def test_invite_subscriber_error_rejects(joined, sock):
    session = await joined()

    def refuse(f):
        raise RuntimeError("disk full")

    session.on("filetransfer", refuse)
    sock.feed(ft_message({"type": "invite", "id": "f1", "name": "a.txt", "mimetype": "text/plain", "size": 3}))
    await settle()

    assert ft_sent(sock, "reject") == [{"type": "reject", "message": "disk full", "id": "f1"}]
    assert session.transferred_files == {}


async def send_setup(session, sock, tmp_path) -> FileTransfer:
    path = tmp_path / "a.txt"
    path.write_bytes(b"0123456789")
    sock.feed(user_add("bob-id", "bob"))
    await settle()
    f = await session.send_file("bob-id", str(path))
    assert ft_sent(sock, "invite") == [
        {"type": "invite", "id": f.id, "name": "a.txt", "mimetype": "text/plain", "size": 10}
    ]
    assert f.state == TransferState.INVITING

    sock.feed(ft_message({"type": "offer", "id": f.id, "sdp": "v=0 remote"}))
    await settle()
    assert ft_sent(sock, "answer") == [{"type": "answer", "sdp": "v=0 answer", "id": f.id}]
    assert f.state == TransferState.CONNECTED
    return f


async def test_upload_sends_chunks(joined, sock, pcs, tmp_path):
    session = await joined()
    f = await send_setup(session, sock, tmp_path)

    dc = FakeDataChannel()
    pcs[0].emit("datachannel", dc)
    await settle()
    assert dc.sent == [b"0123", b"4567", b"89"]
    assert f.state == TransferState.CONNECTED

    dc.emit("message", "done")
    await settle()
    assert f.state == TransferState.CLOSED
    assert session.transferred_files == {}


async def test_upload_waits_for_buffer_to_drain(joined, sock, pcs, tmp_path):
    session = await joined()
    await send_setup(session, sock, tmp_path)

    dc = FakeDataChannel()
    dc.bufferedAmount = 100
    pcs[0].emit("datachannel", dc)
    await settle()
    assert dc.sent == []
    assert dc.bufferedAmountLowThreshold == 8

    dc.bufferedAmount = 0
    dc.emit("bufferedamountlow")
    await settle()
    assert dc.sent == [b"0123", b"4567", b"89"]


async def test_receiver_reject_fails_upload(joined, sock, tmp_path):
    session = await joined()
    f = await send_setup(session, sock, tmp_path)
    reasons = []
    f.on("state", lambda state, data: reasons.append((state, data)))

    sock.feed(ft_message({"type": "reject", "id": f.id, "message": "no thanks"}))
    await settle()

    assert ("cancelled", "no thanks") in reasons
    assert f.state == TransferState.CLOSED
    assert ft_sent(sock, "cancel") == []


async def test_user_leaving_fails_transfers(joined, sock, tmp_path):
    session = await joined()
    f = await send_setup(session, sock, tmp_path)
    sock.feed({"type": "user", "kind": "delete", "id": "bob-id"})
    await settle()
    assert f.state == TransferState.CLOSED
    assert session.transferred_files == {}


async def test_cancel_notifies_peer(joined, sock, tmp_path):
    session = await joined()
    f = await send_setup(session, sock, tmp_path)
    await f.cancel("changed my mind")
    assert ft_sent(sock, "cancel") == [{"type": "cancel", "message": "changed my mind", "id": f.id}]
    assert f.state == TransferState.CLOSED


async def test_invite_that_cannot_be_sent_is_not_registered(joined, sock, tmp_path):
    session = await joined()
    path = tmp_path / "a.txt"
    path.write_bytes(b"0123456789")
    await session.close()
    session.users["bob-id"] = User(id="bob-id", username="bob")

    states = []
    session.on("filetransfer", lambda f: f.on("state", lambda state, data: states.append(state)))
    with pytest.raises(TransportError):
        await session.send_file("bob-id", str(path))

    assert states == ["cancelled", "closed"]
    assert session.transferred_files == {}
    assert ft_sent(sock, "invite") == []
