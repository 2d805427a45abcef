"""Peer-to-peer file transfer over a dedicated data channel.

The handshake rides on `usermessage` messages of kind `filetransfer`;
the payload flows over a WebRTC data channel between the two clients.
The receiver offers, the sender answers:

    sender                         receiver
    invite  ------------------->   (application accepts)
            <-------------------   offer
    answer  ------------------->
    data chunks ============== >   reassemble
            <==================    "done"

Every state change goes through `_transition`, which enforces the legal
transition table and emits `state(state, data)`.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import mimetypes
import os
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional

from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from ..errors import FileTransferError, TransportError
from ..net import protocol
from .ice import candidate_from_json, candidate_to_json

if TYPE_CHECKING:
    from ..session import Session


logger = logging.getLogger(__name__)


class TransferState(str, enum.Enum):
    NEW = ""
    INVITING = "inviting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DONE = "done"
    CANCELLED = "cancelled"
    CLOSED = "closed"


_TRANSITIONS: Dict[TransferState, FrozenSet[TransferState]] = {
    TransferState.NEW: frozenset({TransferState.INVITING, TransferState.CANCELLED}),
    TransferState.INVITING: frozenset({TransferState.CONNECTING, TransferState.CANCELLED}),
    TransferState.CONNECTING: frozenset({TransferState.CONNECTED, TransferState.CANCELLED}),
    # connected -> connected reports progress
    TransferState.CONNECTED: frozenset({TransferState.CONNECTED, TransferState.DONE, TransferState.CANCELLED}),
    TransferState.DONE: frozenset({TransferState.CLOSED}),
    TransferState.CANCELLED: frozenset({TransferState.CLOSED}),
    TransferState.CLOSED: frozenset(),
}

_TERMINAL = frozenset({TransferState.DONE, TransferState.CANCELLED, TransferState.CLOSED})


def transfer_key(user_id: str, file_id: str, up: bool) -> str:
    return user_id + ("+" if up else "-") + file_id


class FileTransfer(AsyncIOEventEmitter):
    def __init__(
        self,
        session: "Session",
        user_id: str,
        id: str,
        up: bool,
        username: Optional[str],
        name: str,
        mimetype: str,
        size: int,
    ):
        super().__init__()
        self.session = session
        self.user_id = user_id
        self.id = id
        self.up = up
        self.username = username
        self.name = name
        self.mimetype = mimetype
        self.size = size
        self.state = TransferState.NEW

        self.path: Optional[str] = None
        self.pc: Optional[Any] = None
        self.dc: Optional[Any] = None
        self.candidates: List[Dict[str, Any]] = []
        self.data: List[bytes] = []
        self.datalen = 0

        self._send_task: Optional[asyncio.Task[None]] = None
        self._low_water = asyncio.Event()

    def __repr__(self) -> str:
        return f"<FileTransfer {self.key} name={self.name!r} state={self.state.value!r}>"

    @property
    def key(self) -> str:
        return transfer_key(self.user_id, self.id, self.up)

    @classmethod
    def for_upload(cls, session: "Session", user_id: str, username: Optional[str], path: str) -> "FileTransfer":
        mimetype = mimetypes.guess_type(path)[0] or "application/octet-stream"
        f = cls(
            session,
            user_id,
            protocol.new_random_id(),
            True,
            username,
            os.path.basename(path),
            mimetype,
            os.path.getsize(path),
        )
        f.path = path
        return f

    # -- state machine

    def _transition(self, state: TransferState, data: Any = None) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise FileTransferError(f"illegal file transfer transition {self.state.value!r} -> {state.value!r}")
        if state != self.state:
            logger.debug("file transfer %s state %r -> %r", self.key, self.state.value, state.value)
        self.state = state
        self.emit("state", state.value, data)

    async def _message(self, body: Dict[str, Any]) -> None:
        body = dict(body, id=self.id)
        await self.session.send_user_message(protocol.FILETRANSFER, self.user_id, body)

    async def cancel(self, reason: Any = None) -> None:
        """Abort the transfer, telling the peer if a handshake is in progress."""
        if self.state == TransferState.CLOSED:
            return
        if self.state not in (TransferState.NEW, TransferState.DONE, TransferState.CANCELLED):
            msg: Dict[str, Any] = {"type": protocol.FT_CANCEL if self.up else protocol.FT_REJECT}
            if reason:
                msg["message"] = str(reason)
            try:
                await self._message(msg)
            except TransportError as e:
                logger.debug("file transfer %s cancel not sent error=%s", self.key, e)
        if self.state not in (TransferState.DONE, TransferState.CANCELLED):
            logger.info("file transfer %s cancelled reason=%s", self.key, reason)
            self._transition(TransferState.CANCELLED, reason)
        await self.close()

    async def fail(self, reason: Any = None) -> None:
        """Like cancel, without notifying the peer."""
        if self.state in _TERMINAL:
            return
        logger.info("file transfer %s failed reason=%s", self.key, reason)
        self._transition(TransferState.CANCELLED, reason)
        await self.close()

    async def close(self) -> None:
        if self.state == TransferState.CLOSED:
            return
        if self.state not in (TransferState.DONE, TransferState.CANCELLED):
            logger.warning("file transfer %s closed in state %r", self.key, self.state.value)
            self._transition(TransferState.CANCELLED)

        pc, dc = self.pc, self.dc
        self.pc = None
        self.dc = None
        self.data = []
        self.datalen = 0
        self.candidates = []
        self._low_water.set()
        self.session.forget_transfer(self)
        # closed before the awaits so re-entrant calls return immediately
        self._transition(TransferState.CLOSED)

        task = self._send_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if dc is not None:
            dc.remove_all_listeners()
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.debug("file transfer %s pc close error=%s", self.key, e)

    # -- peer connection plumbing

    def _new_pc(self, ice_type: str) -> Any:
        pc = self.session.create_peer_connection()
        self.pc = pc
        self.candidates = []

        @pc.on("icecandidate")
        def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if self.pc is not pc:
                return
            body = {"type": ice_type, "candidate": candidate_to_json(candidate) if candidate is not None else None}
            asyncio.get_running_loop().create_task(self._send_quietly(body))

        @pc.on("signalingstatechange")
        async def on_signalingstatechange() -> None:
            if self.pc is not pc or pc.signalingState != "stable":
                return
            candidates = self.candidates
            self.candidates = []
            for c in candidates:
                await self._add_ice(pc, c)

        return pc

    async def _send_quietly(self, body: Dict[str, Any]) -> None:
        try:
            await self._message(body)
        except Exception as e:
            logger.debug("file transfer %s message not sent error=%s", self.key, e)

    async def got_remote_ice(self, candidate: Optional[Dict[str, Any]]) -> None:
        pc = self.pc
        if pc is None:
            logger.warning("file transfer %s unexpected ice", self.key)
            return
        if pc.signalingState == "stable":
            await self._add_ice(pc, candidate)
        else:
            self.candidates.append(candidate)  # type: ignore[arg-type]

    async def _add_ice(self, pc: Any, candidate: Optional[Dict[str, Any]]) -> None:
        if not candidate or not candidate.get("candidate"):
            return
        try:
            await pc.addIceCandidate(candidate_from_json(candidate))
        except Exception as e:
            logger.warning("file transfer %s ice rejected error=%s", self.key, e)

    # -- receiver

    async def receive(self) -> None:
        """Accept an invitation: create the offer and wait for data."""
        if self.up:
            raise FileTransferError("Receiving in wrong direction")
        if self.pc is not None:
            raise FileTransferError("Download already in progress")

        pc = self._new_pc(protocol.FT_DOWNICE)
        self._transition(TransferState.CONNECTING)

        dc = pc.createDataChannel("file")
        self.dc = dc
        self.data = []
        self.datalen = 0

        @dc.on("close")
        def on_close() -> None:
            self._spawn(self.cancel("remote peer closed connection"))

        @dc.on("message")
        def on_message(data) -> None:
            try:
                self._receive_data(data)
            except Exception as e:
                self._spawn(self.cancel(e))

        @dc.on("open")
        def on_open() -> None:
            # an empty file never produces a message
            if self.size == 0 and self.state == TransferState.CONNECTED:
                self._complete_download()

        offer = await pc.createOffer()
        if offer is None:
            await self.cancel(FileTransferError("Couldn't create offer"))
            return
        await pc.setLocalDescription(offer)
        if self.pc is not pc:
            return
        await self._message({"type": protocol.FT_OFFER, "sdp": pc.localDescription.sdp})

    async def receive_file(self, sdp: str) -> None:
        """The sender answered our offer."""
        if self.up:
            raise FileTransferError("Receiving in wrong direction")
        pc = self.pc
        if pc is None:
            raise FileTransferError("no download in progress")
        await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        if self.pc is pc:
            self._transition(TransferState.CONNECTED)

    def _receive_data(self, data: Any) -> None:
        if self.state in _TERMINAL:
            return
        if isinstance(data, str):
            raise FileTransferError("unexpected text from sender")
        self.data.append(bytes(data))
        self.datalen += len(data)

        if self.datalen < self.size:
            self._transition(TransferState.CONNECTED)
            return

        self._complete_download()

    def _complete_download(self) -> None:
        dc = self.dc
        if dc is not None:
            dc.remove_all_listeners("message")

        if self.datalen != self.size:
            self._spawn(self.cancel("unexpected file size"))
            return

        blob = self.get_buffered_data()
        self._transition(TransferState.DONE, blob)
        self._spawn(self._finish_download(dc))

    def get_buffered_data(self) -> bytes:
        if self.up:
            raise FileTransferError("buffering data in wrong direction")
        blob = b"".join(self.data)
        if len(blob) != self.datalen:
            raise FileTransferError("Inconsistent data size")
        self.data = []
        self.datalen = 0
        return blob

    async def _finish_download(self, dc: Any) -> None:
        if dc is not None:
            closed = asyncio.Event()
            dc.remove_all_listeners("close")
            dc.on("close", closed.set)
            try:
                dc.send("done")
                await asyncio.wait_for(closed.wait(), timeout=self.session.config.file_done_timeout)
            except asyncio.TimeoutError:
                pass
            except Exception as e:
                logger.debug("file transfer %s done not delivered error=%s", self.key, e)
        await self.close()

    # -- sender

    async def answer(self, sdp: str) -> None:
        """The receiver sent its offer; answer it and wait for the channel."""
        if not self.up:
            raise FileTransferError("Sending file in wrong direction")
        if self.pc is not None:
            raise FileTransferError("Transfer already in progress")

        pc = self._new_pc(protocol.FT_UPICE)
        self._transition(TransferState.CONNECTING)

        @pc.on("datachannel")
        def on_datachannel(channel) -> None:
            if self.dc is not None:
                self._spawn(self.cancel(FileTransferError("Duplicate datachannel")))
                return
            self.dc = channel

            @channel.on("close")
            def on_close() -> None:
                self._spawn(self.cancel("remote peer closed connection"))

            @channel.on("message")
            def on_message(data) -> None:
                if data == "done" and self.datalen == self.size:
                    channel.remove_all_listeners("close")
                    self._transition(TransferState.DONE)
                    self._spawn(self.close())
                else:
                    self._spawn(self.cancel(FileTransferError("unexpected data from receiver")))

            @channel.on("bufferedamountlow")
            def on_bufferedamountlow() -> None:
                self._low_water.set()

            self._send_task = asyncio.get_running_loop().create_task(self._send_guarded(), name=f"file-send-{self.id}")

        await pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        answer = await pc.createAnswer()
        if answer is None:
            raise FileTransferError("Couldn't create answer")
        await pc.setLocalDescription(answer)
        if self.pc is not pc:
            return
        await self._message({"type": protocol.FT_ANSWER, "sdp": pc.localDescription.sdp})
        self._transition(TransferState.CONNECTED)

    async def _send_guarded(self) -> None:
        try:
            await self.send()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self.cancel(e)

    async def send(self) -> None:
        """Stream the file, pausing whenever the channel buffer is full."""
        if not self.up:
            raise FileTransferError("sending in wrong direction")
        if self.path is None:
            raise FileTransferError("nothing to send")
        config = self.session.config
        chunk_size = config.file_chunk_size
        self.datalen = 0

        with open(self.path, "rb") as fp:
            while True:
                chunk = fp.read(chunk_size)
                if not chunk:
                    break
                await self._write(chunk, config.file_low_water)

        if self.datalen != self.size:
            raise FileTransferError(f"file changed while sending ({self.datalen} != {self.size})")

    async def _write(self, chunk: bytes, low_water: int) -> None:
        dc = self.dc
        if dc is None:
            raise FileTransferError("File is closed.")
        dc.bufferedAmountLowThreshold = low_water
        while dc.bufferedAmount > low_water:
            self._low_water.clear()
            await self._low_water.wait()
            if self.dc is not dc:
                raise FileTransferError("File is closed.")
        dc.send(chunk)
        self.datalen += len(chunk)
        if self.state == TransferState.CONNECTED:
            self._transition(TransferState.CONNECTED)

    def _spawn(self, coro: Any) -> None:
        asyncio.get_running_loop().create_task(coro)
