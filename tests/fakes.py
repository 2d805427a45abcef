"""In-memory stand-ins for aiortc peer connections and the websocket."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):  # type: ignore[override]
        raise NotImplementedError


class FakeSender:
    def __init__(self, track: Any):
        self.track = track


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label: str = "file"):
        super().__init__()
        self.label = label
        self.sent: List[Any] = []
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.readyState = "open"

    def send(self, data: Any) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.readyState = "closed"
        self.emit("close")


class FakePeerConnection(AsyncIOEventEmitter):
    """Records what the code under test does to its peer connection."""

    def __init__(self, configuration: Any = None):
        super().__init__()
        self.configuration = configuration
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.signalingState = "stable"
        self.iceConnectionState = "new"
        self.added_candidates: List[Any] = []
        self.senders: List[FakeSender] = []
        self.channels: List[FakeDataChannel] = []
        self.offers = 0
        self.closed = False
        self.fail_add_ice = False
        self.fail_remote_description = False
        self.fail_create_offer = False

    async def createOffer(self) -> RTCSessionDescription:
        if self.fail_create_offer:
            raise ValueError("createOffer failed")
        self.offers += 1
        return RTCSessionDescription(sdp=f"v=0 offer {self.offers}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        if self.fail_remote_description:
            raise ValueError("bad sdp")
        self.remoteDescription = description
        if description.type == "offer":
            self.signalingState = "have-remote-offer"
        else:
            self.signalingState = "stable"
            self.emit("signalingstatechange")

    async def addIceCandidate(self, candidate: Any) -> None:
        if self.fail_add_ice:
            raise ValueError("bad candidate")
        self.added_candidates.append(candidate)

    def addTrack(self, track: Any) -> FakeSender:
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getTransceivers(self) -> List[Any]:
        return []

    def createDataChannel(self, label: str) -> FakeDataChannel:
        dc = FakeDataChannel(label)
        self.channels.append(dc)
        return dc

    async def close(self) -> None:
        self.closed = True

    def set_ice_state(self, state: str) -> None:
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")


class FakeSocket:
    """Websocket double: `feed` queues server messages, `sent` records ours."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._queue: "Optional[asyncio.Queue[Optional[str]]]" = None

    @property
    def _incoming(self) -> "asyncio.Queue[Optional[str]]":
        # created on first use so it binds to the running loop
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    def feed(self, message: Dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def feed_raw(self, raw: str) -> None:
        self._incoming.put_nowait(raw)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    def of_type(self, mtype: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == mtype]


async def settle(turns: int = 10) -> None:
    """Let scheduled tasks and callbacks run."""
    for _ in range(turns):
        await asyncio.sleep(0)
