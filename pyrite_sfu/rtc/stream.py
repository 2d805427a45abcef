"""One media stream (up or down) and its peer connection.

Negotiation is driven from two directions:

- up-streams offer. Adding tracks mirrors the browser's single-fire
  `negotiationneeded`: every `add_track` in the same loop turn collapses
  into one `negotiate()`, and a new offer (ICE restarts included) is never
  sent while the previous one is still waiting for its answer.
- down-streams answer offers pushed by the server (`accept_offer`).

ICE candidates are buffered in both directions until the matching
description is in place, then flushed once in arrival order.

Events (pyee): `close(replace)`, `error(exc)`, `negotiationcompleted()`,
`downtrack(track)`, `status(ice_state)`, `stats(stats)`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from ..errors import NegotiationError, TransportError
from ..net import protocol
from .ice import candidate_from_json, candidate_to_json
from .media import MediaStream

if TYPE_CHECKING:
    from ..session import Session


logger = logging.getLogger(__name__)


_local_id_counter = 0


def new_local_id() -> str:
    global _local_id_counter
    local_id = str(_local_id_counter)
    _local_id_counter += 1
    return local_id


def _seconds(ts: Any) -> float:
    if isinstance(ts, datetime):
        return ts.timestamp()
    # browsers report milliseconds
    return float(ts) / 1000.0


class Stream(AsyncIOEventEmitter):
    def __init__(
        self,
        session: "Session",
        id: str,
        local_id: str,
        pc: Any,
        up: bool,
        *,
        label: Optional[str] = None,
    ):
        super().__init__()
        self.session: Optional["Session"] = session
        self.id = id
        self.local_id = local_id
        self.up = up
        self.pc = pc
        self.label = label
        self.source: Optional[str] = None
        self.username: Optional[str] = None
        self.media: Optional[MediaStream] = None

        self.replace: Optional[str] = None
        self.local_description_sent = False
        self.local_ice: List[Any] = []
        self.remote_ice: List[Dict[str, Any]] = []
        self.closed = False

        self.stats: Dict[str, Dict[str, Dict[str, float]]] = {}
        self.userdata: Dict[str, Any] = {}

        self._senders: Dict[str, Any] = {}
        self._negotiation_task: Optional[asyncio.Task[None]] = None
        self._negotiation_again = False
        self._restart_pending = False
        self._answered = asyncio.Event()
        self._answered.set()
        self._stats_task: Optional[asyncio.Task[None]] = None

        self._install_pc_handlers()

    def __repr__(self) -> str:
        return f"<Stream id={self.id} up={self.up} label={self.label} local_id={self.local_id}>"

    @property
    def user_id(self) -> Optional[str]:
        if self.up:
            return self.session.id if self.session else None
        return self.source

    @property
    def negotiation_task(self) -> Optional[asyncio.Task[None]]:
        return self._negotiation_task

    def _install_pc_handlers(self) -> None:
        pc = self.pc

        @pc.on("icecandidate")
        def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None or self.closed:
                return
            self.got_local_ice(candidate)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange() -> None:
            if self.closed or self.session is None:
                return
            state = pc.iceConnectionState
            logger.debug("stream ice state id=%s up=%s state=%s", self.id, self.up, state)
            self.emit("status", state)
            self.session.retry.on_state(self.id, state, self._retry_after_failure)

        if not self.up:

            @pc.on("track")
            def on_track(track) -> None:
                if self.closed:
                    return
                logger.info("stream remote track id=%s kind=%s", self.id, track.kind)
                if self.media is None:
                    self.media = MediaStream()
                self.media.add_track(track)
                changed = self.session.recompute_user_streams(self.source) if self.session else False
                self.emit("downtrack", track)
                if changed and self.session:
                    self.session.emit("user", self.source, protocol.USER_CHANGE)

    # -- media

    def set_media(self, media: MediaStream) -> None:
        """Attach the application's MediaStream.

        Up-streams add every new track to the peer connection, which
        schedules one negotiation. The stream never stops these tracks.
        """
        self.media = media
        if self.up:
            for track in media.get_tracks():
                self.add_track(track)
        if self.session:
            self.session.notify_user_streams(self.user_id)

    def add_track(self, track: MediaStreamTrack) -> None:
        if not self.up:
            raise RuntimeError("add_track called on a down stream")
        if self.closed or track.id in self._senders:
            return
        self._senders[track.id] = self.pc.addTrack(track)
        logger.debug("stream add track id=%s kind=%s", self.id, track.kind)
        self._negotiation_needed()

    # -- negotiation (up)

    def _negotiation_needed(self, restart: bool = False) -> None:
        if restart:
            self._restart_pending = True
        if self._negotiation_task is not None and not self._negotiation_task.done():
            self._negotiation_again = True
            return
        self._negotiation_again = False
        self._negotiation_task = asyncio.get_running_loop().create_task(
            self._run_negotiation(), name=f"negotiate-{self.id}"
        )

    async def _run_negotiation(self) -> None:
        # let every track added in this turn land before offering
        await asyncio.sleep(0)
        while not self.closed:
            # one offer in flight at a time
            await self._answered.wait()
            if self.closed:
                return
            self._negotiation_again = False
            restart = self._restart_pending
            self._restart_pending = False
            try:
                if restart:
                    await self._restart_local()
                else:
                    await self.negotiate()
            except Exception as e:
                await self._negotiation_failed(e)
                return
            if not self._negotiation_again:
                return

    async def negotiate(self, restart_ice: bool = False) -> None:
        if not self.up:
            raise NegotiationError("not an up stream")
        session = self.session
        if self.closed or session is None:
            return

        if restart_ice:
            logger.info("stream ice restart id=%s", self.id)
        offer = await self.pc.createOffer()
        if offer is None:
            raise NegotiationError("Didn't create offer")
        if self.closed:
            return
        await self.pc.setLocalDescription(offer)
        if self.closed:
            return

        self._answered.clear()
        await session.send(
            protocol.make_offer(
                self.id,
                label=self.label,
                replace=self.replace,
                sdp=self.pc.localDescription.sdp,
                source=session.id,
                username=session.username,
                renegotiate=self.local_description_sent,
            )
        )
        self.replace = None
        await self._flush_local_ice()

    async def restart_ice(self) -> None:
        """Recover from an ICE failure.

        Down-streams ask the server for a fresh offer. Up-streams queue a
        local restart behind any offer still waiting for its answer; a
        failed restart emits `error` and closes the stream.
        """
        session = self.session
        if self.closed or session is None:
            return
        if not self.up:
            logger.info("stream request renegotiate id=%s", self.id)
            await session.send(protocol.make_renegotiate(self.id))
            return
        self._negotiation_needed(restart=True)

    async def _restart_local(self) -> None:
        native = getattr(self.pc, "restartIce", None)
        if callable(native):
            try:
                native()
            except Exception as e:
                logger.warning("stream native ice restart failed id=%s error=%s", self.id, e)
            else:
                await self.negotiate()
                return
        await self.negotiate(restart_ice=True)

    def _retry_after_failure(self) -> None:
        if self.closed:
            return

        async def _run() -> None:
            try:
                await self.restart_ice()
            except Exception as e:
                logger.warning("stream ice retry failed id=%s error=%s", self.id, e)

        asyncio.get_running_loop().create_task(_run(), name=f"ice-retry-{self.id}")

    async def accept_answer(self, sdp: str) -> None:
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except Exception as e:
            self._emit_error(e)
            await self.close()
            return
        if self.closed:
            return
        self._answered.set()
        await self._flush_remote_ice()
        if not self.closed:
            self.emit("negotiationcompleted")

    # -- negotiation (down)

    async def accept_offer(self, sdp: str) -> None:
        session = self.session
        if self.closed or session is None:
            return
        try:
            await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
            if self.closed:
                return
            await self._flush_remote_ice()
            answer = await self.pc.createAnswer()
            if answer is None:
                raise NegotiationError("Didn't create answer")
            if self.closed:
                return
            await self.pc.setLocalDescription(answer)
            if self.closed:
                return
            await session.send(protocol.make_answer(self.id, self.pc.localDescription.sdp))
        except Exception as e:
            try:
                self._emit_error(e)
            finally:
                await self.abort()
            return

        await self._flush_local_ice()
        if not self.closed:
            self.emit("negotiationcompleted")

    async def abort(self) -> None:
        if self.up:
            raise RuntimeError("Abort called on an up stream")
        session = self.session
        if session is None:
            return
        logger.info("stream abort id=%s", self.id)
        try:
            await session.send(protocol.make_abort(self.id))
        except TransportError as e:
            logger.debug("stream abort not sent id=%s error=%s", self.id, e)

    # -- ICE

    def got_local_ice(self, candidate: Any) -> None:
        if not self.local_description_sent:
            self.local_ice.append(candidate)
            return
        asyncio.get_running_loop().create_task(self._send_local_ice(candidate))

    async def _send_local_ice(self, candidate: Any) -> None:
        session = self.session
        if self.closed or session is None:
            return
        try:
            await session.send(protocol.make_ice(self.id, candidate_to_json(candidate)))
        except Exception as e:
            logger.warning("stream local ice not sent id=%s error=%s", self.id, e)

    async def _flush_local_ice(self) -> None:
        # The flag flips only once the queue is empty, so candidates that
        # show up mid-flush are still sent in order by this loop.
        while self.local_ice:
            candidate = self.local_ice.pop(0)
            await self._send_local_ice(candidate)
        self.local_description_sent = True

    async def add_remote_ice(self, candidate: Dict[str, Any]) -> None:
        if self.closed:
            return
        if self.pc.remoteDescription is None:
            self.remote_ice.append(candidate)
            return
        await self._apply_remote_ice(candidate)

    async def _apply_remote_ice(self, candidate: Dict[str, Any]) -> None:
        if not isinstance(candidate, dict) or not candidate.get("candidate"):
            # end-of-candidates
            return
        try:
            await self.pc.addIceCandidate(candidate_from_json(candidate))
        except Exception as e:
            logger.warning("stream remote ice rejected id=%s error=%s", self.id, e)

    async def _flush_remote_ice(self) -> None:
        candidates = self.remote_ice
        self.remote_ice = []
        for candidate in candidates:
            if self.closed:
                return
            await self._apply_remote_ice(candidate)

    # -- teardown

    async def close(self, replace: bool = False) -> None:
        """Close the stream; a second call is a no-op.

        `replace` means an equivalent stream takes this one's place: no
        `close` message goes to the server and subscribers see
        `close(replace=True)`.
        """
        if self.closed:
            logger.debug("stream already closed id=%s", self.id)
            return
        self.closed = True
        session = self.session
        self._answered.set()

        current = asyncio.current_task()
        for task in (self._stats_task, self._negotiation_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._stats_task = None

        if session is not None:
            session.retry.forget(self.id)
            session.detach_stream(self)

        try:
            await self.pc.close()
        except Exception as e:
            logger.debug("stream pc close error id=%s error=%s", self.id, e)

        if session is not None and self.up and not replace and self.local_description_sent:
            try:
                await session.send(protocol.make_close(self.id))
            except TransportError:
                pass

        # A replaced stream's label stays in the user's map; the successor
        # recomputes it once its own tracks are attached.
        if session is not None and not replace:
            session.notify_user_streams(self.user_id)
        self.session = None

        logger.info("stream closed id=%s up=%s replace=%s", self.id, self.up, replace)
        self.emit("close", replace)

    async def _negotiation_failed(self, error: Exception) -> None:
        logger.warning("stream negotiation failed id=%s error=%s", self.id, error)
        self._emit_error(error)
        await self.close()

    def _emit_error(self, error: Exception) -> None:
        logger.warning("stream error id=%s up=%s error=%s", self.id, self.up, error)
        if self.listeners("error"):
            self.emit("error", error)

    # -- misc

    async def request(self, what: Any) -> None:
        if self.session is None:
            return
        await self.session.send(protocol.make_request_stream(self.id, what))

    async def update_stats(self) -> None:
        old = self.stats
        stats: Dict[str, Dict[str, Dict[str, float]]] = {}

        for t in self.pc.getTransceivers():
            sender = getattr(t, "sender", None)
            receiver = getattr(t, "receiver", None)
            stid = sender.track.id if sender is not None and sender.track is not None else None
            rtid = receiver.track.id if receiver is not None and getattr(receiver, "track", None) is not None else None

            if stid:
                try:
                    report = await sender.getStats()
                except Exception as e:
                    logger.debug("stream sender stats failed id=%s error=%s", self.id, e)
                    report = None
                for r in (report.values() if report else []):
                    if r.type != "outbound-rtp":
                        continue
                    entry = {"timestamp": _seconds(r.timestamp), "bytesSent": float(r.bytesSent)}
                    prev = old.get(stid, {}).get("outbound-rtp")
                    if prev and entry["timestamp"] > prev["timestamp"]:
                        entry["rate"] = (entry["bytesSent"] - prev["bytesSent"]) * 8 / (entry["timestamp"] - prev["timestamp"])
                    stats.setdefault(stid, {})["outbound-rtp"] = entry

            if rtid:
                try:
                    report = await receiver.getStats()
                except Exception as e:
                    logger.debug("stream receiver stats failed id=%s error=%s", self.id, e)
                    report = None
                for r in (report.values() if report else []):
                    if r.type != "inbound-rtp":
                        continue
                    entry = {"timestamp": _seconds(r.timestamp), "packetsReceived": float(r.packetsReceived)}
                    prev = old.get(rtid, {}).get("inbound-rtp")
                    if prev and entry["timestamp"] > prev["timestamp"]:
                        entry["rate"] = (entry["packetsReceived"] - prev["packetsReceived"]) / (entry["timestamp"] - prev["timestamp"])
                    stats.setdefault(rtid, {})["inbound-rtp"] = entry

        if self.closed:
            return
        self.stats = stats
        self.emit("stats", stats)

    def set_stats_interval(self, seconds: float) -> None:
        if self._stats_task is not None:
            self._stats_task.cancel()
            self._stats_task = None
        if seconds <= 0 or self.closed:
            return

        async def _poll() -> None:
            while not self.closed:
                await asyncio.sleep(seconds)
                try:
                    await self.update_stats()
                except Exception as e:
                    logger.debug("stream stats failed id=%s error=%s", self.id, e)

        self._stats_task = asyncio.get_running_loop().create_task(_poll(), name=f"stats-{self.id}")
