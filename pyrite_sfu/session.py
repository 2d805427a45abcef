"""Session: one connection to the SFU and everything hanging off it.

A Session composes a SignalingChannel with the up/down stream maps, the
user roster, our permissions, the ICE configuration and the file transfer
registry. It is the only object an application talks to directly; there is
no module-level connection state.

Events (pyee, subscribers run in registration order):

- `connected()`
- `close(code, reason)`
- `joined(kind, group, permissions, status, data, message)`
- `user(id, kind)` with kind in add/change/delete
- `downstream(stream)` for every new down-stream, before negotiation
- `chat(source, dest, username, time, privileged, history, kind, value)`
- `usermessage(source, dest, username, time, privileged, kind, value)`
- `filetransfer(transfer)` for incoming invitations and outgoing uploads;
  an incoming invitation with no subscriber, or whose subscriber raises,
  is rejected.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from aiortc import RTCPeerConnection
from aiortc.rtcconfiguration import RTCConfiguration
from pyee.asyncio import AsyncIOEventEmitter

from .config import ClientConfig
from .errors import FileTransferError, JoinError, SfuError, TransportError
from .net import protocol
from .net.signaling_channel import SignalingCallbacks, SignalingChannel
from .rtc.file_transfer import FileTransfer, TransferState, transfer_key
from .rtc.ice import rtc_configuration_from_json
from .rtc.retry import IceRetryPolicy, PendingQueue
from .rtc.stream import Stream, new_local_id
from .users import User, recompute_user_streams


logger = logging.getLogger(__name__)


PeerConnectionFactory = Callable[[Optional[RTCConfiguration]], Any]


def _default_pc_factory(configuration: Optional[RTCConfiguration]) -> Any:
    return RTCPeerConnection(configuration=configuration)


class Session(AsyncIOEventEmitter):
    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        pc_factory: Optional[PeerConnectionFactory] = None,
        connect_fn: Optional[Callable[[str], Any]] = None,
    ):
        super().__init__()
        self.config = config or ClientConfig()
        self.id = protocol.new_random_id()
        self.group: Optional[str] = None
        self.username: Optional[str] = None
        self.permissions: Set[str] = set()
        self.users: Dict[str, User] = {}
        self.up: Dict[str, Stream] = {}
        self.down: Dict[str, Stream] = {}
        self.rtc_configuration: Optional[protocol.RtcConfigurationDict] = None
        # returns an RTCConfiguration overriding the server's, or None
        self.peer_connection_hook: Optional[Callable[[], Optional[RTCConfiguration]]] = None
        self.transferred_files: Dict[str, FileTransfer] = {}
        self.userdata: Dict[str, Any] = {}

        self.channel: Optional[SignalingChannel] = None
        self.ready = False
        self.pending = PendingQueue(stale_after=self.config.pending_stale_after)
        self.retry = IceRetryPolicy(
            max_attempts=self.config.ice_retry_max,
            base_delay=self.config.ice_retry_base_delay,
        )

        self._pc_factory = pc_factory or _default_pc_factory
        self._connect_fn = connect_fn
        self._join_waiter: Optional[asyncio.Future[str]] = None

    # -- connection

    async def connect(self, url: Optional[str] = None) -> "Session":
        url = url or self.config.server_url
        if self.channel is not None and self.channel.is_open:
            logger.info("session reconnecting, closing previous socket")
            await self.channel.close("Reconnecting")
            await asyncio.sleep(self.config.reconnect_delay)

        self.id = protocol.new_random_id()
        channel = SignalingChannel(url, self.id, connect_fn=self._connect_fn)

        async def on_connected() -> None:
            self.emit("connected")

        async def on_close(code: int, reason: str) -> None:
            if self.channel is channel:
                await self._on_socket_closed(code, reason)

        channel.callbacks = SignalingCallbacks(on_connected=on_connected, on_close=on_close)
        for mtype, handler in self._handlers().items():
            channel.set_handler(mtype, handler)

        self.channel = channel
        await channel.connect()
        logger.info("session connected id=%s url=%s", self.id, url)
        return self

    def _handlers(self) -> Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]]:
        return {
            protocol.OFFER: self._got_offer,
            protocol.ANSWER: self._got_answer,
            protocol.RENEGOTIATE: self._got_renegotiate,
            protocol.CLOSE: self._got_close,
            protocol.ABORT: self._got_abort,
            protocol.ICE: self._got_ice,
            protocol.JOINED: self._got_joined,
            protocol.USER: self._got_user,
            protocol.CHAT: self._got_chat,
            protocol.CHATHISTORY: self._got_chat,
            protocol.USERMESSAGE: self._got_usermessage,
        }

    async def join(
        self,
        group: str,
        username: str,
        credentials: protocol.Credentials,
        data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Join a group; returns the server's message once it accepts us."""
        if self.channel is None or not self.channel.is_open:
            raise TransportError("Connection is not open")
        waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._join_waiter = waiter
        try:
            await self.channel.join(group, username, credentials, data)
            return await asyncio.wait_for(waiter, timeout=self.config.join_timeout)
        finally:
            if self._join_waiter is waiter:
                self._join_waiter = None

    async def leave(self) -> None:
        if self.group is None or self.channel is None:
            return
        logger.info("session leave group=%s", self.group)
        await self.channel.leave(self.group)

    async def close(self) -> None:
        if self.channel is not None:
            await self.channel.close()

    async def send(self, message: Dict[str, Any]) -> None:
        if self.channel is None:
            raise TransportError("Connection is not open")
        await self.channel.send(message)

    # -- outbound messages

    async def request(self, what: Any) -> None:
        await self.send(protocol.make_request(what))

    async def chat(self, kind: str, dest: Optional[str], value: Any) -> None:
        await self.send(protocol.make_addressed(protocol.CHAT, kind=kind, source=self.id, username=self.username, dest=dest, value=value))

    async def user_action(self, kind: str, dest: Optional[str], value: Any = None) -> None:
        await self.send(protocol.make_addressed(protocol.USERACTION, kind=kind, source=self.id, username=self.username, dest=dest, value=value))

    async def send_user_message(self, kind: str, dest: Optional[str], value: Any = None, noecho: Optional[bool] = None) -> None:
        await self.send(
            protocol.make_addressed(protocol.USERMESSAGE, kind=kind, source=self.id, username=self.username, dest=dest, value=value, noecho=noecho)
        )

    async def group_action(self, kind: str, value: Any = None) -> None:
        await self.send(protocol.make_addressed(protocol.GROUPACTION, kind=kind, source=self.id, username=self.username, value=value))

    # -- streams

    def get_rtc_configuration(self) -> Optional[RTCConfiguration]:
        if self.peer_connection_hook is not None:
            conf = self.peer_connection_hook()
            if conf is not None:
                return conf
        return rtc_configuration_from_json(self.rtc_configuration)

    def create_peer_connection(self) -> Any:
        return self._pc_factory(self.get_rtc_configuration())

    def find_by_local_id(self, local_id: Optional[str]) -> Optional[Stream]:
        if not local_id:
            return None
        for s in self.up.values():
            if s.local_id == local_id:
                return s
        return None

    async def new_up_stream(self, local_id: Optional[str] = None, *, label: Optional[str] = None) -> Stream:
        """Create an up-stream; a matching `local_id` replaces that stream."""
        if not self.ready:
            raise SfuError("not joined to a group")
        sid = protocol.new_random_id()
        while sid in self.up:
            sid = protocol.new_random_id()

        pc = self.create_peer_connection()

        old_id = None
        if local_id:
            old = self.find_by_local_id(local_id)
            if old is not None:
                old_id = old.id
                await old.close(replace=True)

        stream = Stream(self, sid, local_id or new_local_id(), pc, True, label=label)
        stream.replace = old_id
        self.up[sid] = stream
        if self.config.stats_interval > 0:
            stream.set_stats_interval(self.config.stats_interval)
        logger.info("session new up stream id=%s local_id=%s label=%s replace=%s", sid, stream.local_id, label, old_id)
        return stream

    def detach_stream(self, stream: Stream) -> None:
        streams = self.up if stream.up else self.down
        if streams.get(stream.id) is stream:
            del streams[stream.id]
        else:
            logger.warning("session closing unknown stream id=%s", stream.id)

    def recompute_user_streams(self, user_id: Optional[str]) -> bool:
        user = self.users.get(user_id) if user_id else None
        if user is None:
            logger.debug("session recomputing streams for unknown user id=%s", user_id)
            return False
        if user_id == self.id:
            streams = list(self.up.values())
        else:
            streams = [s for s in self.down.values() if s.source == user_id]
        return recompute_user_streams(user, streams)

    def notify_user_streams(self, user_id: Optional[str]) -> None:
        if self.recompute_user_streams(user_id):
            self.emit("user", user_id, protocol.USER_CHANGE)

    # -- file transfer

    def get_transferred_file(self, user_id: str, file_id: str, up: bool) -> Optional[FileTransfer]:
        return self.transferred_files.get(transfer_key(user_id, file_id, up))

    def forget_transfer(self, f: FileTransfer) -> None:
        if self.transferred_files.get(f.key) is f:
            del self.transferred_files[f.key]

    async def send_file(self, user_id: str, path: str) -> FileTransfer:
        user = self.users.get(user_id)
        if user is None:
            raise FileTransferError("offering upload to unknown user")
        f = FileTransfer.for_upload(self, user_id, user.username, path)
        try:
            self.emit("filetransfer", f)
        except Exception as e:
            await f.cancel(e)
            return f

        try:
            await self.send_user_message(
                protocol.FILETRANSFER,
                user_id,
                {
                    "type": protocol.FT_INVITE,
                    "id": f.id,
                    "name": f.name,
                    "mimetype": f.mimetype,
                    "size": f.size,
                },
            )
        except TransportError as e:
            await f.fail(e)
            raise
        # registered only once the peer can answer the invite
        self.transferred_files[f.key] = f
        f._transition(TransferState.INVITING)
        logger.info("file transfer invite key=%s name=%s size=%s", f.key, f.name, f.size)
        return f

    # -- inbound handlers

    async def _got_offer(self, msg: Dict[str, Any]) -> None:
        if not self.ready:
            self.pending.push(msg)
            return

        sid = str(msg.get("id", ""))
        sdp = str(msg.get("sdp", ""))
        replace = msg.get("replace")
        logger.info("session offer id=%s label=%s source=%s replace=%s", sid, msg.get("label"), msg.get("source"), replace)

        if sid in self.up:
            logger.error("session duplicate connection id=%s", sid)
            await self.send(protocol.make_abort(sid))
            return

        old_local_id = None
        if replace:
            old = self.down.get(replace)
            if old is not None:
                old_local_id = old.local_id
                await old.close(replace=True)
            else:
                logger.warning("session replacing unknown stream id=%s", replace)

        stream = self.down.get(sid)
        if stream is not None and old_local_id:
            logger.warning("session replacing duplicate stream id=%s", sid)

        created = False
        if stream is None:
            try:
                pc = self.create_peer_connection()
            except Exception as e:
                logger.warning("session peer connection failed id=%s error=%s", sid, e)
                await self.send(protocol.make_abort(sid))
                return
            stream = Stream(self, sid, old_local_id or new_local_id(), pc, False, label=msg.get("label"))
            self.down[sid] = stream
            created = True
            if self.config.stats_interval > 0:
                stream.set_stats_interval(self.config.stats_interval)

        stream.source = msg.get("source")
        stream.username = msg.get("username")
        if created:
            self.emit("downstream", stream)
        await stream.accept_offer(sdp)

    async def _got_answer(self, msg: Dict[str, Any]) -> None:
        stream = self.up.get(str(msg.get("id", "")))
        if stream is None:
            logger.warning("session answer for unknown up stream id=%s", msg.get("id"))
            return
        logger.info("session answer id=%s", stream.id)
        await stream.accept_answer(str(msg.get("sdp", "")))

    async def _got_renegotiate(self, msg: Dict[str, Any]) -> None:
        stream = self.up.get(str(msg.get("id", "")))
        if stream is None:
            logger.warning("session renegotiate for unknown up stream id=%s", msg.get("id"))
            return
        await stream.restart_ice()

    async def _got_close(self, msg: Dict[str, Any]) -> None:
        stream = self.down.get(str(msg.get("id", "")))
        if stream is None:
            logger.warning("session close for unknown down stream id=%s", msg.get("id"))
            return
        await stream.close()

    async def _got_abort(self, msg: Dict[str, Any]) -> None:
        stream = self.up.get(str(msg.get("id", "")))
        if stream is None:
            logger.warning("session abort for unknown up stream id=%s", msg.get("id"))
            return
        await stream.close()

    async def _got_ice(self, msg: Dict[str, Any]) -> None:
        sid = str(msg.get("id", ""))
        stream = self.up.get(sid) or self.down.get(sid)
        if stream is None:
            if not self.ready:
                self.pending.push(msg)
                return
            logger.warning(
                "session ice for unknown stream id=%s up=%s down=%s",
                sid,
                list(self.up),
                list(self.down),
            )
            return
        await stream.add_remote_ice(msg.get("candidate") or {})

    async def _got_joined(self, msg: Dict[str, Any]) -> None:
        kind = msg.get("kind")
        group = msg.get("group")
        message = msg.get("value") or ""
        permissions = set(msg.get("permissions") or [])
        logger.info("session joined kind=%s group=%s permissions=%s", kind, group, sorted(permissions))

        if kind == protocol.JOINED_FAIL:
            self._settle_join(error=JoinError(message or "join failed"))
            self.emit("joined", kind, group, permissions, msg.get("status"), msg.get("data"), message)
            return

        if self.group and group != self.group and kind != protocol.JOINED_LEAVE:
            logger.error("session joined multiple groups current=%s got=%s", self.group, group)
            return

        self.group = group
        self.username = msg.get("username")
        self.permissions = permissions
        self.rtc_configuration = msg.get("rtcConfiguration")

        if kind == protocol.JOINED_LEAVE:
            await self._teardown_group()
            self.emit("joined", kind, group, permissions, msg.get("status"), msg.get("data"), message)
            self.group = None
            return

        self.emit("joined", kind, group, permissions, msg.get("status"), msg.get("data"), message)

        if kind == protocol.JOINED_JOIN:
            self.ready = True
            self._settle_join(result=message)
            await self._replay_pending()

    async def _replay_pending(self) -> None:
        handlers = self._handlers()
        for m in self.pending.drain():
            logger.debug("session replay type=%s id=%s", m.get("type"), m.get("id"))
            try:
                await handlers[m["type"]](m)
            except Exception:
                logger.exception("session replay failed type=%s id=%s", m.get("type"), m.get("id"))

    async def _got_user(self, msg: Dict[str, Any]) -> None:
        kind = msg.get("kind")
        uid = str(msg.get("id", ""))
        if kind == protocol.USER_ADD:
            if uid in self.users:
                logger.warning("session duplicate user id=%s username=%s", uid, msg.get("username"))
            user = User.from_message(msg)
            self.users[uid] = user
            self.recompute_user_streams(uid)
        elif kind == protocol.USER_CHANGE:
            user = self.users.get(uid)
            if user is None:
                logger.warning("session unknown user id=%s username=%s", uid, msg.get("username"))
                self.users[uid] = User.from_message(msg)
                self.recompute_user_streams(uid)
            else:
                user.update_from_message(msg)
        elif kind == protocol.USER_DELETE:
            if uid not in self.users:
                logger.warning("session unknown user id=%s username=%s", uid, msg.get("username"))
            for f in list(self.transferred_files.values()):
                if f.user_id == uid:
                    await f.fail("user has gone away")
            self.users.pop(uid, None)
        else:
            logger.warning("session unknown user action kind=%s", kind)
            return
        logger.debug("session user id=%s kind=%s", uid, kind)
        self.emit("user", uid, kind)

    async def _got_chat(self, msg: Dict[str, Any]) -> None:
        self.emit(
            "chat",
            msg.get("source"),
            msg.get("dest"),
            msg.get("username"),
            msg.get("time"),
            bool(msg.get("privileged")),
            msg.get("type") == protocol.CHATHISTORY,
            msg.get("kind"),
            msg.get("value"),
        )

    async def _got_usermessage(self, msg: Dict[str, Any]) -> None:
        if msg.get("kind") == protocol.FILETRANSFER:
            await self._got_file_transfer(str(msg.get("source", "")), msg.get("username"), msg.get("value"))
            return
        self.emit(
            "usermessage",
            msg.get("source"),
            msg.get("dest"),
            msg.get("username"),
            msg.get("time"),
            bool(msg.get("privileged")),
            msg.get("kind"),
            msg.get("value"),
        )

    async def _got_file_transfer(self, user_id: str, username: Optional[str], message: Any) -> None:
        if not isinstance(message, dict):
            logger.warning("file transfer malformed message from=%s", user_id)
            return
        ftype = message.get("type")
        fid = str(message.get("id", ""))

        if ftype == protocol.FT_INVITE:
            f = FileTransfer(
                self,
                user_id,
                fid,
                False,
                username,
                str(message.get("name", "")),
                str(message.get("mimetype", "")),
                int(message.get("size") or 0),
            )
            f._transition(TransferState.INVITING)
            if f.key in self.transferred_files:
                logger.error("file transfer duplicate id key=%s", f.key)
                await f.cancel("duplicate id (this shouldn't happen)")
                return
            self.transferred_files[f.key] = f
            logger.info("file transfer invited key=%s name=%s size=%s", f.key, f.name, f.size)
            try:
                handled = self.emit("filetransfer", f)
            except Exception as e:
                await f.cancel(e)
                return
            if not handled:
                await f.cancel("this client does not implement file transfer")
            return

        if ftype == protocol.FT_OFFER:
            f = self.get_transferred_file(user_id, fid, True)
            if f is None:
                logger.warning("file transfer unexpected offer from=%s id=%s", user_id, fid)
                return
            try:
                await f.answer(str(message.get("sdp", "")))
            except Exception as e:
                await f.cancel(e)
            return

        if ftype == protocol.FT_ANSWER:
            f = self.get_transferred_file(user_id, fid, False)
            if f is None:
                logger.warning("file transfer unexpected answer from=%s id=%s", user_id, fid)
                return
            try:
                await f.receive_file(str(message.get("sdp", "")))
            except Exception as e:
                await f.cancel(e)
            return

        if ftype in (protocol.FT_DOWNICE, protocol.FT_UPICE):
            f = self.get_transferred_file(user_id, fid, ftype == protocol.FT_DOWNICE)
            if f is None or f.pc is None:
                logger.warning("file transfer unexpected %s from=%s id=%s", ftype, user_id, fid)
                return
            await f.got_remote_ice(message.get("candidate"))
            return

        if ftype in (protocol.FT_CANCEL, protocol.FT_REJECT):
            f = self.get_transferred_file(user_id, fid, ftype == protocol.FT_REJECT)
            if f is None:
                logger.warning("file transfer unexpected %s from=%s id=%s", ftype, user_id, fid)
                return
            await f.fail(message.get("message") or ftype)
            await f.close()
            return

        logger.warning("file transfer unknown message type=%s", ftype)

    # -- teardown

    def _settle_join(self, *, result: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        waiter = self._join_waiter
        if waiter is None or waiter.done():
            return
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(result or "")

    async def _teardown_group(self) -> None:
        self.ready = False
        self.pending.clear()
        self.retry.clear()
        for s in list(self.up.values()):
            await s.close()
        for s in list(self.down.values()):
            await s.close()
        for f in list(self.transferred_files.values()):
            await f.fail("connection closed")
        for uid in list(self.users):
            del self.users[uid]
            self.emit("user", uid, protocol.USER_DELETE)

    async def _on_socket_closed(self, code: int, reason: str) -> None:
        logger.info("session socket closed code=%s reason=%s", code, reason)
        await self._teardown_group()
        self.permissions = set()
        if self.group:
            self.emit("joined", protocol.JOINED_LEAVE, self.group, set(), {}, {}, "")
        self.group = None
        self.username = None
        self._settle_join(error=TransportError(f"websocket close {code} {reason}"))
        self.emit("close", code, reason)
