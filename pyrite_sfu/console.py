"""Line-oriented front-end for a Session.

Prints roster, chat and transfer events to stdout and turns stdin lines
into chat messages or slash commands. Besides the commands of
`pyrite_sfu.commands` it understands:

- `/sendfile user path`
- `/accept [n]` and `/reject [n]` for incoming file invitations
- `/mute audio|video` and `/unmute audio|video` for published media
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from aiortc.contrib.media import MediaBlackhole

from .commands import find_user_id, parse_command, send_line
from .config import ClientConfig
from .errors import SfuError
from .net import protocol
from .rtc.file_transfer import FileTransfer
from .rtc.media import LocalMedia
from .rtc.stream import Stream
from .session import Session


logger = logging.getLogger(__name__)


class Console:
    def __init__(self, config: ClientConfig, *, download_dir: str = "."):
        self.config = config
        self.download_dir = download_dir
        self.session = Session(config)
        self.media: Optional[LocalMedia] = None
        self._invitations: List[FileTransfer] = []
        self._sinks: Dict[str, List[MediaBlackhole]] = {}

        self._wire_session()

    def _print(self, text: str) -> None:
        print(text, flush=True)

    def _wire_session(self) -> None:
        s = self.session
        s.on("joined", self._on_joined)
        s.on("user", self._on_user)
        s.on("chat", self._on_chat)
        s.on("usermessage", self._on_usermessage)
        s.on("downstream", self._on_downstream)
        s.on("filetransfer", self._on_filetransfer)
        s.on("close", self._on_close)

    async def run(
        self,
        credentials: protocol.Credentials,
        *,
        publish: Optional[str] = None,
        publish_format: Optional[str] = None,
        label: str = "camera",
    ) -> int:
        try:
            await self.session.connect(self.config.server_url)
            message = await self.session.join(self.config.group, self.config.username, credentials)
        except (SfuError, asyncio.TimeoutError) as e:
            logger.error("join failed: %s", e)
            self._print(f"Could not join: {e}")
            await self.session.close()
            return 1

        if message:
            self._print(message)

        try:
            if publish:
                await self.publish(publish, format=publish_format, label=label)
            await self._read_stdin()
        finally:
            await self.shutdown()
        return 0

    async def publish(self, source: str, *, format: Optional[str] = None, label: str = "camera") -> Stream:
        self.media = LocalMedia.open(source, format=format)
        stream = await self.session.new_up_stream(label=label)
        stream.on("status", lambda state: logger.info("up stream %s ice=%s", stream.id, state))
        stream.on("close", lambda replace: logger.info("up stream %s closed replace=%s", stream.id, replace))
        stream.set_media(self.media.stream)
        return stream

    async def shutdown(self) -> None:
        if self.media is not None:
            self.media.close()
            self.media = None
        for sinks in self._sinks.values():
            for sink in sinks:
                await sink.stop()
        self._sinks.clear()
        await self.session.close()

    async def _read_stdin(self) -> None:
        loop = asyncio.get_running_loop()
        while self.session.channel is not None and self.session.channel.is_open:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                return
            line = line.rstrip("\n")
            if not line:
                continue
            try:
                output = await self.handle_line(line)
            except SfuError as e:
                self._print(f"error: {e}")
                continue
            if output:
                self._print(output)

    async def handle_line(self, line: str) -> Optional[str]:
        name, _, rest = line[1:].partition(" ") if line.startswith("/") else ("", "", "")
        if name == "sendfile":
            user, args = parse_command(rest)
            uid = find_user_id(self.session, user)
            if uid is None or not args:
                return "usage: /sendfile user path"
            f = await self.session.send_file(uid, " ".join(args))
            return f"offering {f.name} ({f.size} bytes) to {user}"
        if name in ("accept", "reject"):
            return await self._answer_invitation(name == "accept", rest)
        if name in ("mute", "unmute") and rest in ("audio", "video"):
            if self.media is None:
                return "nothing published"
            self.media.mute(rest, name == "mute")
            return None
        return await send_line(self.session, line)

    async def _answer_invitation(self, accept: bool, rest: str) -> str:
        pending = [f for f in self._invitations if f.state.value == "inviting"]
        if not pending:
            return "no pending file transfer"
        index = int(rest) if rest.strip().isdigit() else 0
        if index >= len(pending):
            return f"no file transfer #{index}"
        f = pending[index]
        self._invitations.remove(f)
        if accept:
            await f.receive()
            return f"receiving {f.name}"
        await f.cancel("rejected")
        return f"rejected {f.name}"

    # -- session events

    def _on_joined(self, kind: str, group: str, permissions: Any, status: Any, data: Any, message: str) -> None:
        self._print(f"* {kind} {group} permissions={','.join(sorted(permissions or []))}")
        if kind == protocol.JOINED_FAIL and message:
            self._print(f"* {message}")

    def _on_user(self, uid: str, kind: str) -> None:
        user = self.session.users.get(uid)
        name = user.username if user else uid
        if kind == protocol.USER_CHANGE and user is not None:
            self._print(f"* {name} streams={user.streams}")
        elif kind != protocol.USER_CHANGE:
            self._print(f"* user {kind}: {name}")

    def _on_chat(self, source, dest, username, time, privileged, history, kind, value) -> None:
        prefix = "[history] " if history else ""
        if kind == "me":
            self._print(f"{prefix}* {username} {value}")
        else:
            self._print(f"{prefix}<{username or 'server'}> {value}")

    def _on_usermessage(self, source, dest, username, time, privileged, kind, value) -> None:
        self._print(f"[{kind}] {username or 'server'}: {value}")

    def _on_downstream(self, stream: Stream) -> None:
        logger.info("down stream id=%s label=%s from=%s", stream.id, stream.label, stream.username)
        self._sinks[stream.id] = []

        async def on_downtrack(track) -> None:
            # remote tracks must be consumed or their frames pile up
            sink = MediaBlackhole()
            sink.addTrack(track)
            await sink.start()
            self._sinks.setdefault(stream.id, []).append(sink)

        async def on_close(replace: bool) -> None:
            for sink in self._sinks.pop(stream.id, []):
                await sink.stop()

        stream.on("downtrack", on_downtrack)
        stream.on("close", on_close)
        stream.on("status", lambda state: logger.debug("down stream %s ice=%s", stream.id, state))

    def _on_filetransfer(self, f: FileTransfer) -> None:
        if f.up:
            f.on("state", lambda state, data: self._print(f"* {f.name} -> {f.username}: {state or 'new'}"))
            return

        index = len([x for x in self._invitations if x.state.value == "inviting"])
        self._invitations.append(f)
        self._print(f"* {f.username} offers {f.name} ({f.size} bytes), /accept {index} or /reject {index}")

        def on_state(state: str, data: Any) -> None:
            if state == "done" and isinstance(data, bytes):
                path = os.path.join(self.download_dir, os.path.basename(f.name) or f.id)
                with open(path, "wb") as fp:
                    fp.write(data)
                self._print(f"* saved {path}")
            elif state == "cancelled":
                self._print(f"* {f.name} cancelled: {data or ''}")

        f.on("state", on_state)

    def _on_close(self, code: int, reason: str) -> None:
        self._print(f"* disconnected ({code} {reason})")
