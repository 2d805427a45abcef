"""Chat slash commands (`/op bob`, `/lock`, ...)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import CommandError

if TYPE_CHECKING:
    from .session import Session


logger = logging.getLogger(__name__)


CommandFunc = Callable[["Session", str, str], Awaitable[Optional[str]]]


@dataclass
class Command:
    run: CommandFunc
    description: Optional[str] = None
    parameters: Optional[str] = None
    # returns an error message when the command is not available
    predicate: Optional[Callable[["Session"], Optional[str]]] = None


def parse_command(line: str) -> Tuple[str, List[str]]:
    """Split off the first word, which may be quoted and use backslash escapes."""
    i = 0
    while i < len(line) and line[i] == " ":
        i += 1
    end = " "
    if i < len(line) and line[i] in ("'", '"'):
        end = line[i]
        i += 1
    first = ""
    while i < len(line):
        if line[i] == end:
            if end != " ":
                i += 1
            break
        if line[i] == "\\" and i < len(line) - 1:
            i += 1
        first += line[i]
        i += 1
    rest = line[i:]
    return first, rest.split()


def _operator(session: "Session") -> Optional[str]:
    if "op" in session.permissions:
        return None
    return "You are not an operator"


def _recorder(session: "Session") -> Optional[str]:
    if "record" in session.permissions:
        return None
    return "You are not allowed to record"


def find_user_id(session: "Session", username: str) -> Optional[str]:
    for user in session.users.values():
        if user.username == username:
            return user.id
    return None


def _target(session: "Session", c: str, rest: str) -> Tuple[str, List[str]]:
    name, args = parse_command(rest)
    if not name:
        raise CommandError(f"/{c} requires parameters")
    uid = find_user_id(session, name)
    if uid is None:
        raise CommandError(f"Unknown user {name}")
    return uid, args


async def _user_command(session: "Session", c: str, rest: str) -> None:
    uid, args = _target(session, c, rest)
    await session.user_action(c, uid, " ".join(args))


async def _user_message(session: "Session", c: str, rest: str) -> None:
    uid, args = _target(session, c, rest)
    await session.send_user_message(c, uid, " ".join(args))


async def _help(session: "Session", c: str, rest: str) -> str:
    lines = []
    for name, cmd in COMMANDS.items():
        if not cmd.description:
            continue
        if cmd.predicate and cmd.predicate(session):
            continue
        params = f" {cmd.parameters}" if cmd.parameters else ""
        lines.append(f"/{name}{params}: {cmd.description}")
    return "\n".join(sorted(lines))


async def _me(session: "Session", c: str, rest: str) -> None:
    await session.chat("me", "", rest)


async def _leave(session: "Session", c: str, rest: str) -> None:
    if session.channel is None or not session.channel.is_open:
        raise CommandError("Not connected")
    await session.close()


def _group_action(kind: str, with_message: bool = False) -> CommandFunc:
    async def run(session: "Session", c: str, rest: str) -> None:
        await session.group_action(kind, rest if with_message else None)

    return run


async def _renegotiate(session: "Session", c: str, rest: str) -> None:
    for s in list(session.up.values()) + list(session.down.values()):
        await s.restart_ice()


async def _muteall(session: "Session", c: str, rest: str) -> None:
    await session.send_user_message("mute", None, None, noecho=True)


async def _warn(session: "Session", c: str, rest: str) -> None:
    uid, args = _target(session, c, rest)
    if not args:
        raise CommandError("empty message")
    await session.send_user_message("warning", uid, " ".join(args))


async def _wall(session: "Session", c: str, rest: str) -> None:
    if not rest.strip():
        raise CommandError("empty message")
    await session.send_user_message("warning", "", rest)


COMMANDS: Dict[str, Command] = {
    "help": Command(_help, "display this help"),
    "me": Command(_me),
    "leave": Command(_leave, "leave group"),
    "clear": Command(_group_action("clearchat"), "clear the chat history", predicate=_operator),
    "lock": Command(_group_action("lock", with_message=True), "lock this group", "[message]", _operator),
    "unlock": Command(_group_action("unlock"), "unlock this group, revert the effect of /lock", predicate=_operator),
    "record": Command(_group_action("record"), "start recording", predicate=_recorder),
    "unrecord": Command(_group_action("unrecord"), "stop recording", predicate=_recorder),
    "subgroups": Command(_group_action("subgroups"), "list subgroups", predicate=_operator),
    "renegotiate": Command(_renegotiate, "renegotiate media streams"),
    "kick": Command(_user_command, "kick out a user", "user [message]", _operator),
    "op": Command(_user_command, "give operator status", "user", _operator),
    "unop": Command(_user_command, "revoke operator status", "user", _operator),
    "present": Command(_user_command, "give user the right to present", "user", _operator),
    "unpresent": Command(_user_command, "revoke the right to present", "user", _operator),
    "mute": Command(_user_message, "mute a remote user", "user", _operator),
    "muteall": Command(_muteall, "mute all remote users", predicate=_operator),
    "warn": Command(_warn, "send a warning to a user", "user message", _operator),
    "wall": Command(_wall, "send a warning to all users", "message", _operator),
}


async def run_command(session: "Session", line: str) -> Optional[str]:
    """Run a `/command args` line; returns text to show locally, if any."""
    if not line.startswith("/"):
        raise CommandError("not a command")
    body = line[1:]
    name, _, rest = body.partition(" ")
    cmd = COMMANDS.get(name)
    if cmd is None:
        raise CommandError(f"Unknown command /{name}, type /help for help")
    if cmd.predicate:
        denied = cmd.predicate(session)
        if denied:
            raise CommandError(denied)
    logger.debug("command run name=%s", name)
    return await cmd.run(session, name, rest.strip())


async def send_line(session: "Session", line: str) -> Optional[str]:
    """Send a line typed by the user: a command, or a chat message.

    A leading `//` escapes a literal slash.
    """
    if line.startswith("//"):
        await session.chat("", "", line[1:])
        return None
    if line.startswith("/"):
        return await run_command(session, line)
    await session.chat("", "", line)
    return None
