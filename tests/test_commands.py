from __future__ import annotations

import pytest

from pyrite_sfu.commands import parse_command, run_command, send_line
from pyrite_sfu.errors import CommandError

from .fakes import settle
from .test_session import user_add


def test_parse_command_quoting():
    assert parse_command("bob hello world") == ("bob", ["hello", "world"])
    assert parse_command('  "bob smith" hi') == ("bob smith", ["hi"])
    assert parse_command("'it\\'s' x") == ("it's", ["x"])
    assert parse_command("") == ("", [])


async def with_bob(joined, sock, permissions=("present",)):
    session = await joined(permissions=permissions)
    sock.feed(user_add("bob-id", "bob"))
    await settle()
    return session


async def test_operator_commands_need_op(joined, sock):
    session = await with_bob(joined, sock)
    with pytest.raises(CommandError, match="not an operator"):
        await run_command(session, "/op bob")
    assert sock.of_type("useraction") == []


async def test_user_action(joined, sock):
    session = await with_bob(joined, sock, permissions=("op", "present"))
    await run_command(session, "/kick bob bye now")
    action = sock.of_type("useraction")[0]
    assert action["kind"] == "kick"
    assert action["dest"] == "bob-id"
    assert action["value"] == "bye now"
    assert action["source"] == session.id


async def test_unknown_user(joined, sock):
    session = await with_bob(joined, sock, permissions=("op",))
    with pytest.raises(CommandError, match="Unknown user carol"):
        await run_command(session, "/op carol")


async def test_group_actions(joined, sock):
    session = await with_bob(joined, sock, permissions=("op", "record"))
    await run_command(session, "/lock back soon")
    await run_command(session, "/record")
    actions = sock.of_type("groupaction")
    assert [(a["kind"], a["value"]) for a in actions] == [("lock", "back soon"), ("record", None)]
    assert all("dest" not in a for a in actions)


async def test_warn_and_wall(joined, sock):
    session = await with_bob(joined, sock, permissions=("op",))
    with pytest.raises(CommandError, match="empty message"):
        await run_command(session, "/warn bob")
    await run_command(session, "/warn bob behave")
    await run_command(session, "/muteall")
    messages = sock.of_type("usermessage")
    assert [(m["kind"], m["dest"], m["value"]) for m in messages] == [
        ("warning", "bob-id", "behave"),
        ("mute", None, None),
    ]
    assert messages[1]["noecho"] is True


async def test_help_hides_unavailable_commands(joined, sock):
    session = await with_bob(joined, sock)
    text = await run_command(session, "/help")
    assert "/leave: leave group" in text
    assert "/kick" not in text


async def test_unknown_command(joined, sock):
    session = await with_bob(joined, sock)
    with pytest.raises(CommandError, match="Unknown command /frobnicate"):
        await run_command(session, "/frobnicate")


async def test_send_line(joined, sock):
    session = await with_bob(joined, sock)
    await send_line(session, "hello")
    await send_line(session, "//not a command")
    await send_line(session, "/me waves")
    chats = sock.of_type("chat")
    assert [(c["kind"], c["value"]) for c in chats] == [("", "hello"), ("", "/not a command"), ("me", "waves")]
