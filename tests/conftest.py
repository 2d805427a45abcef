from __future__ import annotations

import asyncio
from typing import List

import pytest

from pyrite_sfu.config import ClientConfig
from pyrite_sfu.session import Session

from .fakes import FakePeerConnection, FakeSocket, settle


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(
        server_url="ws://sfu.test/ws",
        join_timeout=2.0,
        reconnect_delay=0,
        ice_retry_base_delay=0,
        file_chunk_size=4,
        file_low_water=8,
        file_done_timeout=0.05,
    )


@pytest.fixture
def sock() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def pcs() -> List[FakePeerConnection]:
    return []


@pytest.fixture
def session(config, sock, pcs) -> Session:
    async def connect_fn(url: str) -> FakeSocket:
        return sock

    def pc_factory(configuration) -> FakePeerConnection:
        pc = FakePeerConnection(configuration)
        pcs.append(pc)
        return pc

    return Session(config, pc_factory=pc_factory, connect_fn=connect_fn)


async def join(session: Session, sock: FakeSocket, permissions=("present",), **extra) -> str:
    """Connect, send the join and answer it the way the server does."""
    if session.channel is None or not session.channel.is_open:
        await session.connect()
    task = asyncio.ensure_future(session.join("lobby", "alice", "secret"))
    await settle()
    sock.feed(
        dict(
            {
                "type": "joined",
                "kind": "join",
                "group": "lobby",
                "username": "alice",
                "permissions": list(permissions),
                "value": "welcome",
            },
            **extra,
        )
    )
    return await task


@pytest.fixture
def joined(session, sock):
    async def _join(**kwargs) -> Session:
        await join(session, sock, **kwargs)
        return session

    return _join
