from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Set

if TYPE_CHECKING:
    from .rtc.stream import Stream


UserStreams = Dict[str, Dict[str, bool]]


@dataclass
class User:
    id: str
    username: str = ""
    permissions: Set[str] = field(default_factory=set)
    data: Dict[str, Any] = field(default_factory=dict)
    # label -> {kind: True}, derived from the user's streams
    streams: UserStreams = field(default_factory=dict)

    @classmethod
    def from_message(cls, msg: Dict[str, Any]) -> "User":
        return cls(
            id=str(msg.get("id", "")),
            username=msg.get("username") or "",
            permissions=set(msg.get("permissions") or []),
            data=msg.get("data") or {},
        )

    def update_from_message(self, msg: Dict[str, Any]) -> None:
        self.username = msg.get("username") or ""
        self.permissions = set(msg.get("permissions") or [])
        self.data = msg.get("data") or {}


def compute_streams(streams: Iterable["Stream"]) -> UserStreams:
    result: UserStreams = {}
    for s in streams:
        if s.media is None:
            continue
        kinds = result.setdefault(s.label or "", {})
        for t in s.media.get_tracks():
            kinds[t.kind] = True
    return result


def recompute_user_streams(user: User, streams: Iterable["Stream"]) -> bool:
    """Refresh `user.streams`; True only if the value actually changed."""
    new = compute_streams(streams)
    if new == user.streams:
        return False
    user.streams = new
    return True
