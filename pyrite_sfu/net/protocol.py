"""Signaling protocol helpers.

The SFU expects one JSON object per WebSocket frame. Every message has a
`type` discriminator; client and server use disjoint subsets of the types
below (a few, like `ping`/`pong`, flow both ways).
"""

from __future__ import annotations

import secrets
from typing import Any, Dict, List, Optional, TypedDict, Union


PROTOCOL_VERSION = ["2"]

# Message type constants
HANDSHAKE = "handshake"
JOIN = "join"
JOINED = "joined"

OFFER = "offer"
ANSWER = "answer"
ICE = "ice"
RENEGOTIATE = "renegotiate"
CLOSE = "close"
ABORT = "abort"

USER = "user"
CHAT = "chat"
CHATHISTORY = "chathistory"
USERMESSAGE = "usermessage"
USERACTION = "useraction"
GROUPACTION = "groupaction"

REQUEST = "request"
REQUEST_STREAM = "requestStream"

PING = "ping"
PONG = "pong"

# Closed set of types the server may send.
SERVER_MESSAGE_TYPES = frozenset(
	{
		HANDSHAKE,
		OFFER,
		ANSWER,
		RENEGOTIATE,
		CLOSE,
		ABORT,
		ICE,
		JOINED,
		USER,
		CHAT,
		CHATHISTORY,
		USERMESSAGE,
		PING,
		PONG,
	}
)

# `joined` kinds
JOINED_JOIN = "join"
JOINED_CHANGE = "change"
JOINED_FAIL = "fail"
JOINED_LEAVE = "leave"

# `user` kinds
USER_ADD = "add"
USER_CHANGE = "change"
USER_DELETE = "delete"

# usermessage kind carrying the file transfer sub-protocol
FILETRANSFER = "filetransfer"

FT_INVITE = "invite"
FT_OFFER = "offer"
FT_ANSWER = "answer"
FT_UPICE = "upice"
FT_DOWNICE = "downice"
FT_CANCEL = "cancel"
FT_REJECT = "reject"


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class IceServerDict(TypedDict, total=False):
	urls: Union[str, List[str]]
	username: str
	credential: str


class RtcConfigurationDict(TypedDict, total=False):
	iceServers: List[IceServerDict]
	iceTransportPolicy: str


class PasswordCredentials(TypedDict):
	type: str  # "password"
	password: str


class TokenCredentials(TypedDict):
	type: str  # "token"
	token: str


class AuthServerCredentials(TypedDict):
	type: str  # "authServer"
	authServer: str
	location: str
	password: str


Credentials = Union[str, PasswordCredentials, TokenCredentials, AuthServerCredentials]


def new_random_id() -> str:
	"""128 random bits as lowercase hex."""
	return secrets.token_hex(16)


def make_handshake(client_id: str) -> Dict[str, Any]:
	return {"type": HANDSHAKE, "version": PROTOCOL_VERSION, "id": client_id}


def make_join(group: str, username: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": JOIN, "kind": "join", "group": group, "username": username}
	if data:
		msg["data"] = data
	return msg


def make_leave(group: str) -> Dict[str, Any]:
	return {"type": JOIN, "kind": "leave", "group": group}


def make_pong() -> Dict[str, Any]:
	return {"type": PONG}


def make_offer(
	stream_id: str,
	*,
	label: Optional[str],
	replace: Optional[str],
	sdp: str,
	source: str,
	username: Optional[str],
	renegotiate: bool,
) -> Dict[str, Any]:
	return {
		"type": OFFER,
		"id": stream_id,
		"kind": "renegotiate" if renegotiate else "",
		"label": label,
		"replace": replace,
		"sdp": sdp,
		"source": source,
		"username": username,
	}


def make_answer(stream_id: str, sdp: str) -> Dict[str, Any]:
	return {"type": ANSWER, "id": stream_id, "sdp": sdp}


def make_ice(stream_id: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"type": ICE, "id": stream_id, "candidate": candidate}


def make_renegotiate(stream_id: str) -> Dict[str, Any]:
	return {"type": RENEGOTIATE, "id": stream_id}


def make_close(stream_id: str) -> Dict[str, Any]:
	return {"type": CLOSE, "id": stream_id}


def make_abort(stream_id: str) -> Dict[str, Any]:
	return {"type": ABORT, "id": stream_id}


def make_request(what: Any) -> Dict[str, Any]:
	return {"type": REQUEST, "request": what}


def make_request_stream(stream_id: str, what: Any) -> Dict[str, Any]:
	return {"type": REQUEST_STREAM, "id": stream_id, "request": what}


def make_addressed(
	mtype: str,
	*,
	kind: str,
	source: str,
	username: Optional[str],
	dest: Optional[str] = None,
	value: Any = None,
	noecho: Optional[bool] = None,
) -> Dict[str, Any]:
	"""Build a chat / useraction / usermessage / groupaction message."""
	msg: Dict[str, Any] = {
		"type": mtype,
		"kind": kind,
		"source": source,
		"username": username,
		"value": value,
	}
	if mtype != GROUPACTION:
		msg["dest"] = dest
	if noecho is not None:
		msg["noecho"] = noecho
	return msg
