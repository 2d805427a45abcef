"""WebSocket signaling channel.

This is intentionally unaware of aiortc. It only speaks the JSON protocol,
and hands every known server message to the handler registered for its
type. Session semantics live in `pyrite_sfu.session`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import TransportError
from . import protocol
from .auth import resolve_credentials


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]
MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_connected: Optional[AsyncCallback] = None  # ()
	on_close: Optional[AsyncCallback] = None  # (code: int, reason: str)


class SignalingChannel:
	def __init__(
		self,
		url: str,
		client_id: str,
		callbacks: Optional[SignalingCallbacks] = None,
		*,
		connect_fn: Optional[Callable[[str], Any]] = None,
	):
		self.url = url
		self.client_id = client_id
		self.callbacks = callbacks or SignalingCallbacks()

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._connect_fn = connect_fn or websockets.connect
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._open = False
		self._closed_notified = False
		self._handlers: Dict[str, MessageHandler] = {}

	@property
	def is_open(self) -> bool:
		return self._ws is not None and self._open

	def set_handler(self, mtype: str, handler: MessageHandler) -> None:
		if mtype not in protocol.SERVER_MESSAGE_TYPES:
			raise ValueError(f"not a server message type: {mtype}")
		self._handlers[mtype] = handler

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await self._connect_fn(self.url)
		except Exception as e:
			logger.warning("signaling connect failed url=%s error=%s", self.url, e)
			self._ws = None
			raise TransportError(f"could not connect to {self.url}: {e}") from e

		self._open = True
		self._closed_notified = False
		await self.send(protocol.make_handshake(self.client_id))
		if self.callbacks.on_connected:
			await self.callbacks.on_connected()
		self._recv_task = asyncio.create_task(self._recv_loop(self._ws), name="signaling-recv")

	async def close(self, reason: str = "Close requested by client") -> None:
		"""Close the socket and wait until the close hook has run."""
		ws = self._ws
		if ws is None:
			return
		logger.info("signaling close reason=%s", reason)
		self._open = False
		try:
			await ws.close(code=1000, reason=reason)
		except Exception as e:
			logger.debug("signaling close error=%s", e)

		task = self._recv_task
		if task is None:
			await self._notify_closed(ws)
		elif task is not asyncio.current_task():
			try:
				await task
			except asyncio.CancelledError:
				pass

	async def send(self, payload: Dict[str, Any]) -> None:
		if not self.is_open:
			raise TransportError("Connection is not open")
		mtype = payload.get("type")
		if mtype in (protocol.OFFER, protocol.ANSWER):
			logger.info("signaling send type=%s id=%s sdp_len=%s", mtype, payload.get("id"), len(str(payload.get("sdp") or "")))
		elif mtype == protocol.ICE:
			logger.debug("signaling send type=ice id=%s", payload.get("id"))
		else:
			logger.debug("signaling send type=%s", mtype)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			assert self._ws is not None
			await self._ws.send(raw)

	async def join(
		self,
		group: str,
		username: str,
		credentials: protocol.Credentials,
		data: Optional[Dict[str, Any]] = None,
	) -> None:
		msg = protocol.make_join(group, username, data)
		msg.update(await resolve_credentials(username, credentials))
		logger.info("signaling join group=%s username=%s auth=%s", group, username, "token" if "token" in msg else "password")
		await self.send(msg)

	async def leave(self, group: str) -> None:
		await self.send(protocol.make_leave(group))

	async def dispatch(self, msg: Dict[str, Any]) -> None:
		"""Route one decoded server message."""
		mtype = msg.get("type")
		if mtype not in protocol.SERVER_MESSAGE_TYPES:
			logger.warning("signaling unexpected message type=%s", mtype)
			return

		if mtype in (protocol.HANDSHAKE, protocol.PONG):
			return

		if mtype == protocol.PING:
			await self.send(protocol.make_pong())
			return

		handler = self._handlers.get(mtype)
		if handler is None:
			logger.debug("signaling no handler type=%s", mtype)
			return
		await handler(msg)

	async def _recv_loop(self, ws: Any) -> None:
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except (TypeError, ValueError):
					logger.warning("signaling invalid json len=%s", len(raw) if raw else 0)
					continue

				if not isinstance(msg, dict):
					logger.warning("signaling invalid message kind=%s", type(msg).__name__)
					continue

				try:
					await self.dispatch(msg)
				except Exception:
					logger.exception("signaling handler failed type=%s", msg.get("type"))

		except asyncio.CancelledError:
			pass
		except ConnectionClosed as e:
			logger.info("signaling connection closed error=%s", e)
		except Exception:
			logger.exception("signaling recv loop crashed")
		finally:
			logger.debug("signaling recv loop stopped")
			self._open = False
			try:
				await ws.close()
			except Exception:
				pass
			await self._notify_closed(ws)

	async def _notify_closed(self, ws: Any) -> None:
		if self._closed_notified:
			return
		self._closed_notified = True
		code = getattr(ws, "close_code", None) or 1006
		reason = getattr(ws, "close_reason", None) or ""
		logger.info("signaling closed code=%s reason=%s", code, reason)
		if self._ws is ws:
			self._ws = None
		if self.callbacks.on_close:
			await self.callbacks.on_close(code, reason)
