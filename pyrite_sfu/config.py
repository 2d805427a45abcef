from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return int(v)
	except Exception:
		return default


def _env_float(name: str, default: float) -> float:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return float(v)
	except Exception:
		return default


@dataclass
class ClientConfig:
	"""Tunables for a Session.

	Optional env vars (all prefixed PYRITE_):
	- SERVER_URL, GROUP, USERNAME, PASSWORD: defaults for the console client.
	- JOIN_TIMEOUT: seconds to wait for the server's `joined` reply.
	- RECONNECT_DELAY: pause after closing a previous socket.
	- PENDING_STALE_AFTER: age after which queued pre-join messages are dropped.
	- ICE_RETRY_MAX / ICE_RETRY_BASE_DELAY: ICE failure backoff.
	- FILE_CHUNK_SIZE / FILE_LOW_WATER / FILE_DONE_TIMEOUT: data channel transfer.
	- STATS_INTERVAL: seconds between stream statistics polls, 0 disables.
	"""

	server_url: str = "ws://127.0.0.1:8443/ws"
	group: str = ""
	username: str = ""
	password: str = ""

	join_timeout: float = 30.0
	reconnect_delay: float = 0.15
	pending_stale_after: float = 5.0

	ice_retry_max: int = 3
	ice_retry_base_delay: float = 1.0

	file_chunk_size: int = 16384
	file_low_water: int = 65536
	file_done_timeout: float = 2.0

	stats_interval: float = 0.0

	@classmethod
	def from_env(cls) -> "ClientConfig":
		return cls(
			server_url=os.environ.get("PYRITE_SERVER_URL", cls.server_url),
			group=os.environ.get("PYRITE_GROUP", cls.group),
			username=os.environ.get("PYRITE_USERNAME", os.environ.get("USER", cls.username)),
			password=os.environ.get("PYRITE_PASSWORD", cls.password),
			join_timeout=_env_float("PYRITE_JOIN_TIMEOUT", cls.join_timeout),
			reconnect_delay=_env_float("PYRITE_RECONNECT_DELAY", cls.reconnect_delay),
			pending_stale_after=_env_float("PYRITE_PENDING_STALE_AFTER", cls.pending_stale_after),
			ice_retry_max=_env_int("PYRITE_ICE_RETRY_MAX", cls.ice_retry_max),
			ice_retry_base_delay=_env_float("PYRITE_ICE_RETRY_BASE_DELAY", cls.ice_retry_base_delay),
			file_chunk_size=_env_int("PYRITE_FILE_CHUNK_SIZE", cls.file_chunk_size),
			file_low_water=_env_int("PYRITE_FILE_LOW_WATER", cls.file_low_water),
			file_done_timeout=_env_float("PYRITE_FILE_DONE_TIMEOUT", cls.file_done_timeout),
			stats_interval=_env_float("PYRITE_STATS_INTERVAL", cls.stats_interval),
		)
