"""Credential resolution for the `join` message."""

from __future__ import annotations

import logging
from typing import Any, Dict

import aiohttp

from ..errors import AuthServerError
from . import protocol


logger = logging.getLogger(__name__)


async def resolve_credentials(username: str, credentials: protocol.Credentials) -> Dict[str, str]:
	"""Return the `password` or `token` fields to merge into a join message.

	A bare string is a password. Dicts are dispatched on their `type`;
	`authServer` credentials are exchanged for a token over HTTP, falling
	back to password auth when the server has nothing to say.
	"""

	if isinstance(credentials, str):
		return {"password": credentials}

	ctype = credentials.get("type")
	if ctype == "password":
		return {"password": credentials["password"]}  # type: ignore[typeddict-item]
	if ctype == "token":
		return {"token": credentials["token"]}  # type: ignore[typeddict-item]
	if ctype == "authServer":
		token = await fetch_token(
			credentials["authServer"],  # type: ignore[typeddict-item]
			location=credentials["location"],  # type: ignore[typeddict-item]
			password=credentials["password"],  # type: ignore[typeddict-item]
			username=username,
		)
		if token is None:
			return {"password": credentials["password"]}  # type: ignore[typeddict-item]
		return {"token": token}
	raise ValueError(f"Unknown credentials type {ctype}")


async def fetch_token(url: str, *, location: str, password: str, username: str) -> Any:
	"""POST to the auth server; None means "use the password instead"."""
	body = {"location": location, "password": password, "username": username}
	logger.info("auth server request url=%s username=%s", url, username)
	async with aiohttp.ClientSession() as http:
		async with http.post(url, json=body) as r:
			if r.status < 200 or r.status >= 300:
				raise AuthServerError(f"The authorisation server said {r.status} {r.reason}")
			if r.status == 204:
				logger.debug("auth server returned no content, using password")
				return None
			data = await r.text()
			if not data:
				logger.debug("auth server returned empty body, using password")
				return None
			ctype = r.headers.get("Content-Type")
			if not ctype:
				raise AuthServerError("The authorisation server didn't return a content type")
			ctype = ctype.split(";", 1)[0].strip()
			if ctype.lower() != "application/jwt":
				raise AuthServerError(f"The authorisation server returned {ctype}")
			logger.debug("auth server returned token len=%s", len(data))
			return data
