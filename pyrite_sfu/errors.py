"""Exception hierarchy.

Only transport and join failures are raised to the caller of
`Session.connect` / `Session.join`. Everything scoped to a single stream or
file transfer is reported through that object's events instead.
"""

from __future__ import annotations


class SfuError(Exception):
	pass


class TransportError(SfuError):
	"""The WebSocket could not be opened, or is not open."""


class JoinError(SfuError):
	"""The server refused the join (`joined` with kind `fail`)."""


class AuthServerError(SfuError):
	"""The external authorisation server returned something unusable."""


class ProtocolError(SfuError):
	"""An inbound message was malformed or referenced an unknown object."""


class NegotiationError(SfuError):
	"""SDP creation or application failed for one stream."""


class FileTransferError(SfuError):
	pass


class CommandError(SfuError):
	"""A chat command was malformed or is not permitted."""
