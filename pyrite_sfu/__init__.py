"""Client for a Galène-style SFU: signaling, stream negotiation and file transfer."""

from .config import ClientConfig
from .errors import (
    AuthServerError,
    CommandError,
    FileTransferError,
    JoinError,
    NegotiationError,
    ProtocolError,
    SfuError,
    TransportError,
)
from .rtc.file_transfer import FileTransfer, TransferState
from .rtc.media import LocalMedia, MediaStream, MutableTrack
from .rtc.stream import Stream
from .session import Session
from .users import User

__all__ = [
    "AuthServerError",
    "ClientConfig",
    "CommandError",
    "FileTransfer",
    "FileTransferError",
    "JoinError",
    "LocalMedia",
    "MediaStream",
    "MutableTrack",
    "NegotiationError",
    "ProtocolError",
    "SfuError",
    "Session",
    "Stream",
    "TransferState",
    "TransportError",
    "User",
]
