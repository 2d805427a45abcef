from __future__ import annotations

import logging
import os
from typing import Optional


# third-party loggers that drown out the session at DEBUG
_NOISY = ("aioice", "aiortc")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure console logging for the client.

    At INFO the log follows a session's lifecycle: connect and close codes,
    joins and permission changes, stream creation, offers and answers
    (with SDP sizes rather than SDP bodies), replaced and closed streams,
    and file transfer invites and cancellations. DEBUG adds ICE candidates,
    retry scheduling, queued pre-join messages and every non-SDP send.

    The level comes from `level`, then PYRITE_LOG_LEVEL, then INFO. The ICE
    and RTP internals of aiortc stay at WARNING unless DEBUG is asked for.
    """

    effective_level = (level or os.environ.get("PYRITE_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    quiet = logging.NOTSET if effective_level == "DEBUG" else logging.WARNING
    for name in _NOISY:
        logging.getLogger(name).setLevel(quiet)
