"""ICE helpers: wire candidates and server-supplied RTC configuration."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import IceCandidateDict, RtcConfigurationDict


def candidate_to_json(candidate: Any) -> IceCandidateDict:
    """Serialize a local candidate the way browsers do."""
    if isinstance(candidate, dict):
        return candidate  # type: ignore[return-value]
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def rtc_configuration_from_json(conf: Optional[RtcConfigurationDict]) -> Optional[RTCConfiguration]:
    """Convert the server's `rtcConfiguration` object for aiortc.

    aiortc has no notion of `iceTransportPolicy`; it is ignored.
    """
    if conf is None:
        return None
    if isinstance(conf, RTCConfiguration):
        return conf
    servers: List[RTCIceServer] = []
    for s in conf.get("iceServers") or []:
        urls = s.get("urls")
        if not urls:
            continue
        servers.append(
            RTCIceServer(
                urls=urls,
                username=s.get("username"),
                credential=s.get("credential"),
            )
        )
    return RTCConfiguration(iceServers=servers)
