"""
ICE server configuration and wire helpers for descriptions and candidates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..config import EngineConfig

LOG = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


@dataclass
class IceSettings:
    """
    STUN/TURN servers applied to every peer connection.

    A TURN url is only used when both username and credential are present;
    the ``turns:`` variant of the url is added alongside it.
    """

    stun_servers: List[str] = field(default_factory=list)
    turn_url: Optional[str] = None
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None

    @classmethod
    def from_config(cls, config: EngineConfig) -> "IceSettings":
        return cls(
            stun_servers=list(config.stun_servers),
            turn_url=config.turn_url,
            turn_username=config.turn_username,
            turn_credential=config.turn_credential,
        )

    @property
    def has_turn(self) -> bool:
        return bool(self.turn_url and self.turn_username and self.turn_credential)

    def iter_servers(self) -> List[RTCIceServer]:
        servers = [RTCIceServer(urls=url) for url in self.stun_servers]
        if self.has_turn:
            turn_url = str(self.turn_url)
            urls = [turn_url]
            if turn_url.startswith("turn:"):
                urls.append("turns:" + turn_url[len("turn:"):])
            servers.append(
                RTCIceServer(
                    urls=urls,
                    username=self.turn_username,
                    credential=self.turn_credential,
                )
            )
            LOG.info("TURN server configured: %s", turn_url)
        elif self.turn_url:
            LOG.warning("TURN url set without credentials; ignoring it")
        return servers

    def to_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=self.iter_servers())


def description_to_payload(description: RTCSessionDescription) -> Dict[str, str]:
    return {"sdp": description.sdp, "type": description.type}


def description_from_payload(payload: Dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=str(payload.get("sdp") or ""), type=str(payload.get("type") or ""))


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[RTCIceCandidate]:
    """
    Parse a browser-style candidate dict.  Returns None for the empty
    end-of-candidates marker.
    """

    if not payload:
        return None
    line = str(payload.get("candidate") or "").strip()
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    index = payload.get("sdpMLineIndex")
    candidate.sdpMLineIndex = int(index) if index is not None else None
    return candidate
