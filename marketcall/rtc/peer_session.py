"""One WebRTC peer connection for one call session."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp

from ..config import CallConfig
from ..errors import ProtocolViolation, RelayUnavailable
from ..net import protocol
from ..net.protocol import IceCandidateDict
from ..net.signaling_client import SignalRelayClient
from .candidate_buffer import PendingCandidateQueue
from .media import MediaHandles
from .models import CallSessionInfo


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]
PeerConnectionFactory = Callable[[RTCConfiguration], Any]


def default_peer_connection_factory(configuration: RTCConfiguration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
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
    if len(cand_sdp.split()) < 8:
        raise ValueError(f"malformed candidate: {cand_sdp!r}")
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


@dataclass
class PeerCallbacks:
    on_transport_state: Optional[AsyncPeerCallback] = None  # (state: str)
    on_remote_track: Optional[AsyncPeerCallback] = None  # (track: MediaStreamTrack)


class PeerSession:
    """Owns the native peer connection, the local media and the candidate queue.

    Remote candidates are applied only after a remote description is set; until
    then they wait in the `PendingCandidateQueue`. The check-and-apply and the
    set-and-drain both run under `_lock`, so a candidate can never overtake the
    description it belongs to.
    """

    def __init__(
        self,
        info: CallSessionInfo,
        signaling: SignalRelayClient,
        config: Optional[CallConfig] = None,
        callbacks: Optional[PeerCallbacks] = None,
        pc_factory: PeerConnectionFactory = default_peer_connection_factory,
    ):
        self.info = info
        self._signaling = signaling
        self._config = config or CallConfig()
        self._callbacks = callbacks or PeerCallbacks()
        self._pc_factory = pc_factory

        self._pc: Optional[Any] = None
        self._media: Optional[MediaHandles] = None
        self._pending = PendingCandidateQueue(info.session_id)
        self._remote_description_set = False
        self._answer_seen = False
        self._lock = asyncio.Lock()
        self._announced: set[str] = set()
        self.remote_tracks: List[Any] = []
        self._closed = False

    @property
    def media(self) -> Optional[MediaHandles]:
        return self._media

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_description_set(self) -> bool:
        return self._remote_description_set

    @property
    def pending_candidates(self) -> int:
        return len(self._pending)

    async def open(self, media: MediaHandles) -> None:
        """Create the peer connection and attach the local tracks."""
        if self._closed:
            media.release()
            raise RuntimeError("peer session already closed")
        if self._pc is not None:
            raise RuntimeError("peer session already open")
        self._media = media
        pc = self._pc_factory(self._config.rtc_configuration())
        self._pc = pc

        @pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            candidate = getattr(event, "candidate", event)
            if candidate is None:
                return
            await self._send_local_candidate(candidate)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = pc.connectionState
            logger.info("pc session=%s connectionState=%s", self.info.session_id, state)
            if self._closed:
                return
            if self._callbacks.on_transport_state:
                await self._callbacks.on_transport_state(state)

        @pc.on("track")
        async def on_track(track) -> None:
            logger.info("pc session=%s remote track kind=%s", self.info.session_id, track.kind)
            self.remote_tracks.append(track)
            if self._callbacks.on_remote_track:
                await self._callbacks.on_remote_track(track)

        for track in media.tracks:
            pc.addTrack(track)
        logger.debug("pc session=%s opened tracks=%s", self.info.session_id, len(media.tracks))

    async def send_offer(self) -> None:
        """Caller side: create and publish the offer."""
        pc = self._require_pc()
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        sdp = pc.localDescription.sdp
        await self._signaling.send(
            protocol.make_offer(
                self.info.session_id, self.info.local_participant_id, self.info.remote_participant_id, self.info.mode, sdp
            )
        )
        await self._announce_sdp_candidates()

    async def send_answer(self, offer_sdp: str) -> None:
        """Callee side: apply the received offer, then create and publish the answer."""
        pc = self._require_pc()
        await self._set_remote_description(RTCSessionDescription(sdp=offer_sdp, type="offer"))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        sdp = pc.localDescription.sdp
        await self._signaling.send(
            protocol.make_answer(
                self.info.session_id, self.info.local_participant_id, self.info.remote_participant_id, self.info.mode, sdp
            )
        )
        await self._announce_sdp_candidates()

    async def apply_answer(self, answer_sdp: str) -> None:
        """Caller side: apply the remote answer. A second answer is a protocol violation."""
        if self._answer_seen or self._remote_description_set:
            raise ProtocolViolation("answer already applied")
        if self._pc is None or self._pc.localDescription is None:
            raise ProtocolViolation("answer received before an offer was sent")
        self._answer_seen = True
        await self._set_remote_description(RTCSessionDescription(sdp=answer_sdp, type="answer"))

    async def add_remote_candidate(self, candidate: IceCandidateDict) -> None:
        async with self._lock:
            if self._closed:
                return
            if self._remote_description_set:
                await self._apply_candidate(candidate)
            else:
                self._pending.push(self.info.session_id, candidate)

    async def close(self) -> None:
        """Release local media, then close the peer connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._media is not None:
                self._media.release()
        finally:
            pc = self._pc
            if pc is not None:
                await pc.close()
        logger.debug("pc session=%s closed", self.info.session_id)

    async def _set_remote_description(self, description: RTCSessionDescription) -> None:
        pc = self._require_pc()
        await pc.setRemoteDescription(description)
        async with self._lock:
            self._remote_description_set = True
            for candidate in self._pending.drain():
                await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidateDict) -> None:
        try:
            cand = candidate_from_json(dict(candidate))
        except (ValueError, IndexError) as e:
            logger.warning("pc session=%s dropped malformed candidate: %s", self.info.session_id, e)
            return
        try:
            await self._require_pc().addIceCandidate(cand)
        except Exception:
            # Candidates are best-effort; others may still connect.
            logger.warning("pc session=%s addIceCandidate failed", self.info.session_id, exc_info=True)

    async def _send_local_candidate(self, candidate: RTCIceCandidate) -> None:
        payload = candidate_to_json(candidate)
        if payload["candidate"] in self._announced:
            return
        self._announced.add(payload["candidate"])
        try:
            await self._signaling.send(
                protocol.make_ice(
                    self.info.session_id,
                    self.info.local_participant_id,
                    self.info.remote_participant_id,
                    self.info.mode,
                    payload,
                )
            )
        except RelayUnavailable:
            logger.warning("pc session=%s local candidate not sent (relay unavailable)", self.info.session_id)

    async def _announce_sdp_candidates(self) -> None:
        """Trickle the candidates aiortc gathered into the local description."""
        if not self._config.announce_sdp_candidates or self._closed:
            return
        local = self._require_pc().localDescription
        if local is None:
            return
        parsed = SessionDescription.parse(local.sdp)
        for index, media in enumerate(parsed.media):
            for candidate in media.ice_candidates:
                candidate.sdpMid = media.rtp.muxId
                candidate.sdpMLineIndex = index
                await self._send_local_candidate(candidate)

    def _require_pc(self) -> Any:
        if self._pc is None:
            raise RuntimeError("peer session not open")
        return self._pc
