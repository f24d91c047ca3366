"""Call orchestrator (one per local participant)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..config import CallConfig
from ..errors import RelayUnavailable
from ..net import protocol
from ..net.signaling_client import SignalRelayClient
from .call_session import CallCallbacks, CallSession
from .media import MediaSource
from .models import CallRole, CallSessionInfo, IncomingCall
from .peer_session import PeerConnectionFactory, default_peer_connection_factory
from .state_machine import CallState


logger = logging.getLogger(__name__)


class CallOrchestrator:
    """Entry points for starting, answering and ending calls.

    Keeps a registry of live sessions so that at most one session per
    conversation is non-terminal. Sessions unregister themselves once closed.
    """

    def __init__(
        self,
        signaling: SignalRelayClient,
        media_source: MediaSource,
        config: Optional[CallConfig] = None,
        pc_factory: PeerConnectionFactory = default_peer_connection_factory,
    ):
        self._signaling = signaling
        self._media_source = media_source
        self._config = config or CallConfig()
        self._pc_factory = pc_factory
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()

    @property
    def local_participant_id(self) -> str:
        return self._signaling.local_participant_id

    def session(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    @property
    def sessions(self) -> List[CallSession]:
        return list(self._sessions.values())

    async def start_call(
        self,
        remote_participant_id: str,
        session_id: str,
        mode: str = protocol.VOICE,
        callbacks: Optional[CallCallbacks] = None,
    ) -> CallSession:
        """Call `remote_participant_id` in conversation `session_id`.

        Idempotent: a live session for the conversation is returned as is.
        """
        return await self._open(CallRole.CALLER, remote_participant_id, session_id, mode, callbacks, None)

    async def answer_call(
        self,
        remote_participant_id: str,
        session_id: str,
        mode: str,
        incoming_offer: Mapping[str, Any],
        callbacks: Optional[CallCallbacks] = None,
    ) -> CallSession:
        """Accept an incoming offer. Idempotent like `start_call`."""
        return await self._open(CallRole.CALLEE, remote_participant_id, session_id, mode, callbacks, incoming_offer)

    async def accept(self, incoming: IncomingCall, callbacks: Optional[CallCallbacks] = None) -> CallSession:
        return await self.answer_call(incoming.caller_id, incoming.session_id, incoming.mode, incoming.offer, callbacks)

    async def decline_call(self, incoming: IncomingCall) -> None:
        """Reject a ringing call without creating a session."""
        msg = protocol.make_end(
            incoming.session_id,
            self.local_participant_id,
            incoming.caller_id,
            incoming.mode,
            reason=protocol.REASON_REJECTED,
        )
        try:
            await asyncio.wait_for(self._signaling.send(msg), timeout=self._config.end_signal_timeout)
            logger.info("call declined session=%s caller=%s", incoming.session_id, incoming.caller_id)
        except (RelayUnavailable, asyncio.TimeoutError):
            logger.warning("call decline not delivered session=%s", incoming.session_id)

    async def hang_up(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("hang up for unknown session=%s", session_id)
            return
        await session.hang_up()

    def toggle_mute(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session.toggle_mute() if session is not None else False

    def toggle_video(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session.toggle_video() if session is not None else False

    async def shutdown(self) -> None:
        """Hang up every live session (component teardown)."""
        sessions = list(self._sessions.values())
        if sessions:
            logger.info("call orchestrator shutdown sessions=%s", len(sessions))
        await asyncio.gather(*(s.hang_up() for s in sessions), return_exceptions=True)

    async def _open(
        self,
        role: CallRole,
        remote_participant_id: str,
        session_id: str,
        mode: str,
        callbacks: Optional[CallCallbacks],
        incoming_offer: Optional[Mapping[str, Any]],
    ) -> CallSession:
        info = CallSessionInfo(
            session_id=session_id,
            local_participant_id=self.local_participant_id,
            remote_participant_id=remote_participant_id,
            mode=mode,
            role=role,
        )
        async with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None and not existing.state.terminal and existing.state is not CallState.ENDING:
                if existing.info.role is not role or existing.info.remote_participant_id != remote_participant_id:
                    logger.warning(
                        "call %s ignored session=%s: already %s with %s",
                        role.value,
                        session_id,
                        existing.info.role.value,
                        existing.info.remote_participant_id,
                    )
                return existing
            if existing is not None:
                # An ending or failed session may still be releasing resources.
                await existing.wait_closed()

            session = CallSession(
                info,
                self._signaling,
                self._media_source,
                config=self._config,
                callbacks=callbacks,
                pc_factory=self._pc_factory,
            )
            self._sessions[session_id] = session
            session.add_close_listener(self._forget)
            logger.info("call %s session=%s remote=%s mode=%s", role.value, session_id, remote_participant_id, mode)

        await session.start(incoming_offer)
        return session

    def _forget(self, session: CallSession) -> None:
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]
