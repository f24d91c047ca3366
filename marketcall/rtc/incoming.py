"""Watch the relay for calls addressed to the local participant."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from ..net import protocol
from ..net.protocol import ProtocolError, SignalingMessage
from ..net.signaling_client import SeenIds, SignalRelayClient, SignalStream
from .call_session import CallCallbacks, CallSession
from .models import IncomingCall
from .orchestrator import CallOrchestrator


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class IncomingCallbacks:
    on_incoming: Optional[AsyncCallback] = None  # (call: IncomingCall)
    on_withdrawn: Optional[AsyncCallback] = None  # (call: IncomingCall, reason: str)


class IncomingCallWatcher:
    """Turns offers addressed to us into ringing `IncomingCall`s.

    An offer for a conversation that already has a live local session is
    ignored (it is a redelivery or a glare). An `end` for a ringing call
    withdraws it. Accepting or declining goes through the orchestrator; both
    stop the ringing.
    """

    def __init__(
        self,
        signaling: SignalRelayClient,
        orchestrator: CallOrchestrator,
        callbacks: Optional[IncomingCallbacks] = None,
    ):
        self._signaling = signaling
        self._orchestrator = orchestrator
        self._callbacks = callbacks or IncomingCallbacks()
        self._stream: Optional[SignalStream] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._ringing: Dict[str, IncomingCall] = {}
        self._seen_offers = SeenIds()

    @property
    def ringing(self) -> Dict[str, IncomingCall]:
        return dict(self._ringing)

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stream = await self._signaling.subscribe_incoming()
        self._task = asyncio.create_task(self._run(self._stream), name="incoming-calls")
        logger.info("incoming call watcher started participant=%s", self._signaling.local_participant_id)

    async def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._ringing.clear()

    def dismiss(self, session_id: str) -> Optional[IncomingCall]:
        return self._ringing.pop(session_id, None)

    async def accept(self, session_id: str, callbacks: Optional[CallCallbacks] = None) -> Optional[CallSession]:
        call = self._ringing.pop(session_id, None)
        if call is None:
            return None
        return await self._orchestrator.accept(call, callbacks)

    async def decline(self, session_id: str) -> None:
        call = self._ringing.pop(session_id, None)
        if call is not None:
            await self._orchestrator.decline_call(call)

    async def _run(self, stream: SignalStream) -> None:
        async for msg in stream:
            try:
                await self._handle(msg)
            except ProtocolError as e:
                logger.warning("incoming call signal ignored kind=%s: %s", msg.kind, e.message)
            except Exception:
                logger.exception("incoming call callback failed kind=%s", msg.kind)

    async def _handle(self, msg: SignalingMessage) -> None:
        if msg.kind == protocol.OFFER:
            if msg.message_id in self._seen_offers or msg.session_id in self._ringing:
                return
            self._seen_offers.add(msg.message_id)
            live = self._orchestrator.session(msg.session_id)
            if live is not None and not live.state.terminal:
                logger.debug("incoming offer for live session=%s ignored", msg.session_id)
                return
            protocol.description_sdp(msg.payload, protocol.OFFER)
            call = IncomingCall(
                session_id=msg.session_id,
                caller_id=msg.from_participant_id,
                mode=msg.mode,
                offer=dict(msg.payload),
                message_id=msg.message_id,
            )
            self._ringing[msg.session_id] = call
            logger.info("incoming call session=%s caller=%s mode=%s", call.session_id, call.caller_id, call.mode)
            if self._callbacks.on_incoming:
                await self._callbacks.on_incoming(call)
            return

        if msg.kind == protocol.END:
            call = self._ringing.get(msg.session_id)
            if call is None or call.caller_id != msg.from_participant_id:
                return
            del self._ringing[msg.session_id]
            reason = str(msg.payload.get("reason") or protocol.REASON_HANGUP)
            logger.info("incoming call withdrawn session=%s reason=%s", call.session_id, reason)
            if self._callbacks.on_withdrawn:
                await self._callbacks.on_withdrawn(call, reason)
