"""One call, caller or callee.

The session owns the state machine, the peer session and the relay stream
for one call. Every fatal error folds into a single FAILED transition; the
public coroutines never raise for call failures, which are observable only
through `snapshot` and the `on_update` callback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from ..config import CallConfig
from ..errors import MediaAcquisitionError, ProtocolViolation, RelayUnavailable, TransportFailure
from ..net import protocol
from ..net.protocol import ProtocolError, SignalingMessage
from ..net.signaling_client import SignalRelayClient, SignalStream
from .media import MediaSource
from .models import CallRole, CallSessionInfo, CallSnapshot
from .peer_session import PeerCallbacks, PeerConnectionFactory, PeerSession, default_peer_connection_factory
from .state_machine import CallEvent, CallState, SessionStateMachine, Transition


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

RELAY_UNAVAILABLE_MESSAGE = "Could not reach the call service. Please check your connection and try again."
CONNECTION_LOST_MESSAGE = "The call connection was lost."
SETUP_FAILED_MESSAGE = "The call could not be set up."

_TRANSPORT_EVENTS = {
    "connecting": CallEvent.TRANSPORT_CONNECTING,
    "connected": CallEvent.TRANSPORT_CONNECTED,
    "failed": CallEvent.TRANSPORT_FAILED,
    "disconnected": CallEvent.TRANSPORT_FAILED,
    "closed": CallEvent.TRANSPORT_FAILED,
}


@dataclass
class CallCallbacks:
    on_update: Optional[AsyncCallback] = None  # (snapshot: CallSnapshot)


class CallSession:
    def __init__(
        self,
        info: CallSessionInfo,
        signaling: SignalRelayClient,
        media_source: MediaSource,
        config: Optional[CallConfig] = None,
        callbacks: Optional[CallCallbacks] = None,
        pc_factory: PeerConnectionFactory = default_peer_connection_factory,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.info = info
        self.callbacks = callbacks or CallCallbacks()
        self._signaling = signaling
        self._media_source = media_source
        self._config = config or CallConfig()
        self._machine = SessionStateMachine(info.session_id, clock=clock)
        self._peer = PeerSession(
            info,
            signaling,
            config=self._config,
            callbacks=PeerCallbacks(
                on_transport_state=self._on_transport_state,
                on_remote_track=self._on_remote_track,
            ),
            pc_factory=pc_factory,
        )

        self._stream: Optional[SignalStream] = None
        self._negotiation_task: Optional[asyncio.Task[None]] = None
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._timer_task: Optional[asyncio.Task[None]] = None
        self._cleanup_task: Optional[asyncio.Task[None]] = None
        self._closed_evt = asyncio.Event()
        self._on_closed: List[Callable[["CallSession"], None]] = []

    @property
    def session_id(self) -> str:
        return self.info.session_id

    @property
    def state(self) -> CallState:
        return self._machine.state

    @property
    def peer(self) -> PeerSession:
        return self._peer

    @property
    def closed(self) -> bool:
        return self._closed_evt.is_set()

    @property
    def snapshot(self) -> CallSnapshot:
        media = self._peer.media
        return CallSnapshot(
            session_id=self.session_id,
            state=self.state,
            call_duration_seconds=self._machine.duration_seconds,
            local_tracks=tuple(media.tracks) if media is not None and not media.released else (),
            remote_tracks=tuple(self._peer.remote_tracks) if not self._peer.closed else (),
            muted=media.muted if media is not None else False,
            video_enabled=media.video_enabled if media is not None else False,
            error=self._machine.failure,
        )

    def add_close_listener(self, listener: Callable[["CallSession"], None]) -> None:
        self._on_closed.append(listener)

    async def wait_closed(self) -> None:
        await self._closed_evt.wait()

    async def start(self, incoming_offer: Optional[Mapping[str, Any]] = None) -> None:
        """Subscribe to the session and launch the role's negotiation path.

        Returns once negotiation has been kicked off; does nothing when the
        session was already started.
        """
        if self.state is not CallState.IDLE:
            return

        offer_sdp: Optional[str] = None
        if self.info.role is CallRole.CALLEE:
            if incoming_offer is None:
                raise ValueError("callee session needs the incoming offer")
            try:
                offer_sdp = protocol.description_sdp(incoming_offer, protocol.OFFER)
            except ProtocolError as e:
                logger.warning("call answer rejected session=%s: %s", self.session_id, e.message)
                self._fire(CallEvent.START)
                self._fire(CallEvent.SIGNALING_FAILED, reason=SETUP_FAILED_MESSAGE)
                await self._publish()
                return

        self._fire(CallEvent.START)
        await self._publish()

        try:
            stream = await self._signaling.subscribe(self.session_id)
        except RelayUnavailable:
            logger.warning("call subscribe failed session=%s", self.session_id)
            await self._fail(CallEvent.SIGNALING_FAILED, RELAY_UNAVAILABLE_MESSAGE)
            return
        if not self.state.live:
            # Hung up while subscribing.
            await stream.close()
            return
        self._stream = stream

        self._pump_task = asyncio.create_task(self._pump(stream), name=f"call-pump-{self.session_id}")
        self._negotiation_task = asyncio.create_task(
            self._negotiate(offer_sdp), name=f"call-negotiate-{self.session_id}"
        )

    async def hang_up(self) -> None:
        """End the call from any non-terminal state; returns once cleanup is done.

        The `end` message is fire-and-forget: its send is bounded by
        `end_signal_timeout` and never delays local cleanup beyond that.
        """
        state = self.state
        if state is CallState.IDLE:
            self._fire(CallEvent.LOCAL_HANGUP)
            await self._publish()
            self._mark_closed()
            return
        if state.live:
            self._fire(CallEvent.LOCAL_HANGUP, cleanup=False)
            await self._publish()
            self._cancel_negotiation()
            await self._send_end(protocol.REASON_HANGUP)
        await self.cleanup()

    async def close(self) -> None:
        """Component teardown; same contract as `hang_up`."""
        await self.hang_up()

    def toggle_mute(self) -> bool:
        media = self._peer.media
        if media is None or media.released:
            return False
        return media.toggle_mute()

    def toggle_video(self) -> bool:
        media = self._peer.media
        if media is None or media.released:
            return False
        return media.toggle_video()

    async def cleanup(self) -> None:
        """Release everything this session owns. Idempotent; waits for completion."""
        if self.closed:
            return
        if self.state is CallState.IDLE:
            self._fire(CallEvent.LOCAL_HANGUP)
            self._mark_closed()
            return
        if self._cleanup_task is None:
            if self.state.live:
                # Cleanup always runs from ENDING or FAILED.
                self._fire(CallEvent.LOCAL_HANGUP, cleanup=False)
            self._cleanup_task = asyncio.create_task(self._cleanup(), name=f"call-cleanup-{self.session_id}")
        await asyncio.shield(self._cleanup_task)

    # ----------------------
    # Negotiation
    # ----------------------
    async def _negotiate(self, offer_sdp: Optional[str]) -> None:
        try:
            media = await self._media_source.acquire(self.info.mode)
        except MediaAcquisitionError as e:
            logger.warning("call media acquisition failed session=%s reason=%s", self.session_id, e.reason)
            await self._fail(CallEvent.MEDIA_FAILED, e.user_message)
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("call media acquisition crashed session=%s", self.session_id)
            await self._fail(CallEvent.MEDIA_FAILED, SETUP_FAILED_MESSAGE)
            return

        if not self.state.live or self._peer.closed:
            media.release()
            return

        try:
            await self._peer.open(media)
            await self._publish()
            if self.info.role is CallRole.CALLER:
                await self._peer.send_offer()
                logger.info("call offer sent session=%s", self.session_id)
            else:
                assert offer_sdp is not None
                await self._peer.send_answer(offer_sdp)
                logger.info("call answer sent session=%s", self.session_id)
                await self._apply(CallEvent.DESCRIPTIONS_EXCHANGED)
        except RelayUnavailable:
            logger.warning("call handshake send failed session=%s", self.session_id)
            await self._fail(CallEvent.SIGNALING_FAILED, RELAY_UNAVAILABLE_MESSAGE)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("call setup failed session=%s", self.session_id)
            await self._fail(CallEvent.SIGNALING_FAILED, SETUP_FAILED_MESSAGE)

    def _cancel_negotiation(self) -> None:
        task = self._negotiation_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ----------------------
    # Remote signals
    # ----------------------
    async def _pump(self, stream: SignalStream) -> None:
        async for msg in stream:
            try:
                await self._handle_signal(msg)
            except (ProtocolViolation, ProtocolError) as e:
                logger.warning(
                    "call signal ignored session=%s kind=%s: %s",
                    self.session_id,
                    msg.kind,
                    e.message if isinstance(e, ProtocolError) else e,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("call signal handling failed session=%s kind=%s", self.session_id, msg.kind)
                await self._fail(CallEvent.SIGNALING_FAILED, SETUP_FAILED_MESSAGE)

    async def _handle_signal(self, msg: SignalingMessage) -> None:
        if msg.from_participant_id != self.info.remote_participant_id:
            raise ProtocolViolation(f"message from unexpected participant {msg.from_participant_id}")

        if msg.kind == protocol.END:
            logger.info("call end received session=%s reason=%s", self.session_id, msg.payload.get("reason"))
            await self._apply(CallEvent.REMOTE_END)
            return

        if not self.state.live:
            logger.debug("call signal after close session=%s kind=%s", self.session_id, msg.kind)
            return

        if msg.kind == protocol.OFFER:
            raise ProtocolViolation("offer received on an already negotiating session")

        if msg.kind == protocol.ANSWER:
            if self.info.role is not CallRole.CALLER:
                raise ProtocolViolation("answer received by the callee")
            sdp = protocol.description_sdp(msg.payload, protocol.ANSWER)
            await self._peer.apply_answer(sdp)
            logger.info("call answer applied session=%s", self.session_id)
            await self._apply(CallEvent.DESCRIPTIONS_EXCHANGED)
            return

        if msg.kind == protocol.ICE_CANDIDATE:
            candidate = msg.payload.get("candidate")
            if not isinstance(candidate, dict) or not candidate.get("candidate"):
                raise ProtocolViolation("ice-candidate message without a candidate")
            await self._peer.add_remote_candidate(candidate)

    # ----------------------
    # Peer events
    # ----------------------
    async def _on_transport_state(self, state: str) -> None:
        event = _TRANSPORT_EVENTS.get(state)
        if event is None:
            return
        if event is CallEvent.TRANSPORT_FAILED:
            logger.warning("call transport lost session=%s: %s", self.session_id, TransportFailure(state))
            await self._fail(event, CONNECTION_LOST_MESSAGE)
            return
        await self._apply(event)

    async def _on_remote_track(self, track) -> None:
        await self._publish()

    # ----------------------
    # Transitions and side effects
    # ----------------------
    def _fire(self, event: CallEvent, *, reason: Optional[str] = None, cleanup: bool = True) -> Optional[Transition]:
        transition = self._machine.fire(event, reason=reason)
        if transition is None:
            return None
        if transition.target is CallState.ACTIVE:
            self._start_timer()
        elif transition.source is CallState.ACTIVE:
            self._stop_timer()
        if cleanup and self._cleanup_task is None and transition.target in (CallState.ENDING, CallState.FAILED):
            self._cleanup_task = asyncio.create_task(self._cleanup(), name=f"call-cleanup-{self.session_id}")
        return transition

    async def _apply(self, event: CallEvent, *, reason: Optional[str] = None) -> None:
        if self._fire(event, reason=reason) is not None:
            await self._publish()

    async def _fail(self, event: CallEvent, message: str) -> None:
        await self._apply(event, reason=message)

    async def _cleanup(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in (self._negotiation_task, self._pump_task) if t is not None and t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        self._stop_timer()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self._peer.close()
        except Exception:
            logger.exception("call peer close failed session=%s", self.session_id)

        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()

        await self._signaling.teardown(self.session_id)

        self._fire(CallEvent.CLEANUP_COMPLETE)
        await self._publish()
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed_evt.is_set():
            return
        self._closed_evt.set()
        logger.info("call closed session=%s failed=%s", self.session_id, self._machine.failure is not None)
        for listener in self._on_closed:
            listener(self)

    async def _send_end(self, reason: str) -> None:
        msg = protocol.make_end(
            self.session_id, self.info.local_participant_id, self.info.remote_participant_id, self.info.mode, reason
        )
        try:
            await asyncio.wait_for(self._signaling.send(msg), timeout=self._config.end_signal_timeout)
        except (RelayUnavailable, asyncio.TimeoutError):
            logger.warning("call end not delivered to relay session=%s", self.session_id)

    def _start_timer(self) -> None:
        if self._timer_task is not None:
            return
        self._timer_task = asyncio.create_task(self._tick(), name=f"call-timer-{self.session_id}")

    def _stop_timer(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._config.duration_tick)
            await self._publish()

    async def _publish(self) -> None:
        if not self.callbacks.on_update:
            return
        try:
            await self.callbacks.on_update(self.snapshot)
        except Exception:
            # Never break the call because of a UI callback.
            logger.exception("call update callback failed session=%s", self.session_id)
