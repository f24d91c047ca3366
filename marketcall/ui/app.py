from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional

from PySide6 import QtCore, QtWidgets

from ..config import CallConfig
from ..errors import CallError, RelayUnavailable
from ..net import protocol
from ..net.signaling_client import SignalRelayClient
from ..net.websocket_relay import WebSocketRelay
from ..rtc.call_session import CallCallbacks
from ..rtc.incoming import IncomingCallbacks, IncomingCallWatcher
from ..rtc.media import PlayerMediaSource, RemoteMediaSink
from ..rtc.models import CallSnapshot, IncomingCall
from ..rtc.orchestrator import CallOrchestrator
from .formatting import format_duration, state_label
from .windows import MainWindow


logger = logging.getLogger(__name__)


class AsyncioThread:
    """Background thread owning the call engine's event loop.

    Qt slots hand coroutines over with `submit`; failures are logged because
    nobody waits on those futures.
    """

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if not self._loop:
            raise RuntimeError("engine loop not started")
        return self._loop

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            try:
                self._loop.run_forever()
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=_run, name="call-engine", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self, timeout: float = 2.0) -> None:
        if not self._loop or not self._thread:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)

    def submit(self, coro) -> Future:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(_log_failure)
        return future


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("engine task failed", exc_info=exc)


class UiBridge(QtCore.QObject):
    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    relay_state = QtCore.Signal(str)
    call_state = QtCore.Signal(str)
    duration = QtCore.Signal(str)
    media = QtCore.Signal(bool, bool, bool)  # muted, video_enabled, has_video
    in_call = QtCore.Signal(bool, bool)  # in_call, has_video
    ringing = QtCore.Signal(str, str, str)  # session_id, caller_id, mode
    ring_cleared = QtCore.Signal(str)


@dataclass
class AppConfig:
    relay_url: str
    user: str


class CallClientApp(QtCore.QObject):
    """Desktop front end: one relay connection, at most one call on screen."""

    def __init__(self, cfg: AppConfig):
        super().__init__()
        self.cfg = cfg

        self.window = MainWindow()
        self.bridge = UiBridge()
        self.asyncio_thread = AsyncioThread()
        self.call_config = CallConfig.from_env()
        self.sink = RemoteMediaSink()

        self.relay: Optional[WebSocketRelay] = None
        self.orchestrator: Optional[CallOrchestrator] = None
        self.watcher: Optional[IncomingCallWatcher] = None
        self._current_session: Optional[str] = None
        self._current_mode = protocol.VOICE

        self._wire_ui()
        self._wire_bridge()

        # Defaults
        self.window.relay_url_edit.setText(cfg.relay_url)
        self.window.user_edit.setText(cfg.user)

    def start(self) -> None:
        self.asyncio_thread.start()
        self.window.show()
        self.bridge.status.emit("Ready")
        logger.info("ui started")

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        future = self.asyncio_thread.submit(self._disconnect())
        try:
            future.result(timeout=self.call_config.end_signal_timeout + 1)
        except Exception:
            logger.warning("ui shutdown did not finish cleanly", exc_info=True)
        self.asyncio_thread.stop()

    def _wire_ui(self) -> None:
        self.window.connect_clicked.connect(self._on_connect_clicked)
        self.window.disconnect_clicked.connect(self._on_disconnect_clicked)
        self.window.voice_call_clicked.connect(lambda: self._on_call_clicked(protocol.VOICE))
        self.window.video_call_clicked.connect(lambda: self._on_call_clicked(protocol.VIDEO))
        self.window.hang_up_clicked.connect(self._on_hang_up_clicked)
        self.window.mute_clicked.connect(self._on_mute_clicked)
        self.window.video_clicked.connect(self._on_video_clicked)
        self.window.incoming_banner.accept_clicked.connect(self._on_accept_clicked)
        self.window.incoming_banner.decline_clicked.connect(self._on_decline_clicked)

    def _wire_bridge(self) -> None:
        self.bridge.log.connect(self.window.log_panel.append_log)
        self.bridge.status.connect(self.window.set_status)
        self.bridge.relay_state.connect(self.window.status_card.set_relay_state)
        self.bridge.call_state.connect(self.window.status_card.set_call_state)
        self.bridge.duration.connect(self.window.status_card.set_duration)
        self.bridge.media.connect(self._update_media)
        self.bridge.in_call.connect(self._update_in_call)
        self.bridge.ringing.connect(self.window.incoming_banner.ring)
        self.bridge.ring_cleared.connect(self.window.incoming_banner.clear)

    @QtCore.Slot()
    def _on_connect_clicked(self) -> None:
        url = self.window.relay_url_edit.text().strip()
        user = self.window.user_edit.text().strip()
        if not url or not user:
            self.bridge.log.emit("Relay URL and user are required")
            return
        self.bridge.status.emit("Connecting...")
        logger.info("ui connect clicked url=%s", url)
        self.asyncio_thread.submit(self._connect(url, user))

    @QtCore.Slot()
    def _on_disconnect_clicked(self) -> None:
        self.bridge.status.emit("Disconnecting...")
        logger.info("ui disconnect clicked")
        self.asyncio_thread.submit(self._disconnect())

    def _on_call_clicked(self, mode: str) -> None:
        remote = self.window.remote_edit.text().strip()
        if not remote:
            self.bridge.log.emit("Participant to call is required")
            return
        session_id = self.window.conversation_edit.text().strip() or uuid.uuid4().hex
        self.window.conversation_edit.setText(session_id)
        logger.info("ui call clicked mode=%s session=%s", mode, session_id)
        self.asyncio_thread.submit(self._start_call(remote, session_id, mode))

    @QtCore.Slot()
    def _on_hang_up_clicked(self) -> None:
        if self._current_session is None:
            return
        logger.info("ui hang up clicked session=%s", self._current_session)
        self.asyncio_thread.submit(self._hang_up(self._current_session))

    @QtCore.Slot()
    def _on_mute_clicked(self) -> None:
        if self._current_session is not None:
            self.asyncio_thread.submit(self._toggle(self._current_session, video=False))

    @QtCore.Slot()
    def _on_video_clicked(self) -> None:
        if self._current_session is not None:
            self.asyncio_thread.submit(self._toggle(self._current_session, video=True))

    @QtCore.Slot(str)
    def _on_accept_clicked(self, session_id: str) -> None:
        self.window.incoming_banner.clear(session_id)
        self.asyncio_thread.submit(self._accept(session_id))

    @QtCore.Slot(str)
    def _on_decline_clicked(self, session_id: str) -> None:
        self.window.incoming_banner.clear(session_id)
        self.asyncio_thread.submit(self._decline(session_id))

    @QtCore.Slot(bool, bool, bool)
    def _update_media(self, muted: bool, video_enabled: bool, has_video: bool) -> None:
        self.window.set_toggles(muted, video_enabled)
        self.window.status_card.set_media(muted, video_enabled, has_video)

    @QtCore.Slot(bool, bool)
    def _update_in_call(self, in_call: bool, has_video: bool) -> None:
        self.window.set_in_call(in_call, has_video=has_video)

    # ----------------------
    # Async side (runs in asyncio thread)
    # ----------------------
    async def _connect(self, url: str, user: str) -> None:
        await self._disconnect()
        relay = WebSocketRelay(url)
        try:
            await relay.connect()
        except RelayUnavailable as e:
            self.bridge.relay_state.emit("Disconnected")
            self.bridge.status.emit(f"Relay unavailable: {e}")
            return

        signaling = SignalRelayClient(relay, user)
        orchestrator = CallOrchestrator(signaling, PlayerMediaSource(), config=self.call_config)
        watcher = IncomingCallWatcher(
            signaling,
            orchestrator,
            IncomingCallbacks(on_incoming=self._on_incoming, on_withdrawn=self._on_withdrawn),
        )
        await watcher.start()
        self.relay, self.orchestrator, self.watcher = relay, orchestrator, watcher
        self.bridge.relay_state.emit("Connected")
        self.bridge.status.emit(f"Connected as {user}")

    async def _disconnect(self) -> None:
        watcher, self.watcher = self.watcher, None
        orchestrator, self.orchestrator = self.orchestrator, None
        relay, self.relay = self.relay, None
        if watcher is not None:
            await watcher.stop()
        if orchestrator is not None:
            await orchestrator.shutdown()
        await self.sink.stop()
        if relay is not None:
            await relay.disconnect()
            self.bridge.relay_state.emit("Disconnected")
            self.bridge.status.emit("Disconnected")

    async def _start_call(self, remote: str, session_id: str, mode: str) -> None:
        if self.orchestrator is None:
            self.bridge.log.emit("Connect to the relay first")
            return
        self._current_session, self._current_mode = session_id, mode
        try:
            await self.orchestrator.start_call(remote, session_id, mode, self._call_callbacks())
        except (CallError, ValueError) as e:
            self.bridge.log.emit(f"Call not started: {e}")

    async def _accept(self, session_id: str) -> None:
        if self.watcher is None:
            return
        call = self.watcher.ringing.get(session_id)
        if call is None:
            self.bridge.log.emit("Call is no longer ringing")
            return
        self._current_session, self._current_mode = session_id, call.mode
        await self.watcher.accept(session_id, self._call_callbacks())

    async def _decline(self, session_id: str) -> None:
        if self.watcher is not None:
            await self.watcher.decline(session_id)
            self.bridge.log.emit(f"Declined call {session_id}")

    async def _hang_up(self, session_id: str) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.hang_up(session_id)

    async def _toggle(self, session_id: str, *, video: bool) -> None:
        if self.orchestrator is None:
            return
        if video:
            self.orchestrator.toggle_video(session_id)
        else:
            self.orchestrator.toggle_mute(session_id)
        session = self.orchestrator.session(session_id)
        if session is not None:
            await self._on_update(session.snapshot)

    def _call_callbacks(self) -> CallCallbacks:
        return CallCallbacks(on_update=self._on_update)

    async def _on_update(self, snapshot: CallSnapshot) -> None:
        if snapshot.session_id != self._current_session:
            return
        has_video = self._current_mode == protocol.VIDEO
        self.bridge.call_state.emit(state_label(snapshot.state))
        self.bridge.duration.emit(format_duration(snapshot.call_duration_seconds))
        self.bridge.media.emit(snapshot.muted, snapshot.video_enabled, has_video)

        if snapshot.state.terminal:
            await self.sink.stop()
            self.bridge.in_call.emit(False, has_video)
            if snapshot.error:
                self.bridge.log.emit(f"Call {snapshot.session_id} failed: {snapshot.error}")
            self._current_session = None
            return

        self.bridge.in_call.emit(True, has_video)
        if snapshot.remote_tracks:
            await self.sink.start(list(snapshot.remote_tracks))

    async def _on_incoming(self, call: IncomingCall) -> None:
        self.bridge.log.emit(f"Incoming {call.mode} call from {call.caller_id}")
        self.bridge.ringing.emit(call.session_id, call.caller_id, call.mode)

    async def _on_withdrawn(self, call: IncomingCall, reason: str) -> None:
        self.bridge.log.emit(f"Call from {call.caller_id} ended before answer ({reason})")
        self.bridge.ring_cleared.emit(call.session_id)


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    return app  # type: ignore
