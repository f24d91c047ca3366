"""Call lifecycle state machine.

Pure and synchronous: `fire()` applies one event and reports whether the state
changed. Side effects (cleanup, timers, UI updates) belong to the owner, which
reacts to the returned transition.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple


logger = logging.getLogger(__name__)


class CallState(str, enum.Enum):
	IDLE = "idle"
	NEGOTIATING = "negotiating"
	CONNECTING = "connecting"
	ACTIVE = "active"
	ENDING = "ending"
	CLOSED = "closed"
	FAILED = "failed"

	@property
	def terminal(self) -> bool:
		return self in (CallState.CLOSED, CallState.FAILED)

	@property
	def live(self) -> bool:
		"""Inside the negotiating/connecting/active superstate."""
		return self in (CallState.NEGOTIATING, CallState.CONNECTING, CallState.ACTIVE)


class CallEvent(str, enum.Enum):
	START = "start"
	DESCRIPTIONS_EXCHANGED = "descriptions-exchanged"
	TRANSPORT_CONNECTING = "transport-connecting"
	TRANSPORT_CONNECTED = "transport-connected"
	TRANSPORT_FAILED = "transport-failed"
	MEDIA_FAILED = "media-failed"
	SIGNALING_FAILED = "signaling-failed"
	LOCAL_HANGUP = "local-hangup"
	REMOTE_END = "remote-end"
	CLEANUP_COMPLETE = "cleanup-complete"


S = CallState
E = CallEvent

_LIVE = (S.NEGOTIATING, S.CONNECTING, S.ACTIVE)

TRANSITIONS: Dict[Tuple[CallState, CallEvent], CallState] = {
	(S.IDLE, E.START): S.NEGOTIATING,
	(S.IDLE, E.LOCAL_HANGUP): S.CLOSED,
	(S.NEGOTIATING, E.DESCRIPTIONS_EXCHANGED): S.CONNECTING,
	(S.NEGOTIATING, E.TRANSPORT_CONNECTING): S.CONNECTING,
	(S.NEGOTIATING, E.TRANSPORT_CONNECTED): S.ACTIVE,
	(S.CONNECTING, E.TRANSPORT_CONNECTED): S.ACTIVE,
	(S.NEGOTIATING, E.MEDIA_FAILED): S.FAILED,
	(S.ENDING, E.CLEANUP_COMPLETE): S.CLOSED,
	(S.FAILED, E.CLEANUP_COMPLETE): S.CLOSED,
}
for _state in _LIVE:
	TRANSITIONS[(_state, E.TRANSPORT_FAILED)] = S.FAILED
	TRANSITIONS[(_state, E.SIGNALING_FAILED)] = S.FAILED
	TRANSITIONS[(_state, E.LOCAL_HANGUP)] = S.ENDING
	TRANSITIONS[(_state, E.REMOTE_END)] = S.ENDING

# Accepted without a state change: a connected transport that blips back to
# connecting/connected stays ACTIVE and keeps its duration clock.
SELF_LOOPS = frozenset(
	{
		(S.ACTIVE, E.TRANSPORT_CONNECTED),
		(S.ACTIVE, E.TRANSPORT_CONNECTING),
		(S.CONNECTING, E.TRANSPORT_CONNECTING),
		(S.CONNECTING, E.DESCRIPTIONS_EXCHANGED),
		(S.ACTIVE, E.DESCRIPTIONS_EXCHANGED),
	}
)


@dataclass(frozen=True)
class Transition:
	source: CallState
	target: CallState
	event: CallEvent


class SessionStateMachine:
	def __init__(self, session_id: str, *, clock: Callable[[], float] = time.monotonic):
		self.session_id = session_id
		self._state = CallState.IDLE
		self._clock = clock
		self._active_since: Optional[float] = None
		self._active_until: Optional[float] = None
		self.failure: Optional[str] = None

	@property
	def state(self) -> CallState:
		return self._state

	@property
	def was_active(self) -> bool:
		return self._active_since is not None

	@property
	def duration_seconds(self) -> int:
		if self._active_since is None:
			return 0
		end = self._active_until if self._active_until is not None else self._clock()
		return max(0, int(end - self._active_since))

	def can_fire(self, event: CallEvent) -> bool:
		return (self._state, event) in TRANSITIONS or (self._state, event) in SELF_LOOPS

	def fire(self, event: CallEvent, *, reason: Optional[str] = None) -> Optional[Transition]:
		"""Apply `event`. Returns the transition, or None if the state did not change."""
		key = (self._state, event)
		target = TRANSITIONS.get(key)
		if target is None:
			if key in SELF_LOOPS:
				logger.debug("call state session=%s %s kept on %s", self.session_id, self._state.value, event.value)
			else:
				logger.info(
					"call event ignored session=%s state=%s event=%s", self.session_id, self._state.value, event.value
				)
			return None

		source = self._state
		self._state = target
		if target is CallState.ACTIVE and self._active_since is None:
			self._active_since = self._clock()
		if source is CallState.ACTIVE:
			self._active_until = self._clock()
		if target is CallState.FAILED and self.failure is None:
			self.failure = reason or event.value
		logger.info("call state session=%s %s->%s (%s)", self.session_id, source.value, target.value, event.value)
		return Transition(source, target, event)
