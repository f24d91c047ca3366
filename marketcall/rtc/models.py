"""Call session data models."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

from aiortc import MediaStreamTrack

from ..net.protocol import MODES
from .state_machine import CallState


class CallRole(str, enum.Enum):
	CALLER = "caller"
	CALLEE = "callee"


@dataclass(frozen=True)
class CallSessionInfo:
	"""Identity of one call attempt between two participants."""

	session_id: str
	local_participant_id: str
	remote_participant_id: str
	mode: str
	role: CallRole

	def __post_init__(self) -> None:
		if self.mode not in MODES:
			raise ValueError(f"unknown call mode: {self.mode!r}")
		if not self.session_id:
			raise ValueError("session_id is required")
		if self.local_participant_id == self.remote_participant_id:
			raise ValueError("cannot call yourself")


@dataclass(frozen=True)
class CallSnapshot:
	"""What the UI boundary observes about one call."""

	session_id: str
	state: CallState
	call_duration_seconds: int = 0
	local_tracks: Tuple[MediaStreamTrack, ...] = field(default=())
	remote_tracks: Tuple[MediaStreamTrack, ...] = field(default=())
	muted: bool = False
	video_enabled: bool = False
	error: Optional[str] = None


@dataclass(frozen=True)
class IncomingCall:
	session_id: str
	caller_id: str
	mode: str
	offer: Mapping[str, Any]
	message_id: str
