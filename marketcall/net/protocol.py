"""Call signaling records.

Signaling messages travel as rows of a relay table (one insert per message)
and are pushed to subscribers on insert. The relay gives at-least-once,
unordered delivery; nothing here assumes otherwise.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, TypedDict


# Message kinds
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
END = "end"

KINDS = frozenset({OFFER, ANSWER, ICE_CANDIDATE, END})

# Call modes
VOICE = "voice"
VIDEO = "video"

MODES = frozenset({VOICE, VIDEO})

# Record status column
STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_ENDED = "ended"
STATUS_REJECTED = "rejected"

# End reasons
REASON_HANGUP = "hangup"
REASON_REJECTED = "rejected"


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class DescriptionDict(TypedDict):
	type: str
	sdp: str


@dataclass(frozen=True)
class SignalingMessage:
	session_id: str
	from_participant_id: str
	to_participant_id: str
	kind: str
	payload: Mapping[str, Any] = field(default_factory=dict)
	mode: str = VOICE
	status: str = STATUS_PENDING
	sequence_hint: float = field(default_factory=time.time)
	message_id: str = field(default_factory=lambda: uuid.uuid4().hex)

	def to_record(self) -> Dict[str, Any]:
		return {
			"id": self.message_id,
			"session_id": self.session_id,
			"from_participant_id": self.from_participant_id,
			"to_participant_id": self.to_participant_id,
			"kind": self.kind,
			"mode": self.mode,
			"payload": dict(self.payload),
			"status": self.status,
			"created_at": self.sequence_hint,
		}

	@classmethod
	def from_record(cls, record: Mapping[str, Any]) -> "SignalingMessage":
		if not isinstance(record, Mapping):
			raise ProtocolError("record is not an object")
		kind = record.get("kind")
		if kind not in KINDS:
			raise ProtocolError(f"unknown kind: {kind!r}")
		session_id = record.get("session_id")
		from_id = record.get("from_participant_id")
		to_id = record.get("to_participant_id")
		if not session_id or not from_id or not to_id:
			raise ProtocolError("record is missing session or participant ids")
		payload = record.get("payload")
		if payload is None:
			payload = {}
		if not isinstance(payload, Mapping):
			raise ProtocolError("payload is not an object")
		mode = record.get("mode") or VOICE
		if mode not in MODES:
			raise ProtocolError(f"unknown mode: {mode!r}")
		created_at = record.get("created_at")
		return cls(
			session_id=str(session_id),
			from_participant_id=str(from_id),
			to_participant_id=str(to_id),
			kind=str(kind),
			payload=dict(payload),
			mode=str(mode),
			status=str(record.get("status") or STATUS_PENDING),
			sequence_hint=float(created_at) if isinstance(created_at, (int, float)) else time.time(),
			message_id=str(record.get("id") or uuid.uuid4().hex),
		)


def make_offer(session_id: str, from_id: str, to_id: str, mode: str, sdp: str) -> SignalingMessage:
	return SignalingMessage(session_id, from_id, to_id, OFFER, {"type": OFFER, "sdp": sdp}, mode=mode)


def make_answer(session_id: str, from_id: str, to_id: str, mode: str, sdp: str) -> SignalingMessage:
	return SignalingMessage(
		session_id, from_id, to_id, ANSWER, {"type": ANSWER, "sdp": sdp}, mode=mode, status=STATUS_ACCEPTED
	)


def make_ice(session_id: str, from_id: str, to_id: str, mode: str, candidate: IceCandidateDict) -> SignalingMessage:
	return SignalingMessage(session_id, from_id, to_id, ICE_CANDIDATE, {"candidate": dict(candidate)}, mode=mode)


def make_end(session_id: str, from_id: str, to_id: str, mode: str, reason: str = REASON_HANGUP) -> SignalingMessage:
	status = STATUS_REJECTED if reason == REASON_REJECTED else STATUS_ENDED
	return SignalingMessage(session_id, from_id, to_id, END, {"reason": reason}, mode=mode, status=status)


def description_sdp(payload: Mapping[str, Any], expected_type: str) -> str:
	"""Return the SDP of an offer/answer payload, validating its shape."""
	sdp = payload.get("sdp")
	if not isinstance(sdp, str) or not sdp:
		raise ProtocolError(f"{expected_type} payload has no sdp")
	kind = payload.get("type", expected_type)
	if kind != expected_type:
		raise ProtocolError(f"expected {expected_type} description, got {kind!r}")
	return sdp


@dataclass(frozen=True)
class ProtocolError(Exception):
	message: str
