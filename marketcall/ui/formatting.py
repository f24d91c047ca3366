from __future__ import annotations

from ..rtc.state_machine import CallState


STATE_LABELS = {
	CallState.IDLE: "Idle",
	CallState.NEGOTIATING: "Calling...",
	CallState.CONNECTING: "Connecting...",
	CallState.ACTIVE: "In call",
	CallState.ENDING: "Ending...",
	CallState.CLOSED: "Call ended",
	CallState.FAILED: "Call failed",
}


def format_duration(seconds: int) -> str:
	"""`mm:ss`; minutes keep counting past an hour."""
	seconds = max(0, int(seconds))
	minutes, secs = divmod(seconds, 60)
	return f"{minutes:02d}:{secs:02d}"


def state_label(state: CallState) -> str:
	return STATE_LABELS.get(state, state.value)
