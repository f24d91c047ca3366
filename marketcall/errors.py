"""Call engine error taxonomy.

Fatal errors never escape the orchestrator; they are folded into a single
FAILED transition and surfaced through `CallSnapshot.error`.
"""

from __future__ import annotations


class CallError(Exception):
	"""Base class for call engine errors."""


class MediaAcquisitionError(CallError):
	"""Local capture could not be opened (no device, denied, unsupported)."""

	def __init__(self, message: str, *, reason: str = "unavailable"):
		super().__init__(message)
		self.reason = reason

	@property
	def user_message(self) -> str:
		return str(self)


class RelayError(CallError):
	"""The message relay rejected or could not carry a request."""


class RelayUnavailable(RelayError):
	"""The relay substrate is unreachable."""


class TransportFailure(CallError):
	"""ICE/DTLS transport reported an unrecoverable state."""

	def __init__(self, state: str):
		super().__init__(f"transport {state}")
		self.state = state


class ProtocolViolation(CallError):
	"""A signaling message that does not fit the current session state.

	Expected with an at-least-once, unordered relay; callers log and drop.
	"""
