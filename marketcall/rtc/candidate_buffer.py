"""Buffer for remote ICE candidates that arrive before their description."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from ..errors import ProtocolViolation
from ..net.protocol import IceCandidateDict


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingCandidate:
	session_id: str
	candidate: IceCandidateDict


class PendingCandidateQueue:
	"""Arrival-ordered queue, drained exactly once.

	Candidates are held until the remote description is set, then handed out
	in arrival order by `drain()`. After the drain the queue is spent: the
	owner applies later candidates directly, and pushing is an error.
	"""

	def __init__(self, session_id: str):
		self.session_id = session_id
		self._items: List[PendingCandidate] = []
		self._drained = False

	def __len__(self) -> int:
		return len(self._items)

	@property
	def drained(self) -> bool:
		return self._drained

	def push(self, session_id: str, candidate: IceCandidateDict) -> None:
		if self._drained:
			raise RuntimeError("candidate queue already drained")
		if session_id != self.session_id:
			raise ProtocolViolation(f"candidate for session {session_id} pushed into queue of {self.session_id}")
		self._items.append(PendingCandidate(session_id, candidate))
		logger.debug("ice candidate buffered session=%s pending=%s", self.session_id, len(self._items))

	def drain(self) -> List[IceCandidateDict]:
		if self._drained:
			raise RuntimeError("candidate queue already drained")
		self._drained = True
		items, self._items = self._items, []
		if items:
			logger.info("ice candidates drained session=%s count=%s", self.session_id, len(items))
		return [p.candidate for p in items]
