"""Message relay boundary.

The relay is a persistence + pub/sub substrate: records are inserted, and
every subscriber whose filter matches is called back with the inserted record.
No ordering, no exactly-once and no transactional guarantee is assumed.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from ..errors import RelayUnavailable


logger = logging.getLogger(__name__)


RecordCallback = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class RelayFilter:
	session_id: Optional[str] = None
	to_participant_id: Optional[str] = None

	def matches(self, record: Mapping[str, Any]) -> bool:
		if self.session_id is not None and record.get("session_id") != self.session_id:
			return False
		if self.to_participant_id is not None and record.get("to_participant_id") != self.to_participant_id:
			return False
		return True

	def to_json(self) -> Dict[str, str]:
		out: Dict[str, str] = {}
		if self.session_id is not None:
			out["session_id"] = self.session_id
		if self.to_participant_id is not None:
			out["to_participant_id"] = self.to_participant_id
		return out


class RelaySubscription(Protocol):
	async def unsubscribe(self) -> None: ...


class MessageRelay(Protocol):
	async def insert(self, record: Dict[str, Any]) -> None: ...

	async def subscribe_on_insert(self, flt: RelayFilter, callback: RecordCallback) -> RelaySubscription: ...

	async def delete(self, flt: RelayFilter) -> None: ...


class _MemorySubscription:
	def __init__(self, relay: "InMemoryRelay", flt: RelayFilter, callback: RecordCallback):
		self._relay = relay
		self.filter = flt
		self.callback = callback
		self.active = True

	async def unsubscribe(self) -> None:
		if not self.active:
			return
		self.active = False
		self._relay._subscriptions.remove(self)


class InMemoryRelay:
	"""In-process relay for the loopback client and tests.

	Callbacks are scheduled on the running loop rather than invoked inline, so
	an insert never re-enters the sender. `available = False` simulates an
	unreachable substrate.
	"""

	def __init__(self) -> None:
		self.records: List[Dict[str, Any]] = []
		self.available = True
		self._subscriptions: List[_MemorySubscription] = []
		self._pending: set[asyncio.Task[None]] = set()

	@property
	def subscription_count(self) -> int:
		return len(self._subscriptions)

	async def insert(self, record: Dict[str, Any]) -> None:
		self._check_available()
		stored = copy.deepcopy(record)
		self.records.append(stored)
		for sub in list(self._subscriptions):
			if sub.filter.matches(stored):
				self._dispatch(sub, copy.deepcopy(stored))

	async def redeliver(self, record: Mapping[str, Any]) -> None:
		"""Push an already-stored record again (at-least-once duplication)."""
		for sub in list(self._subscriptions):
			if sub.filter.matches(record):
				self._dispatch(sub, copy.deepcopy(dict(record)))

	async def subscribe_on_insert(self, flt: RelayFilter, callback: RecordCallback) -> _MemorySubscription:
		self._check_available()
		sub = _MemorySubscription(self, flt, callback)
		self._subscriptions.append(sub)
		return sub

	async def delete(self, flt: RelayFilter) -> None:
		self._check_available()
		self.records = [r for r in self.records if not flt.matches(r)]

	async def drain(self) -> None:
		"""Wait until every scheduled callback has run."""
		while self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)

	def _dispatch(self, sub: _MemorySubscription, record: Dict[str, Any]) -> None:
		async def _deliver() -> None:
			if not sub.active:
				return
			try:
				await sub.callback(record)
			except Exception:
				logger.exception("relay subscriber callback failed kind=%s", record.get("kind"))

		task = asyncio.get_running_loop().create_task(_deliver(), name="relay-deliver")
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)

	def _check_available(self) -> None:
		if not self.available:
			raise RelayUnavailable("in-memory relay marked unavailable")
