"""Signal relay client.

Wraps a `MessageRelay`: persists outbound signaling messages and turns the
relay's insert callbacks into per-session message streams. It is unaware of
aiortc and of call state.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Dict, Optional

from ..errors import RelayError, RelayUnavailable
from . import protocol
from .protocol import ProtocolError, SignalingMessage
from .relay import MessageRelay, RelayFilter, RelaySubscription


logger = logging.getLogger(__name__)


SEEN_ID_LIMIT = 1024


class SeenIds:
	"""The most recent message ids, oldest evicted first.

	Holds at most `limit` ids; a redelivery older than that window is no
	longer recognised.
	"""

	def __init__(self, limit: int = SEEN_ID_LIMIT):
		self._order: deque[str] = deque(maxlen=limit)
		self._ids: set[str] = set()

	def __len__(self) -> int:
		return len(self._ids)

	def __contains__(self, message_id: object) -> bool:
		return message_id in self._ids

	def add(self, message_id: str) -> None:
		if message_id in self._ids:
			return
		if len(self._order) == self._order.maxlen:
			self._ids.discard(self._order[0])
		self._order.append(message_id)
		self._ids.add(message_id)


class SignalStream:
	"""Push-based stream of messages for one relay subscription.

	Messages are yielded one at a time in relay-arrival order. Exact
	redeliveries (same message id) are dropped here.
	"""

	def __init__(self, label: str, local_participant_id: str, seen_limit: int = SEEN_ID_LIMIT):
		self.label = label
		self._local_id = local_participant_id
		self._queue: asyncio.Queue[Optional[SignalingMessage]] = asyncio.Queue()
		self._subscription: Optional[RelaySubscription] = None
		self._seen = SeenIds(seen_limit)
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def __aiter__(self) -> "SignalStream":
		return self

	async def __anext__(self) -> SignalingMessage:
		if self._closed and self._queue.empty():
			raise StopAsyncIteration
		msg = await self._queue.get()
		if msg is None:
			raise StopAsyncIteration
		return msg

	async def close(self) -> None:
		"""Release the relay subscription. Safe to call more than once."""
		if self._closed:
			return
		self._closed = True
		sub = self._subscription
		self._subscription = None
		self._queue.put_nowait(None)
		if sub is None:
			return
		try:
			await sub.unsubscribe()
		except (RelayError, OSError):
			logger.warning("signal stream unsubscribe failed stream=%s", self.label, exc_info=True)
		logger.debug("signal stream closed stream=%s", self.label)

	async def _on_record(self, record: Dict[str, Any]) -> None:
		if self._closed:
			return
		try:
			msg = SignalingMessage.from_record(record)
		except ProtocolError as e:
			logger.warning("signal stream dropped malformed record stream=%s: %s", self.label, e.message)
			return
		if msg.from_participant_id == self._local_id or msg.to_participant_id != self._local_id:
			return
		if msg.message_id in self._seen:
			logger.debug("signal stream duplicate dropped stream=%s kind=%s id=%s", self.label, msg.kind, msg.message_id)
			return
		self._seen.add(msg.message_id)
		self._queue.put_nowait(msg)


class SignalRelayClient:
	def __init__(self, relay: MessageRelay, local_participant_id: str):
		self.relay = relay
		self.local_participant_id = local_participant_id

	async def send(self, message: SignalingMessage) -> None:
		"""Persist `message` for delivery to its recipient.

		Raises RelayUnavailable when the substrate cannot be reached; the caller
		decides whether that is fatal.
		"""
		if message.from_participant_id != self.local_participant_id:
			raise ValueError("can only send messages from the local participant")
		if message.kind in (protocol.OFFER, protocol.ANSWER):
			logger.info(
				"signal send kind=%s session=%s to=%s sdp_len=%s",
				message.kind,
				message.session_id,
				message.to_participant_id,
				len(str(message.payload.get("sdp", ""))),
			)
		else:
			logger.debug("signal send kind=%s session=%s", message.kind, message.session_id)
		try:
			await self.relay.insert(message.to_record())
		except RelayUnavailable:
			raise
		except (RelayError, OSError) as e:
			raise RelayUnavailable(f"relay insert failed: {e}") from e

	async def subscribe(self, session_id: str) -> SignalStream:
		"""Stream every message addressed to us for `session_id`."""
		return await self._open(
			f"session:{session_id}",
			RelayFilter(session_id=session_id, to_participant_id=self.local_participant_id),
		)

	async def subscribe_incoming(self) -> SignalStream:
		"""Stream every message addressed to us, across sessions."""
		return await self._open(
			f"incoming:{self.local_participant_id}",
			RelayFilter(to_participant_id=self.local_participant_id),
		)

	async def teardown(self, session_id: str) -> None:
		"""Best-effort deletion of the session's records (space reclamation only)."""
		try:
			await self.relay.delete(RelayFilter(session_id=session_id))
			logger.debug("signal teardown session=%s", session_id)
		except (RelayError, OSError):
			logger.warning("signal teardown failed session=%s", session_id, exc_info=True)

	async def _open(self, label: str, flt: RelayFilter) -> SignalStream:
		stream = SignalStream(label, self.local_participant_id)
		try:
			stream._subscription = await self.relay.subscribe_on_insert(flt, stream._on_record)
		except RelayUnavailable:
			raise
		except (RelayError, OSError) as e:
			raise RelayUnavailable(f"relay subscribe failed: {e}") from e
		logger.debug("signal stream opened stream=%s", label)
		return stream
