"""WebSocket relay adapter.

Speaks a small JSON protocol to a relay server that stores signaling records
and pushes them to subscribers on insert. This module is unaware of aiortc
and of call state; it only moves records.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import RelayUnavailable
from .relay import RecordCallback, RelayFilter


logger = logging.getLogger(__name__)


# Frame type constants
INSERT = "insert"
INSERTED = "inserted"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"
DELETE = "delete"

PING = "ping"
PONG = "pong"
ERROR = "error"


class _WsSubscription:
	def __init__(self, relay: "WebSocketRelay", sub_id: str, flt: RelayFilter, callback: RecordCallback):
		self._relay = relay
		self.sub_id = sub_id
		self.filter = flt
		self.callback = callback

	async def unsubscribe(self) -> None:
		if self._relay._subs.pop(self.sub_id, None) is None:
			return
		try:
			await self._relay._send({"type": UNSUBSCRIBE, "sub": self.sub_id})
		except RelayUnavailable:
			# The server drops subscriptions of a closed socket anyway.
			logger.debug("relay unsubscribe skipped (not connected) sub=%s", self.sub_id)


class WebSocketRelay:
	def __init__(self, url: str):
		self.url = url

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._subs: Dict[str, _WsSubscription] = {}

	@property
	def is_connected(self) -> bool:
		return self._ws is not None

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		logger.info("relay connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except (OSError, websockets.InvalidURI, websockets.InvalidHandshake) as e:
			logger.exception("relay connect failed url=%s", self.url)
			raise RelayUnavailable(f"cannot reach relay at {self.url}") from e
		self._recv_task = asyncio.create_task(self._recv_loop(), name="relay-recv")

		# Re-establish subscriptions made before a reconnect.
		for sub in list(self._subs.values()):
			await self._send({"type": SUBSCRIBE, "sub": sub.sub_id, "filter": sub.filter.to_json()})

	async def disconnect(self) -> None:
		logger.info("relay disconnect")
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except ConnectionClosed:
				pass
		self._ws = None

	async def insert(self, record: Dict[str, Any]) -> None:
		await self._send({"type": INSERT, "record": record})

	async def subscribe_on_insert(self, flt: RelayFilter, callback: RecordCallback) -> _WsSubscription:
		sub = _WsSubscription(self, uuid.uuid4().hex, flt, callback)
		self._subs[sub.sub_id] = sub
		try:
			await self._send({"type": SUBSCRIBE, "sub": sub.sub_id, "filter": flt.to_json()})
		except RelayUnavailable:
			self._subs.pop(sub.sub_id, None)
			raise
		return sub

	async def delete(self, flt: RelayFilter) -> None:
		await self._send({"type": DELETE, "filter": flt.to_json()})

	async def _send(self, payload: Dict[str, Any]) -> None:
		ws = self._ws
		if ws is None:
			raise RelayUnavailable("relay not connected")
		mtype = payload.get("type")
		if mtype == INSERT:
			record = payload.get("record") or {}
			logger.debug("relay send insert kind=%s session=%s", record.get("kind"), record.get("session_id"))
		else:
			logger.debug("relay send type=%s", mtype)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		try:
			async with self._send_lock:
				await ws.send(raw)
		except ConnectionClosed as e:
			raise RelayUnavailable("relay connection closed") from e

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("relay recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					logger.warning("relay invalid json len=%s", len(raw))
					continue

				if not isinstance(msg, dict):
					logger.warning("relay invalid frame type=%s", type(msg).__name__)
					continue

				mtype = msg.get("type")
				if mtype == PING:
					await self._send({"type": PONG, "ts": msg.get("ts")})
					continue

				if mtype == INSERTED:
					sub = self._subs.get(str(msg.get("sub", "")))
					record = msg.get("record")
					if sub is None or not isinstance(record, dict):
						logger.debug("relay inserted dropped sub=%s", msg.get("sub"))
						continue
					if not sub.filter.matches(record):
						continue
					await sub.callback(record)
					continue

				if mtype == ERROR:
					logger.warning("relay error: %s", msg.get("error"))
					continue

				logger.warning("relay unknown frame type=%s", mtype)

		except asyncio.CancelledError:
			raise
		except ConnectionClosed:
			logger.info("relay connection closed")
		except Exception:
			logger.exception("relay recv loop crashed")
		finally:
			logger.debug("relay recv loop stopped")
			if self._ws is ws:
				self._ws = None
