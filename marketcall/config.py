from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_ICE_SERVERS = (
	"stun:stun.l.google.com:19302",
	"stun:stun1.l.google.com:19302",
	"stun:stun2.l.google.com:19302",
)


def _env_truthy(name: str, default: bool) -> bool:
	v = os.environ.get(name)
	if v is None:
		return default
	return v.strip().casefold() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return float(v)
	except ValueError:
		return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
	v = os.environ.get(name)
	if v is None:
		return default
	return tuple(s.strip() for s in v.split(",") if s.strip())


@dataclass
class CallConfig:
	"""Engine-wide call settings.

	Tuning (optional env vars):
	- MARKETCALL_ICE_SERVERS: comma-separated STUN/TURN urls.
	- MARKETCALL_END_TIMEOUT_SEC: how long a hang-up waits for the `end` insert.
	- MARKETCALL_ANNOUNCE_SDP_CANDIDATES: trickle candidates found in the local SDP.
	"""

	ice_servers: tuple[str, ...] = field(default=DEFAULT_ICE_SERVERS)
	end_signal_timeout: float = 2.0
	announce_sdp_candidates: bool = True
	duration_tick: float = 1.0
	turn_username: Optional[str] = None
	turn_credential: Optional[str] = None

	@classmethod
	def from_env(cls) -> "CallConfig":
		return cls(
			ice_servers=_env_list("MARKETCALL_ICE_SERVERS", DEFAULT_ICE_SERVERS),
			end_signal_timeout=_env_float("MARKETCALL_END_TIMEOUT_SEC", cls.end_signal_timeout),
			announce_sdp_candidates=_env_truthy("MARKETCALL_ANNOUNCE_SDP_CANDIDATES", cls.announce_sdp_candidates),
			turn_username=os.environ.get("MARKETCALL_TURN_USERNAME") or None,
			turn_credential=os.environ.get("MARKETCALL_TURN_CREDENTIAL") or None,
		)

	def rtc_configuration(self) -> RTCConfiguration:
		servers = []
		for url in self.ice_servers:
			if url.startswith(("turn:", "turns:")):
				servers.append(RTCIceServer(urls=url, username=self.turn_username, credential=self.turn_credential))
			else:
				servers.append(RTCIceServer(urls=url))
		return RTCConfiguration(iceServers=servers)
