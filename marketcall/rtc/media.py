"""Local media for calls.

- Open the microphone (and camera for video calls) via aiortc's MediaPlayer,
  trying the platform's ffmpeg capture formats in turn. On Windows the
  microphone and speakers go through PortAudio (sounddevice) first.
- Wrap each local track so it can be disabled without renegotiation: a
  disabled track keeps its timing but sends silence / black frames.
"""

from __future__ import annotations

import asyncio
import fractions
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import MediaStreamError

from ..errors import MediaAcquisitionError
from ..net.protocol import VIDEO

try:
	import sounddevice as sd
except OSError:
	# The wheel is installed but the PortAudio library could not be loaded.
	sd = None


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureDevice:
	"""A capture input.

	`backend` matches the ffmpeg/aiortc format string (e.g. "pulse", "v4l2"),
	or "sounddevice" for PortAudio. `device` is the ffmpeg device name passed
	to MediaPlayer, or a PortAudio device name/index ("default" for the
	host default).
	"""

	backend: str
	device: str
	label: str = ""

	@classmethod
	def parse(cls, spec: str) -> "CaptureDevice":
		"""Parse "backend:device", e.g. "v4l2:/dev/video0" or "pulse:default"."""
		backend, sep, device = spec.partition(":")
		if not sep or not backend or not device:
			raise ValueError(f"capture device must look like backend:device, got {spec!r}")
		return cls(backend=backend, device=device, label=spec)


def _default_audio_inputs() -> List[CaptureDevice]:
	if sys.platform.startswith("linux"):
		# PulseAudio is typical on desktop Linux, ALSA as fallback.
		return [CaptureDevice("pulse", "default"), CaptureDevice("alsa", "default")]
	if sys.platform == "darwin":
		return [CaptureDevice("avfoundation", ":default")]
	if sys.platform == "win32":
		# DirectShow needs a real device name; PortAudio knows the default.
		return [CaptureDevice("sounddevice", "default"), CaptureDevice("dshow", "audio=Microphone")]
	return []


def _default_video_inputs() -> List[CaptureDevice]:
	if sys.platform.startswith("linux"):
		return [CaptureDevice("v4l2", "/dev/video0")]
	if sys.platform == "darwin":
		return [CaptureDevice("avfoundation", "default:none")]
	if sys.platform == "win32":
		return [CaptureDevice("dshow", "video=Integrated Camera"), CaptureDevice("dshow", "video=USB Video Device")]
	return []


def _sounddevice_id(device: CaptureDevice) -> Any:
	if device.device == "default":
		return None
	return int(device.device) if device.device.isdigit() else device.device


def _env_device(name: str) -> Optional[CaptureDevice]:
	v = os.environ.get(name)
	if not v:
		return None
	try:
		return CaptureDevice.parse(v)
	except ValueError:
		logger.warning("ignoring %s=%r (expected backend:device)", name, v)
		return None


class SoundDeviceAudioTrack(MediaStreamTrack):
	"""Microphone capture through PortAudio (WASAPI/MME on Windows).

	The PortAudio callback thread hands int16 blocks to the event loop; if the
	call falls behind, the oldest block is dropped.
	"""

	kind = "audio"

	def __init__(self, device: Any = None, *, samplerate: int = 48000, channels: int = 1, blocksize: int = 960):
		super().__init__()
		if sd is None:
			raise OSError("sounddevice is not available")
		self._samplerate = samplerate
		self._channels = channels
		self._time_base = fractions.Fraction(1, samplerate)
		self._timestamp = 0
		self._loop = asyncio.get_running_loop()
		self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=50)
		self._stream = None

		def _callback(indata, frames, time_info, status) -> None:
			try:
				self._loop.call_soon_threadsafe(self._push, bytes(indata))
			except RuntimeError:
				# Loop already closed; the stream is being torn down.
				return

		try:
			self._stream = sd.RawInputStream(
				samplerate=samplerate,
				channels=channels,
				dtype="int16",
				blocksize=blocksize,
				device=device,
				callback=_callback,
			)
			self._stream.start()
		except sd.PortAudioError as e:
			raise OSError(f"audio input {device if device is not None else 'default'}: {e}") from e
		logger.info("local audio backend=sounddevice device=%s rate=%s ch=%s", device, samplerate, channels)

	def _push(self, data: bytes) -> None:
		if self._queue.full():
			self._queue.get_nowait()
		self._queue.put_nowait(data)

	async def recv(self):  # type: ignore[override]
		if self.readyState != "live":
			raise MediaStreamError
		data = await self._queue.get()
		arr = np.frombuffer(data, dtype=np.int16).reshape(1, -1)
		frame = av.AudioFrame.from_ndarray(arr, format="s16", layout="mono" if self._channels == 1 else "stereo")
		frame.sample_rate = self._samplerate
		frame.pts = self._timestamp
		frame.time_base = self._time_base
		self._timestamp += arr.shape[1] // self._channels
		return frame

	def stop(self) -> None:  # type: ignore[override]
		stream, self._stream = self._stream, None
		try:
			if stream is not None:
				stream.stop()
				stream.close()
		finally:
			super().stop()


class ToggleableTrack(MediaStreamTrack):
	"""Pass-through local track with an `enabled` switch.

	While disabled, frames keep flowing with their original timing but carry
	silence (audio) or black pixels (video), the same way a browser track with
	`enabled = false` behaves.
	"""

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self.kind = source.kind
		self.enabled = True
		self._source = source

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self.enabled:
			return frame
		if isinstance(frame, av.AudioFrame):
			return self._silence_like(frame)
		if isinstance(frame, av.VideoFrame):
			return self._black_like(frame)
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()

	@staticmethod
	def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
		arr = np.zeros_like(frame.to_ndarray())
		silent = av.AudioFrame.from_ndarray(arr, format=frame.format.name, layout=frame.layout.name)
		silent.sample_rate = frame.sample_rate
		silent.pts = frame.pts
		silent.time_base = frame.time_base
		return silent

	@staticmethod
	def _black_like(frame: av.VideoFrame) -> av.VideoFrame:
		out = av.VideoFrame.from_ndarray(np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24")
		out.pts = frame.pts
		out.time_base = frame.time_base
		return out


@dataclass
class MediaHandles:
	"""Owns the capture players so their tracks stay alive.

	Exclusively owned by one peer session; `release()` stops every track and
	is safe to call more than once.
	"""

	audio: Optional[ToggleableTrack] = None
	video: Optional[ToggleableTrack] = None
	players: List[Any] = field(default_factory=list)
	released: bool = False

	@property
	def tracks(self) -> List[MediaStreamTrack]:
		return [t for t in (self.audio, self.video) if t is not None]

	@property
	def muted(self) -> bool:
		return self.audio is not None and not self.audio.enabled

	@property
	def video_enabled(self) -> bool:
		return self.video is not None and self.video.enabled

	def toggle_mute(self) -> bool:
		"""Flip the microphone; returns True when now muted."""
		if self.audio is None:
			return False
		self.audio.enabled = not self.audio.enabled
		return not self.audio.enabled

	def toggle_video(self) -> bool:
		"""Flip the camera; returns True when video is now off."""
		if self.video is None:
			return False
		self.video.enabled = not self.video.enabled
		return not self.video.enabled

	def release(self) -> None:
		if self.released:
			return
		self.released = True
		for track in self.tracks:
			try:
				track.stop()
			except Exception:
				logger.warning("stopping local %s track failed", track.kind, exc_info=True)
		self.players.clear()
		logger.debug("media handles released")


class MediaSource(Protocol):
	async def acquire(self, mode: str) -> MediaHandles: ...


def _open_player(device: CaptureDevice, *, kind: str, options: Optional[dict] = None) -> Tuple[Any, MediaStreamTrack]:
	if device.backend == "sounddevice":
		if kind != "audio":
			raise ValueError("sounddevice only captures audio")
		track = SoundDeviceAudioTrack(_sounddevice_id(device))
		return track, track
	player = MediaPlayer(device.device, format=device.backend, options=options or {})
	track = player.audio if kind == "audio" else player.video
	if track is None:
		for t in (player.audio, player.video):
			if t is not None:
				t.stop()
		raise FileNotFoundError(f"{device.backend}:{device.device} has no {kind} stream")
	return player, track


def _open_first(candidates: List[CaptureDevice], *, kind: str, options: Optional[dict] = None) -> Tuple[Any, MediaStreamTrack, CaptureDevice]:
	if not candidates:
		raise MediaAcquisitionError(
			"Your system does not support media capture. Please use a supported platform.",
			reason="unsupported",
		)
	last_error: Optional[Exception] = None
	for device in candidates:
		try:
			player, track = _open_player(device, kind=kind, options=options)
			logger.info("local %s backend=%s device=%s", kind, device.backend, device.device)
			return player, track, device
		except (av.error.FFmpegError, OSError, ValueError) as e:
			logger.debug("local %s open failed backend=%s device=%s: %s", kind, device.backend, device.device, e)
			last_error = e

	what = "microphone" if kind == "audio" else "camera"
	if isinstance(last_error, PermissionError):
		raise MediaAcquisitionError(
			f"Permission denied. Please allow {what} access in your system settings.",
			reason="permission-denied",
		) from last_error
	raise MediaAcquisitionError(
		f"No {what} found. Please connect a device and try again.",
		reason="not-found",
	) from last_error


class PlayerMediaSource:
	"""Capture via ffmpeg devices.

	Preferred devices come from the constructor or from
	MARKETCALL_AUDIO_INPUT / MARKETCALL_VIDEO_INPUT ("backend:device").
	"""

	def __init__(self, audio_input: Optional[CaptureDevice] = None, video_input: Optional[CaptureDevice] = None):
		self.audio_input = audio_input or _env_device("MARKETCALL_AUDIO_INPUT")
		self.video_input = video_input or _env_device("MARKETCALL_VIDEO_INPUT")

	async def acquire(self, mode: str) -> MediaHandles:
		audio_candidates = ([self.audio_input] if self.audio_input else []) + _default_audio_inputs()
		player, track, _ = _open_first(audio_candidates, kind="audio")
		handles = MediaHandles(audio=ToggleableTrack(track), players=[player])

		if mode == VIDEO:
			video_candidates = ([self.video_input] if self.video_input else []) + _default_video_inputs()
			try:
				vplayer, vtrack, _ = _open_first(
					video_candidates, kind="video", options={"framerate": "30", "video_size": "640x480"}
				)
			except MediaAcquisitionError:
				handles.release()
				raise
			handles.video = ToggleableTrack(vtrack)
			handles.players.append(vplayer)
		return handles


class SoundDevicePlayback:
	"""Plays remote audio through PortAudio; same surface as MediaRecorder.

	Frames are resampled to mono s16 and written from a worker thread so a
	blocking device write never stalls the event loop.
	"""

	def __init__(self, device: Any = None, *, samplerate: int = 48000, blocksize: int = 960):
		if sd is None:
			raise OSError("sounddevice is not available")
		self._samplerate = samplerate
		self._tracks: List[MediaStreamTrack] = []
		self._tasks: List[asyncio.Task[None]] = []
		try:
			self._stream = sd.RawOutputStream(
				samplerate=samplerate,
				channels=1,
				dtype="int16",
				blocksize=blocksize,
				device=device,
			)
		except sd.PortAudioError as e:
			raise OSError(f"audio output {device if device is not None else 'default'}: {e}") from e

	def addTrack(self, track: MediaStreamTrack) -> None:
		self._tracks.append(track)

	async def start(self) -> None:
		self._stream.start()
		for track in self._tracks:
			self._tasks.append(asyncio.create_task(self._pump(track), name=f"remote-audio-{track.id}"))

	async def stop(self) -> None:
		tasks, self._tasks = self._tasks, []
		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)
		self._stream.stop()
		self._stream.close()

	async def _pump(self, track: MediaStreamTrack) -> None:
		loop = asyncio.get_running_loop()
		resampler = av.AudioResampler(format="s16", layout="mono", rate=self._samplerate)
		while True:
			try:
				frame = await track.recv()
			except MediaStreamError:
				logger.debug("remote audio track ended id=%s", track.id)
				return
			for out in resampler.resample(frame):
				await loop.run_in_executor(None, self._stream.write, out.to_ndarray().tobytes())


@dataclass
class RemoteMediaSink:
	"""Consumes remote tracks.

	Audio goes to the chosen output if ffmpeg (or PortAudio, for the
	"sounddevice" backend) can open it, else to the system output, else it is
	discarded. Video is drained into a blackhole; rendering it is the UI's job.
	"""

	output: Optional[CaptureDevice] = None
	_recorders: List[Any] = field(default_factory=list)
	_track_ids: List[str] = field(default_factory=list)
	sink: str = "none"

	async def start(self, tracks: List[MediaStreamTrack]) -> None:
		if not tracks or all(t.id in self._track_ids for t in tracks):
			return
		# MediaRecorder cannot take tracks after start(); restart with the full set.
		await self.stop()

		audio = [t for t in tracks if t.kind == "audio"]
		others = [t for t in tracks if t.kind != "audio"]
		if audio:
			recorder, self.sink = self._open_audio_output()
			for track in audio:
				recorder.addTrack(track)
			await recorder.start()
			self._recorders.append(recorder)
		if others:
			blackhole = MediaBlackhole()
			for track in others:
				blackhole.addTrack(track)
			await blackhole.start()
			self._recorders.append(blackhole)
		self._track_ids = [t.id for t in tracks]
		logger.info("remote media sink=%s tracks=%s", self.sink, len(tracks))

	async def stop(self) -> None:
		recorders, self._recorders = self._recorders, []
		self._track_ids = []
		for recorder in recorders:
			await recorder.stop()

	def _open_audio_output(self) -> Tuple[Any, str]:
		outputs = ([self.output] if self.output else []) + _default_audio_outputs()
		for device in outputs:
			try:
				if device.backend == "sounddevice":
					return SoundDevicePlayback(_sounddevice_id(device)), f"sounddevice:{device.device}"
				return MediaRecorder(device.device, format=device.backend), f"{device.backend}:{device.device}"
			except (av.error.FFmpegError, OSError, ValueError):
				logger.debug("remote audio output unavailable backend=%s device=%s", device.backend, device.device)
		return MediaBlackhole(), "blackhole"


def _default_audio_outputs() -> List[CaptureDevice]:
	if sys.platform.startswith("linux"):
		return [CaptureDevice("pulse", "default"), CaptureDevice("alsa", "default")]
	if sys.platform == "darwin":
		return [CaptureDevice("audiotoolbox", "0")]
	if sys.platform == "win32":
		return [CaptureDevice("sounddevice", "default")]
	return []
