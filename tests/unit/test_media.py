"""Unit tests for local media handles."""
import asyncio
from fractions import Fraction
from types import SimpleNamespace

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from marketcall.errors import MediaAcquisitionError
from marketcall.net import protocol
from marketcall.rtc import media
from marketcall.rtc.media import CaptureDevice, MediaHandles, PlayerMediaSource, RemoteMediaSink, ToggleableTrack

from tests.fakes import FakeSoundDevice, FakeSourceTrack, wait_until


def _handles(video=False):
    return MediaHandles(
        audio=ToggleableTrack(FakeSourceTrack("audio")),
        video=ToggleableTrack(FakeSourceTrack("video")) if video else None,
    )


class TestMediaHandles:
    """Test toggles and release."""

    def test_toggle_mute(self):
        handles = _handles()

        assert handles.toggle_mute() is True
        assert handles.muted
        assert handles.toggle_mute() is False
        assert not handles.muted

    def test_toggle_video_without_camera(self):
        handles = _handles()

        assert handles.toggle_video() is False
        assert not handles.video_enabled

    def test_toggle_video(self):
        handles = _handles(video=True)

        assert handles.video_enabled
        assert handles.toggle_video() is True
        assert not handles.video_enabled

    def test_release_stops_tracks_once(self):
        handles = _handles(video=True)
        sources = [t._source for t in handles.tracks]

        handles.release()
        handles.release()

        assert handles.released
        assert all(t.readyState == "ended" for t in handles.tracks)
        assert all(s.readyState == "ended" for s in sources)


class TestCaptureDevice:
    """Test capture device parsing."""

    def test_parse(self):
        device = CaptureDevice.parse("v4l2:/dev/video0")

        assert device.backend == "v4l2"
        assert device.device == "/dev/video0"

    @pytest.mark.parametrize("spec", ["pulse", ":default", "pulse:"])
    def test_parse_rejects_malformed(self, spec):
        with pytest.raises(ValueError):
            CaptureDevice.parse(spec)

    def test_env_device_ignores_malformed(self, monkeypatch):
        monkeypatch.setenv("MARKETCALL_AUDIO_INPUT", "nonsense")

        assert PlayerMediaSource().audio_input is None


class TestAcquire:
    """Test capture failures map to user-facing errors."""

    @pytest.mark.asyncio
    async def test_no_capture_backend(self, monkeypatch):
        monkeypatch.setattr(media, "_default_audio_inputs", lambda: [])

        with pytest.raises(MediaAcquisitionError) as exc:
            await PlayerMediaSource().acquire(protocol.VOICE)
        assert exc.value.reason == "unsupported"

    @pytest.mark.asyncio
    async def test_permission_denied(self, monkeypatch):
        def deny(device, *, kind, options=None):
            raise PermissionError(device.device)

        monkeypatch.setattr(media, "_open_player", deny)

        with pytest.raises(MediaAcquisitionError) as exc:
            await PlayerMediaSource(audio_input=CaptureDevice("pulse", "default")).acquire(protocol.VOICE)
        assert exc.value.reason == "permission-denied"
        assert "microphone" in exc.value.user_message

    @pytest.mark.asyncio
    async def test_missing_camera_releases_microphone(self, monkeypatch):
        opened = []

        def open_player(device, *, kind, options=None):
            if kind == "video":
                raise FileNotFoundError(device.device)
            track = FakeSourceTrack("audio")
            opened.append(track)
            return object(), track

        monkeypatch.setattr(media, "_open_player", open_player)

        with pytest.raises(MediaAcquisitionError) as exc:
            await PlayerMediaSource(
                audio_input=CaptureDevice("pulse", "default"), video_input=CaptureDevice("v4l2", "/dev/video9")
            ).acquire(protocol.VIDEO)
        assert exc.value.reason == "not-found"
        assert opened[0].readyState == "ended"


class TestPlatformDefaults:
    """Test the per-platform device fallbacks."""

    def test_windows(self, monkeypatch):
        monkeypatch.setattr(media, "sys", SimpleNamespace(platform="win32"))

        assert [d.backend for d in media._default_audio_inputs()] == ["sounddevice", "dshow"]
        assert all(d.backend == "dshow" and d.device.startswith("video=") for d in media._default_video_inputs())
        assert media._default_audio_outputs() == [CaptureDevice("sounddevice", "default")]

    def test_linux(self, monkeypatch):
        monkeypatch.setattr(media, "sys", SimpleNamespace(platform="linux"))

        assert [d.backend for d in media._default_audio_inputs()] == ["pulse", "alsa"]
        assert [d.backend for d in media._default_audio_outputs()] == ["pulse", "alsa"]


class OneFrameTrack(MediaStreamTrack):
    kind = "audio"

    def __init__(self):
        super().__init__()
        self._sent = False

    async def recv(self):
        if self._sent:
            raise MediaStreamError
        self._sent = True
        frame = av.AudioFrame.from_ndarray(np.zeros((1, 960), dtype=np.int16), format="s16", layout="mono")
        frame.sample_rate = 48000
        frame.pts = 0
        frame.time_base = Fraction(1, 48000)
        return frame


class TestSoundDevice:
    """Test the PortAudio capture and playback path."""

    @pytest.mark.asyncio
    async def test_capture_delivers_frames(self, monkeypatch):
        fake = FakeSoundDevice()
        monkeypatch.setattr(media, "sd", fake)

        handles = await PlayerMediaSource(audio_input=CaptureDevice("sounddevice", "default")).acquire(protocol.VOICE)
        stream = fake.streams[0]
        assert stream.started
        assert stream.settings["device"] is None

        stream.callback(np.zeros(960, dtype=np.int16).tobytes(), 960, None, None)
        frame = await asyncio.wait_for(handles.audio.recv(), timeout=1)

        assert frame.samples == 960
        assert frame.sample_rate == 48000
        handles.release()
        assert stream.closed

    @pytest.mark.asyncio
    async def test_device_index_passed_through(self, monkeypatch):
        fake = FakeSoundDevice()
        monkeypatch.setattr(media, "sd", fake)

        handles = await PlayerMediaSource(audio_input=CaptureDevice("sounddevice", "3")).acquire(protocol.VOICE)

        assert fake.streams[0].settings["device"] == 3
        handles.release()

    @pytest.mark.asyncio
    async def test_capture_failure_is_not_found(self, monkeypatch):
        monkeypatch.setattr(media, "sd", FakeSoundDevice(fail=True))
        monkeypatch.setattr(media, "_default_audio_inputs", lambda: [])

        with pytest.raises(MediaAcquisitionError) as exc:
            await PlayerMediaSource(audio_input=CaptureDevice("sounddevice", "default")).acquire(protocol.VOICE)
        assert exc.value.reason == "not-found"

    @pytest.mark.asyncio
    async def test_playback_writes_remote_audio(self, monkeypatch):
        fake = FakeSoundDevice()
        monkeypatch.setattr(media, "sd", fake)
        sink = RemoteMediaSink(output=CaptureDevice("sounddevice", "default"))

        await sink.start([OneFrameTrack()])
        stream = fake.streams[0]
        await wait_until(lambda: stream.writes)

        assert sink.sink == "sounddevice:default"
        await sink.stop()
        assert stream.closed

    @pytest.mark.asyncio
    async def test_playback_falls_back_to_blackhole(self, monkeypatch):
        monkeypatch.setattr(media, "sd", FakeSoundDevice(fail=True))
        monkeypatch.setattr(media, "_default_audio_outputs", lambda: [])
        sink = RemoteMediaSink(output=CaptureDevice("sounddevice", "default"))

        await sink.start([OneFrameTrack()])

        assert sink.sink == "blackhole"
        await sink.stop()
