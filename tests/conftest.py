"""Shared test fixtures: two participants on one in-memory relay."""
import pytest

from marketcall.config import CallConfig
from marketcall.net.signaling_client import SignalRelayClient
from marketcall.rtc.orchestrator import CallOrchestrator

from tests.fakes import FakeMediaSource, PeerConnectionFactory, RecordingRelay


@pytest.fixture
def call_config():
    return CallConfig(announce_sdp_candidates=False, end_signal_timeout=0.2, duration_tick=0.01)


@pytest.fixture
def relay():
    return RecordingRelay()


@pytest.fixture
def alice_signaling(relay):
    return SignalRelayClient(relay, "alice")


@pytest.fixture
def bob_signaling(relay):
    return SignalRelayClient(relay, "bob")


@pytest.fixture
def alice_pcs():
    return PeerConnectionFactory()


@pytest.fixture
def bob_pcs():
    return PeerConnectionFactory()


@pytest.fixture
def alice_media():
    return FakeMediaSource()


@pytest.fixture
def bob_media():
    return FakeMediaSource()


@pytest.fixture
async def alice(alice_signaling, alice_media, call_config, alice_pcs):
    orchestrator = CallOrchestrator(alice_signaling, alice_media, config=call_config, pc_factory=alice_pcs)
    yield orchestrator
    await orchestrator.shutdown()


@pytest.fixture
async def bob(bob_signaling, bob_media, call_config, bob_pcs):
    orchestrator = CallOrchestrator(bob_signaling, bob_media, config=call_config, pc_factory=bob_pcs)
    yield orchestrator
    await orchestrator.shutdown()
