"""Unit tests for the pending ICE candidate queue."""
import pytest

from marketcall.errors import ProtocolViolation
from marketcall.rtc.candidate_buffer import PendingCandidateQueue


def _candidate(n):
    return {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


class TestPendingCandidateQueue:
    """Test buffering before the remote description is set."""

    def test_drain_returns_arrival_order(self):
        queue = PendingCandidateQueue("conv-1")
        for n in (3, 1, 2):
            queue.push("conv-1", _candidate(n))

        drained = queue.drain()

        assert [c["candidate"] for c in drained] == [_candidate(n)["candidate"] for n in (3, 1, 2)]
        assert queue.drained
        assert len(queue) == 0

    def test_drain_only_once(self):
        queue = PendingCandidateQueue("conv-1")
        assert queue.drain() == []

        with pytest.raises(RuntimeError):
            queue.drain()

    def test_push_after_drain_fails(self):
        queue = PendingCandidateQueue("conv-1")
        queue.drain()

        with pytest.raises(RuntimeError):
            queue.push("conv-1", _candidate(1))

    def test_push_for_other_session_rejected(self):
        queue = PendingCandidateQueue("conv-1")

        with pytest.raises(ProtocolViolation):
            queue.push("conv-2", _candidate(1))
        assert len(queue) == 0
