"""Tests for per-meeting session state and the session registry."""

import pytest

from opsmemory.common.errors import StateConflictError
from opsmemory.common.config import ObserverConfig
from opsmemory.common.schemas import DocumentKind, Observation
from opsmemory.observer.session_state import DocumentThread, MeetingSession, SessionRegistry


def _obs(text="Clicked the save button"):
    return Observation(meeting_id="m1", content=text)


class TestDocumentThread:
    def test_single_flight_excludes_second_caller(self):
        thread = DocumentThread(kind=DocumentKind.PROCEDURE)
        with thread.single_flight() as first:
            assert first
            with thread.single_flight() as second:
                assert not second
            assert thread.in_flight
        assert not thread.in_flight

    def test_single_flight_released_on_error(self):
        thread = DocumentThread(kind=DocumentKind.PROCEDURE)
        with pytest.raises(RuntimeError):
            with thread.single_flight() as acquired:
                assert acquired
                raise RuntimeError("collaborator timed out")
        assert not thread.in_flight

    def test_mark_synthesized_advances(self):
        thread = DocumentThread(kind=DocumentKind.PROCEDURE, observations=[_obs(), _obs()])
        thread.force_next = True
        thread.mark_synthesized(2, 1, now=50.0, transcript_mark=4, forced=True)
        assert thread.cursor == 2
        assert thread.version == 1
        assert thread.last_synthesis_at == 50.0
        assert thread.transcript_mark == 4
        assert not thread.force_next
        assert thread.pending_observations() == []

    def test_force_requested_during_unforced_run_stays_pending(self):
        thread = DocumentThread(kind=DocumentKind.PROCEDURE, observations=[_obs()])
        thread.force_next = True
        thread.mark_synthesized(1, 1, now=10.0, transcript_mark=0)
        assert thread.force_next

    def test_cursor_cannot_pass_log_length(self):
        thread = DocumentThread(kind=DocumentKind.PROCEDURE, observations=[_obs()])
        with pytest.raises(StateConflictError):
            thread.mark_synthesized(2, 1, now=0.0, transcript_mark=0)

    def test_version_must_increase(self):
        thread = DocumentThread(kind=DocumentKind.ROLE, version=3)
        with pytest.raises(StateConflictError):
            thread.mark_synthesized(0, 3, now=0.0, transcript_mark=0)


class TestMeetingSession:
    def test_observation_fans_out_to_threads(self):
        session = MeetingSession("m1", now=0.0)
        session.append_observation(_obs())
        assert session.observation_count == 1
        assert len(session.thread(DocumentKind.ROLE).observations) == 1

    def test_transcript_window_and_since(self):
        session = MeetingSession("m1", now=0.0, transcript_window=3)
        for i in range(5):
            session.add_transcript("Ana", f"line {i}", now=float(i))
        assert [e.text for e in session.transcript] == ["line 2", "line 3", "line 4"]
        assert [e.seq for e in session.transcript_since(3)] == [4, 5]
        assert session.transcript_text().splitlines()[0] == "Ana: line 2"

    def test_transcription_disabled_by_default(self):
        assert not MeetingSession("m1", now=0.0).transcription_enabled


class TestSessionRegistry:
    def test_get_or_create_returns_same_session(self, clock):
        registry = SessionRegistry(ObserverConfig(), clock)
        assert registry.get_or_create("m1") is registry.get_or_create("m1")
        assert registry.active_count() == 1

    def test_lazy_expiry(self, clock):
        registry = SessionRegistry(ObserverConfig(session_ttl_seconds=600), clock)
        first = registry.get_or_create("m1")

        clock.advance(601)
        assert registry.get("m1") is None
        second = registry.get_or_create("m1")
        assert second is not first

    def test_touch_keeps_session_alive(self, clock):
        registry = SessionRegistry(ObserverConfig(session_ttl_seconds=600), clock)
        session = registry.get_or_create("m1")
        clock.advance(500)
        session.touch(clock())
        clock.advance(500)
        assert registry.get("m1") is session

    def test_version_counters_hydrated(self, clock):
        versions = {DocumentKind.PROCEDURE: 4, DocumentKind.ROLE: 1}
        registry = SessionRegistry(ObserverConfig(), clock, version_loader=lambda m, k: versions[k])
        session = registry.get_or_create("m1")
        assert session.thread(DocumentKind.PROCEDURE).version == 4
        assert session.thread(DocumentKind.ROLE).version == 1

    def test_remove(self, clock):
        registry = SessionRegistry(ObserverConfig(), clock)
        session = registry.get_or_create("m1")
        assert not session.closed
        assert registry.remove("m1")
        assert session.closed
        assert not registry.remove("m1")
        assert registry.get("m1") is None
