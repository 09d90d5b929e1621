"""
Session State Store

Ephemeral, per-meeting mutable state: observation logs, transcript window,
synthesis cursors, version counters and single-flight guards.

Invariants:
- a thread's cursor never exceeds its observation log length
- a thread's version counter only increases
- at most one synthesis call is in flight per document thread

Sessions expire after a period of inactivity. Expiry is checked lazily on
access; an expired session is treated as absent.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterator, List, Optional

from ..common.config import ObserverConfig
from ..common.errors import StateConflictError
from ..common.schemas import DocumentKind, Observation, TranscriptEntry
from .rate_gate import CaptureGateState, Clock, DebounceTimer

logger = logging.getLogger("opsmemory.observer.session_state")

VersionLoader = Callable[[str, DocumentKind], int]


@dataclass
class DocumentThread:
    """Synthesis bookkeeping for one document of one meeting"""
    kind: DocumentKind
    observations: List[Observation] = field(default_factory=list)
    cursor: int = 0
    last_synthesis_at: Optional[float] = None
    version: int = 0
    transcript_mark: int = 0  # transcript seq consumed by the last synthesis
    force_next: bool = False
    _in_flight: bool = field(default=False, repr=False)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def pending_observations(self) -> List[Observation]:
        return self.observations[self.cursor:]

    @contextmanager
    def single_flight(self) -> Iterator[bool]:
        """
        Scoped single-flight guard.

        Yields True if this caller owns the thread for the duration of the
        block, False if another synthesis is already running. The guard is
        released on every exit path, including exceptions.
        """
        if self._in_flight:
            yield False
            return
        self._in_flight = True
        try:
            yield True
        finally:
            self._in_flight = False

    def mark_synthesized(
        self,
        cursor: int,
        version: int,
        now: float,
        transcript_mark: int,
        forced: bool = False,
    ) -> None:
        """
        Record a finished synthesis. Only a run that started forced clears
        ``force_next``; a force requested while it was in flight stays set.
        """
        if cursor > len(self.observations) or cursor < self.cursor:
            raise StateConflictError(f"cursor {cursor} outside [{self.cursor}, {len(self.observations)}]")
        if version <= self.version:
            raise StateConflictError(f"version {version} does not advance past {self.version}")
        self.cursor = cursor
        self.version = version
        self.last_synthesis_at = now
        self.transcript_mark = transcript_mark
        if forced:
            self.force_next = False


class MeetingSession:
    """In-memory state of one observed meeting"""

    def __init__(self, meeting_id: str, now: float, transcript_window: int = 50, clock: Clock = time.monotonic):
        self.meeting_id = meeting_id
        self.created_at = now
        self.last_activity = now
        self.transcription_enabled = False
        self.last_text: Optional[str] = None
        self.gate = CaptureGateState(last_forced_recheck=now)
        self.transcript: Deque[TranscriptEntry] = deque(maxlen=transcript_window)
        self.transcript_seq = 0
        self.threads: Dict[DocumentKind, DocumentThread] = {
            kind: DocumentThread(kind=kind) for kind in DocumentKind
        }
        self.observation_session_id: Optional[str] = None
        self.lock = asyncio.Lock()
        self.timer = DebounceTimer(clock)
        self.closed = False

    @property
    def observation_count(self) -> int:
        return len(self.threads[DocumentKind.PROCEDURE].observations)

    def touch(self, now: float) -> None:
        self.last_activity = now

    def thread(self, kind: DocumentKind) -> DocumentThread:
        return self.threads[kind]

    def append_observation(self, observation: Observation) -> None:
        """Append to every document thread; each consumes the stream independently."""
        for thread in self.threads.values():
            thread.observations.append(observation)

    def add_transcript(self, speaker: str, text: str, now: float) -> TranscriptEntry:
        self.transcript_seq += 1
        entry = TranscriptEntry(speaker=speaker, text=text, timestamp=now, seq=self.transcript_seq)
        self.transcript.append(entry)
        return entry

    def transcript_since(self, seq: int) -> List[TranscriptEntry]:
        return [e for e in self.transcript if e.seq > seq]

    def transcript_text(self) -> str:
        return "\n".join(e.render_line() for e in self.transcript)

    def close(self) -> None:
        self.closed = True
        self.timer.cancel()


class SessionRegistry:
    """
    Process-scoped map of meeting id -> MeetingSession.

    The registry lock only guards the map itself; per-meeting mutation is
    serialized by each session's own lock so meetings never contend.
    """

    def __init__(
        self,
        config: Optional[ObserverConfig] = None,
        clock: Clock = time.monotonic,
        version_loader: Optional[VersionLoader] = None,
    ):
        self._config = config or ObserverConfig()
        self._clock = clock
        self._version_loader = version_loader
        self._sessions: Dict[str, MeetingSession] = {}
        self._lock = threading.Lock()

    def _is_expired(self, session: MeetingSession, now: float) -> bool:
        return now - session.last_activity > self._config.session_ttl_seconds

    def get(self, meeting_id: str) -> Optional[MeetingSession]:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(meeting_id)
            if session is None:
                return None
            if self._is_expired(session, now):
                del self._sessions[meeting_id]
                session.close()
                logger.info("Session %s expired after inactivity", meeting_id)
                return None
            return session

    def get_or_create(self, meeting_id: str) -> MeetingSession:
        session = self.get(meeting_id)
        if session is not None:
            return session

        now = self._clock()
        session = MeetingSession(
            meeting_id,
            now,
            transcript_window=self._config.transcript_window,
            clock=self._clock,
        )
        if self._version_loader:
            for kind, thread in session.threads.items():
                thread.version = self._version_loader(meeting_id, kind)

        with self._lock:
            # Another caller may have created it meanwhile
            existing = self._sessions.get(meeting_id)
            if existing is not None and not self._is_expired(existing, now):
                return existing
            self._sessions[meeting_id] = session

        logger.info("Session %s created", meeting_id)
        return session

    def remove(self, meeting_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(meeting_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Session %s removed", meeting_id)
        return True

    def active_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for s in self._sessions.values() if not self._is_expired(s, now))

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
