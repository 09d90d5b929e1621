"""
Observation Engine

Turns a live stream of meeting events (screen captures, transcript lines,
control commands) into incrementally synthesized, versioned documents.

Flow for a capture:
    fingerprint -> rate gate -> screen analysis -> similarity filter
    -> classify ACTION lines into observations / QUESTION lines into
    clarifications -> trigger check per document thread -> synthesis
    -> new version -> broadcast

Concurrency:
- per-meeting mutation is serialized by the session's asyncio.Lock
- collaborator calls run in worker threads, outside the meeting lock
- store writes run in worker threads so file I/O never blocks the loop
- at most one synthesis per document thread (scoped single-flight guard)
- a rejected capture returns without waiting on anything
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set, Tuple

from ..common.config import ObserverConfig
from ..common.errors import ConfigurationError, OpsMemoryError
from ..common.schemas import (
    ControlCommand,
    Document,
    DocumentKind,
    DocumentStatus,
    DocumentVersion,
    EventKind,
    InboundEvent,
    ObservationSession,
    OutboundEvent,
    OutboundKind,
    SessionStatus,
)
from .broadcaster import ConnectionRegistry
from .classifier import ObservationClassifier, extract_questions
from .document_store import DocumentStore
from .fingerprint import compute_fingerprint
from .rate_gate import Clock, RateGate
from .screen_analyzer import ScreenAnalyzer
from .session_state import MeetingSession, SessionRegistry
from .similarity import is_similar
from .synthesizer import DocumentSynthesizer, StructuredResult, SynthesisResult, evaluate_trigger
from .workflow import ClarificationDesk, PhaseWorkflow

logger = logging.getLogger("opsmemory.observer.engine")

TITLE_PREFIXES = {
    DocumentKind.PROCEDURE: "Procedure",
    DocumentKind.ROLE: "Roles",
}


class ObservationEngine:
    """Event-driven core: one instance serves every meeting of the process."""

    def __init__(
        self,
        analyzer: ScreenAnalyzer,
        synthesizer: DocumentSynthesizer,
        store: DocumentStore,
        config: Optional[ObserverConfig] = None,
        connections: Optional[ConnectionRegistry] = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config or ObserverConfig()
        self.analyzer = analyzer
        self.synthesizer = synthesizer
        self.store = store
        self.connections = connections or ConnectionRegistry(self.config.listener_queue_size)
        self.workflow = PhaseWorkflow(store)
        self.clarifications = ClarificationDesk(store)
        self.classifier = ObservationClassifier()
        self._clock = clock
        self._gate = RateGate(self.config, clock)
        self.sessions = SessionRegistry(self.config, clock, version_loader=store.latest_version)
        self._deferred: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: InboundEvent) -> List[OutboundEvent]:
        """
        Process one inbound event.

        Returns the replies for the sender. Document updates and analysis
        status go to every listener of the meeting through the connection
        registry instead. Errors never escape: they become ``error`` replies.
        """
        if not event.meeting_id:
            return [OutboundEvent.error("meetingId is required")]

        try:
            if event.kind == EventKind.CONTROL:
                return await self.handle_control(event)
            if event.kind == EventKind.CAPTURE:
                return await self.handle_capture(event)
            return await self.handle_transcript(event)
        except OpsMemoryError as e:
            logger.warning("Meeting %s: %s event failed: %s", event.meeting_id, event.kind.value, e)
            return [OutboundEvent.error(str(e))]

    def _ensure_session(self, meeting_id: str, title: str = "Meeting") -> MeetingSession:
        session = self.sessions.get_or_create(meeting_id)
        if session.observation_session_id is None:
            session.observation_session_id = self.workflow.start(meeting_id, title).id
        session.touch(self._clock())
        return session

    def _inactive_reply(self, meeting_id: str) -> Optional[OutboundEvent]:
        observation_session = self.workflow.get(meeting_id)
        if observation_session is not None and observation_session.status != SessionStatus.ACTIVE:
            return OutboundEvent.status(observation_session.status.value)
        return None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def handle_control(self, event: InboundEvent) -> List[OutboundEvent]:
        meeting_id = event.meeting_id
        command = event.command

        if command is None:
            return [OutboundEvent.error("control event requires a command")]

        if command == ControlCommand.STOP:
            removed = self.sessions.remove(meeting_id)
            return [OutboundEvent.status("stopped" if removed else "not running")]

        if command == ControlCommand.START:
            session = self._ensure_session(meeting_id, title=event.payload or "Meeting")
            logger.info("Observation started for meeting %s", meeting_id)
            return [OutboundEvent(
                kind=OutboundKind.STATUS,
                content="started",
                observation_count=session.observation_count,
            )]

        session = self._ensure_session(meeting_id)
        if command == ControlCommand.PING:
            return [OutboundEvent.status("pong")]
        if command == ControlCommand.START_TRANSCRIPTION:
            session.transcription_enabled = True
            return [OutboundEvent.status("transcription started")]
        session.transcription_enabled = False
        return [OutboundEvent.status("transcription stopped")]

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def handle_capture(self, event: InboundEvent) -> List[OutboundEvent]:
        meeting_id = event.meeting_id
        if not event.payload:
            return [OutboundEvent.error("capture payload is required")]
        if not self.analyzer.is_available:
            raise ConfigurationError("LLM provider not configured; cannot analyze captures")

        session = self._ensure_session(meeting_id)
        inactive = self._inactive_reply(meeting_id)
        if inactive is not None:
            return [inactive]

        fingerprint = compute_fingerprint(event.payload)
        async with session.lock:
            decision = self._gate.evaluate(session.gate, fingerprint)
        if not decision.accepted:
            logger.debug("Meeting %s capture rejected: %s", meeting_id, decision.reason)
            return [OutboundEvent.status("observing")]

        try:
            analysis = await asyncio.to_thread(self.analyzer.analyze, event.payload, event.mime_type)
        except OpsMemoryError:
            async with session.lock:
                self._gate.release(session.gate)
            raise

        async with session.lock:
            self._gate.commit(session.gate, fingerprint)

            if analysis.is_idle:
                return [OutboundEvent.status(analysis.text)]

            if is_similar(analysis.text, session.last_text, self.config.similarity_threshold):
                logger.debug("Meeting %s analysis suppressed as near-duplicate", meeting_id)
                return [OutboundEvent.status("observing")]

            # last_text moves only after the observations are stored
            observations = self.classifier.classify_screen(meeting_id, analysis.text)
            await asyncio.to_thread(self.store.add_observations, meeting_id, observations)
            session.last_text = analysis.text
            for observation in observations:
                session.append_observation(observation)

            for category, question in extract_questions(analysis.text):
                await asyncio.to_thread(self.clarifications.add, meeting_id, question, category)

            count = session.observation_count

        logger.info("Meeting %s analysis accepted: %d new observations", meeting_id, len(observations))
        self.connections.broadcast(meeting_id, OutboundEvent(
            kind=OutboundKind.DOCUMENT_STATUS,
            content=analysis.text,
            observation_count=count,
        ))

        replies = [OutboundEvent(kind=OutboundKind.STATUS, content="analyzed", observation_count=count)]
        replies.extend(await self._synthesize_due(session))
        return replies

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    async def handle_transcript(self, event: InboundEvent) -> List[OutboundEvent]:
        meeting_id = event.meeting_id
        text = (event.payload or "").strip()
        if not text:
            return [OutboundEvent.error("transcript payload is required")]

        session = self._ensure_session(meeting_id)
        inactive = self._inactive_reply(meeting_id)
        if inactive is not None:
            return [inactive]
        if not session.transcription_enabled:
            return [OutboundEvent.status("transcription disabled")]

        speaker = event.speaker or "Speaker"
        async with session.lock:
            session.add_transcript(speaker, text, self._clock())
            observation = self.classifier.classify_transcript(meeting_id, speaker, text)
            if observation is not None:
                await asyncio.to_thread(self.store.add_observation, observation)
                session.append_observation(observation)

        replies = [OutboundEvent.status("transcript received")]
        replies.extend(await self._synthesize_due(session))
        return replies

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    async def _synthesize_due(self, session: MeetingSession) -> List[OutboundEvent]:
        """Run every thread whose trigger fires; arm the debounce timer for the rest."""
        replies = []
        wait: Optional[float] = None
        for kind, thread in session.threads.items():
            check = evaluate_trigger(thread, session, self._clock(), self.config)
            if check.should_run:
                try:
                    await self.run_synthesis(session.meeting_id, kind)
                except OpsMemoryError as e:
                    logger.warning("Meeting %s %s synthesis failed: %s", session.meeting_id, kind.value, e)
                    replies.append(OutboundEvent.error(str(e)))
            elif check.ready and self.config.deferred_synthesis:
                wait = check.wait if wait is None else min(wait, check.wait)

        if wait is not None:
            self._arm_deferred(session, wait)
        return replies

    def _arm_deferred(self, session: MeetingSession, delay: float) -> None:
        meeting_id = session.meeting_id

        def _fire(armed_at: float) -> None:
            task = asyncio.ensure_future(self._run_deferred(meeting_id, armed_at))
            self._deferred.add(task)
            task.add_done_callback(self._deferred.discard)

        session.timer.schedule(delay, _fire)
        logger.debug("Meeting %s deferred synthesis armed for %.1fs", meeting_id, delay)

    async def _run_deferred(self, meeting_id: str, armed_at: float) -> None:
        session = self.sessions.get(meeting_id)
        if session is None:
            return
        for kind, thread in session.threads.items():
            # Already processed by a fresh event after the timer was armed
            if thread.last_synthesis_at is not None and thread.last_synthesis_at >= armed_at:
                continue
            if not evaluate_trigger(thread, session, self._clock(), self.config).should_run:
                continue
            try:
                await self.run_synthesis(meeting_id, kind)
            except OpsMemoryError as e:
                logger.warning("Meeting %s deferred %s synthesis failed: %s", meeting_id, kind.value, e)

    def _document_title(self, meeting_id: str, kind: DocumentKind) -> str:
        observation_session = self.workflow.get(meeting_id)
        base = observation_session.title if observation_session else "Meeting"
        return f"{TITLE_PREFIXES[kind]}: {base}"

    def _write_version(
        self,
        meeting_id: str,
        kind: DocumentKind,
        title: str,
        result: SynthesisResult,
        flowchart: Optional[str],
    ) -> DocumentVersion:
        document = self.store.create_document(meeting_id, kind, title)
        return self.store.append_version(
            document.id,
            result.content,
            result.change_summary,
            sections=result.fields if isinstance(result, StructuredResult) else None,
            flowchart=flowchart,
        )

    async def run_synthesis(
        self,
        meeting_id: str,
        kind: DocumentKind,
        force: bool = False,
    ) -> Optional[DocumentVersion]:
        """
        Synthesize the next version of one document thread.

        Returns the new version, or None when another synthesis of the same
        thread is already running or the meeting was removed meanwhile. A
        force requested while a run is in flight is honored by a follow-up
        run once that one finishes.

        Raises:
            ConfigurationError, SynthesisError: nothing is written
            StorageError: nothing is written and the cursor does not move
        """
        session = self._ensure_session(meeting_id)
        thread = session.thread(kind)
        if force:
            thread.force_next = True

        with thread.single_flight() as acquired:
            if not acquired:
                logger.info("Meeting %s %s synthesis already running", meeting_id, kind.value)
                return None

            async with session.lock:
                forced = thread.force_next
                target_cursor = len(thread.observations)
                pending = thread.observations[thread.cursor:target_cursor]
                transcript_mark = session.transcript_seq
                transcript_text = session.transcript_text()
                title = self._document_title(meeting_id, kind)
                existing = self.store.get_document(meeting_id, kind)

            result = await asyncio.to_thread(
                self.synthesizer.synthesize,
                kind,
                title,
                existing.content if existing and existing.latest_version else None,
                transcript_text,
                pending,
                self.clarifications.answered_context(meeting_id),
            )

            flowchart = None
            if kind == DocumentKind.PROCEDURE:
                flowchart = await asyncio.to_thread(self.synthesizer.generate_flowchart, result.content)

            async with session.lock:
                if session.closed:
                    logger.info("Meeting %s removed during %s synthesis; result discarded", meeting_id, kind.value)
                    return None
                version = await asyncio.to_thread(self._write_version, meeting_id, kind, title, result, flowchart)
                thread.mark_synthesized(target_cursor, version.version, self._clock(), transcript_mark, forced=forced)
                count = session.observation_count

        logger.info(
            "Meeting %s %s document v%d (%d observations)",
            meeting_id, kind.value, version.version, len(pending),
        )
        self.connections.broadcast(meeting_id, OutboundEvent(
            kind=OutboundKind.DOCUMENT_UPDATE,
            content=version.content,
            document_kind=kind.value,
            document_version=version.version,
            observation_count=count,
        ))

        if thread.force_next:
            logger.info("Meeting %s %s forced synthesis requested mid-run; running it now", meeting_id, kind.value)
            try:
                await self.run_synthesis(meeting_id, kind)
            except OpsMemoryError as e:
                logger.warning("Meeting %s follow-up %s synthesis failed: %s", meeting_id, kind.value, e)
        return version


    # ------------------------------------------------------------------
    # Workflow operations
    # ------------------------------------------------------------------

    async def advance_phase(self, meeting_id: str) -> Tuple[ObservationSession, Optional[DocumentVersion]]:
        """
        Move the meeting one phase forward. Entering instruct forces one
        procedure synthesis regardless of the normal trigger.
        """
        self._ensure_session(meeting_id)
        observation_session, entered_instruct = self.workflow.advance(meeting_id)
        version = None
        if entered_instruct:
            version = await self.run_synthesis(meeting_id, DocumentKind.PROCEDURE, force=True)
        return observation_session, version

    async def analyze(self, meeting_id: str, kind: DocumentKind) -> Optional[DocumentVersion]:
        """Manual synthesis trigger"""
        return await self.run_synthesis(meeting_id, kind, force=True)

    def rollback(self, meeting_id: str, kind: DocumentKind, version: int) -> Document:
        document = self.store.require_document(meeting_id, kind)
        document = self.store.rollback(document.id, version)
        self.connections.broadcast(meeting_id, OutboundEvent(
            kind=OutboundKind.DOCUMENT_UPDATE,
            content=document.content,
            document_kind=kind.value,
            document_version=document.version,
        ))
        return document

    def set_document_status(self, meeting_id: str, kind: DocumentKind, status: DocumentStatus) -> Document:
        document = self.store.require_document(meeting_id, kind)
        return self.store.set_status(document.id, status)

    async def delete_meeting(self, meeting_id: str) -> Dict[str, int]:
        """Drop in-memory state and cascade-delete everything stored for a meeting"""
        session = self.sessions.get(meeting_id)
        if session is not None:
            # an in-flight synthesis checks session.closed under this lock
            async with session.lock:
                self.sessions.remove(meeting_id)
        removed = await asyncio.to_thread(self.store.delete_meeting, meeting_id)
        logger.info("Meeting %s deleted: %s", meeting_id, removed)
        return removed

    def get_stats(self) -> Dict[str, int]:
        stats = dict(self.store.get_stats())
        stats["active_sessions"] = self.sessions.active_count()
        stats["listeners"] = self.connections.total()
        return stats

    async def shutdown(self) -> None:
        for task in list(self._deferred):
            task.cancel()
        if self._deferred:
            await asyncio.gather(*self._deferred, return_exceptions=True)
        self._deferred.clear()
        self.sessions.close_all()
