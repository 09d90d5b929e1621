"""
Rate / Debounce Controller

Per-meeting adaptive gate deciding whether a screen capture may be sent to
the vision collaborator.

Policy (evaluated per capture):
1. changed = fingerprint differs from the last accepted one
2. force_check = frames since last accept >= N, or the forced re-check window elapsed
3. effective interval = short interval if changed or force_check, else long interval
4. reject if the last response is younger than the effective interval
5. on accept, reset frame counter and forced re-check timestamp; the last
   response timestamp and fingerprint move only once a response exists

Pure change detection misses slow incremental edits, so the forced re-check
bounds staleness on an unchanging screen.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..common.config import ObserverConfig

logger = logging.getLogger("opsmemory.observer.rate_gate")

Clock = Callable[[], float]


@dataclass
class CaptureGateState:
    """Gate bookkeeping for one meeting"""
    last_fingerprint: Optional[str] = None
    last_response_at: Optional[float] = None
    frames_since_accept: int = 0
    last_forced_recheck: float = 0.0
    analysis_in_flight: bool = False


@dataclass
class GateDecision:
    accepted: bool
    changed: bool
    force_check: bool
    interval: float
    reason: str = ""


class RateGate:
    """Decides which captures are worth analyzing."""

    def __init__(self, config: Optional[ObserverConfig] = None, clock: Clock = time.monotonic):
        self._config = config or ObserverConfig()
        self._clock = clock

    def evaluate(self, state: CaptureGateState, fingerprint: str) -> GateDecision:
        """
        Evaluate a capture against the gate.

        Rejection only bumps the frame counter. Acceptance marks an analysis
        as in flight; the caller must follow up with ``commit`` or ``release``.
        """
        now = self._clock()
        cfg = self._config

        changed = fingerprint != state.last_fingerprint
        force_check = (
            state.frames_since_accept >= cfg.force_recheck_frames
            or now - state.last_forced_recheck >= cfg.force_recheck_seconds
        )
        interval = cfg.min_interval_changed if (changed or force_check) else cfg.min_interval_unchanged

        if state.analysis_in_flight:
            state.frames_since_accept += 1
            return GateDecision(False, changed, force_check, interval, reason="analysis in flight")

        if state.last_response_at is not None and now - state.last_response_at < interval:
            state.frames_since_accept += 1
            return GateDecision(False, changed, force_check, interval, reason="too soon")

        state.frames_since_accept = 0
        state.last_forced_recheck = now
        state.analysis_in_flight = True
        return GateDecision(True, changed, force_check, interval)

    def commit(self, state: CaptureGateState, fingerprint: str) -> None:
        """Record that an accepted capture produced a response."""
        state.last_response_at = self._clock()
        state.last_fingerprint = fingerprint
        state.analysis_in_flight = False

    def release(self, state: CaptureGateState) -> None:
        """Release an accepted capture whose analysis failed, without marking progress."""
        state.analysis_in_flight = False


class DebounceTimer:
    """
    Cancellable, reschedulable deferred callback for one meeting.

    ``armed_at`` records when the pending timer was scheduled; callers keep
    their own "last processed" timestamp and compare the two when the timer
    fires, so a timer overtaken by a fresh event can be recognised as stale.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._handle: Optional[asyncio.TimerHandle] = None
        self.armed_at: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self, delay: float, callback: Callable[[float], None]) -> None:
        """(Re)arm the timer. ``callback`` receives the ``armed_at`` value."""
        self.cancel()
        loop = asyncio.get_running_loop()
        armed_at = self._clock()
        self.armed_at = armed_at

        def _fire() -> None:
            self._handle = None
            callback(armed_at)

        self._handle = loop.call_later(max(delay, 0.0), _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
