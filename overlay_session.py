"""
Overlay session: the real-time coordination core of the interview overlay.

    speech engine -> TranscriptAggregator -> trigger policy -> trigger_fired
    provider chunks -> ResponseArbiter (+ StreamHealthMonitor) -> suggestion_*
    VAD signals -> SilenceTimer -> trigger policy
    HistoryManager sweeps on its own cadence

One OverlaySession owns every piece of mutable state (line buffer, winner
pointer, stream map, history windows, timers, AI-call lock). All handlers
run on a single asyncio loop and complete before the next event is
processed; nothing here blocks.
"""

import asyncio
import logging
from typing import Callable

import pipeline_frames
from event_bus import EventBus, EventType
from history_window import HISTORY_CAP, SWEEP_INTERVAL_SECONDS, HistoryManager, SuggestionEntry
from pipeline_frames import (
    ChunkFrame, CompleteFrame, ControlFrame, ControlType, ErrorFrame,
    FirstChunkFrame, VoiceActivity, VoiceActivityFrame,
)
from response_arbiter import WINNER_LATEST, ResponseArbiter
from silence_timer import SILENCE_THRESHOLD_SECONDS, SilenceTimer
from stream_monitor import (
    NO_RESPONSE_TIMEOUT_SECONDS, OVERALL_TIMEOUT_SECONDS, STALL_TIMEOUT_SECONDS,
    StreamHealthMonitor,
)
from timer_registry import TimerRegistry
from transcript_buffer import PAUSE_THRESHOLD_SECONDS, TranscriptAggregator, TranscriptSegment
from trigger_policy import TriggerDecision

logger = logging.getLogger(__name__)


class OverlaySession:
    """Session/context object for one overlay run.

    Args:
        bus: EventBus for outbound instructions (callbacks-only bus if None)
        loop: event loop for timers (defaults to the running loop)
        on_status: callback(str) for status text ("listening", "muted", ...)
        winner_policy: "latest" or "first", see response_arbiter
        pause_threshold, silence_threshold, overall_timeout, stall_timeout,
        no_response_timeout, history_cap, sweep_interval: seconds / counts
            overriding the module defaults
    """

    def __init__(self, bus: EventBus | None = None,
                 loop: asyncio.AbstractEventLoop | None = None,
                 on_status: Callable[[str], None] | None = None,
                 winner_policy: str = WINNER_LATEST,
                 pause_threshold: float = PAUSE_THRESHOLD_SECONDS,
                 silence_threshold: float = SILENCE_THRESHOLD_SECONDS,
                 overall_timeout: float = OVERALL_TIMEOUT_SECONDS,
                 stall_timeout: float = STALL_TIMEOUT_SECONDS,
                 no_response_timeout: float = NO_RESPONSE_TIMEOUT_SECONDS,
                 history_cap: int = HISTORY_CAP,
                 sweep_interval: float = SWEEP_INTERVAL_SECONDS):
        self.bus = bus or EventBus()
        self.on_status = on_status or (lambda s: None)
        self.timers = TimerRegistry(loop)

        self.running = False
        self.muted = False
        # Set when a trigger is dispatched, cleared on complete/error/timeout/clear
        self.ai_call_in_flight = False

        self.history = HistoryManager(self.timers, on_evicted=self._on_evicted,
                                      cap=history_cap, sweep_interval=sweep_interval)
        self.aggregator = TranscriptAggregator(
            self.timers,
            on_trigger=self._on_trigger,
            on_line_update=self._on_line_update,
            on_line_finalized=self._on_line_finalized,
            pause_threshold=pause_threshold,
        )
        self.silence = SilenceTimer(self.timers, lambda: self.aggregator.final_text,
                                    self._on_trigger, threshold=silence_threshold)
        self.monitor = StreamHealthMonitor(
            self.timers,
            on_no_response=self._on_no_response,
            overall_timeout=overall_timeout,
            stall_timeout=stall_timeout,
            no_response_timeout=no_response_timeout,
        )
        self.arbiter = ResponseArbiter(self.monitor, self.bus.emit, self._release_lock,
                                       history=self.history, winner_policy=winner_policy)

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self):
        """Mark the session live and start the periodic history sweep."""
        if self.running:
            return
        self.running = True
        self.history.start_sweep()
        self._set_status("listening")

    def stop(self):
        self.running = False
        self.timers.cancel_all()
        self._set_status("stopped")

    def reset(self) -> int:
        """Drop every timer, the line, the winner, all streams, history and the lock.

        Bumps the bus generation so anything still in flight belongs to a
        discarded session. Returns the new generation.
        """
        cancelled = self.timers.cancel_all()
        self.aggregator.reset()
        self.silence.cancel()
        self.arbiter.reset()
        self.history.clear()
        self.ai_call_in_flight = False
        gen = self.bus.next_generation()
        logger.info("Session reset (gen %d, %d timers cancelled)", gen, cancelled)
        if self.running:
            self.history.start_sweep()
        return gen

    def clear(self):
        """User-facing clear: reset, then tell the sink and the dispatcher."""
        self.reset()
        self.bus.emit(EventType.SESSION_CLEARED)
        self._set_status("cleared")

    def set_muted(self, muted: bool):
        """Suppress (or resume) transcript ingestion. Timers keep running."""
        if self.muted == muted:
            return
        self.muted = muted
        self._set_status("muted" if muted else "listening")
        logger.info("Transcript ingestion %s", "muted" if muted else "unmuted")

    # ── Inbound: typed frames ────────────────────────────────────

    def handle(self, frame):
        """Dispatch one inbound frame to its component."""
        if isinstance(frame, TranscriptSegment):
            self.ingest(frame)
        elif isinstance(frame, VoiceActivityFrame):
            if frame.activity is VoiceActivity.STOPPED:
                self.silence.voice_stopped()
            else:
                self.silence.voice_started()
        elif isinstance(frame, FirstChunkFrame):
            self.arbiter.on_first_chunk(frame.response_id, frame.title, frame.content)
        elif isinstance(frame, ChunkFrame):
            self.arbiter.on_chunk(frame.response_id, frame.content)
        elif isinstance(frame, CompleteFrame):
            self.arbiter.on_complete(frame.response_id)
        elif isinstance(frame, ErrorFrame):
            self.arbiter.on_error(frame.response_id, frame.message)
        elif isinstance(frame, ControlFrame):
            self._handle_control(frame.control)
        else:
            logger.debug("Ignoring unknown frame: %r", frame)

    def ingest(self, segment: TranscriptSegment):
        if self.muted:
            return
        self.aggregator.ingest(segment)

    # ── Inbound: raw payloads ────────────────────────────────────

    def handle_transcript(self, payload):
        segment = pipeline_frames.segment_from_payload(payload)
        if segment is None:
            logger.debug("Ignoring malformed transcript payload: %r", payload)
            return
        self.ingest(segment)

    def handle_voice_activity(self, payload: dict):
        frame = pipeline_frames.voice_activity_from_payload(payload)
        if frame is None:
            logger.debug("Ignoring malformed voice-activity payload: %r", payload)
            return
        self.handle(frame)

    def handle_stream_event(self, payload: dict):
        for frame in pipeline_frames.stream_frames_from_payload(payload):
            self.handle(frame)

    def handle_control(self, payload):
        frame = pipeline_frames.control_from_payload(payload)
        if frame is None:
            logger.debug("Ignoring unknown control signal: %r", payload)
            return
        self.handle(frame)

    # ── Queries ──────────────────────────────────────────────────

    @property
    def current_text(self) -> str:
        return self.aggregator.current_text

    @property
    def lines(self) -> list[str]:
        return self.history.lines.entries

    @property
    def suggestions(self) -> list[SuggestionEntry]:
        return self.history.suggestions.entries

    # ── Internals ────────────────────────────────────────────────

    def _handle_control(self, control: ControlType):
        if control is ControlType.CLEAR:
            self.clear()
        elif control is ControlType.MUTE:
            self.set_muted(True)
        elif control is ControlType.UNMUTE:
            self.set_muted(False)

    def _set_status(self, status: str):
        self.on_status(status)
        self.bus.emit(EventType.STATUS, status=status)

    def _on_trigger(self, text: str, decision: TriggerDecision):
        """Single gate for every trigger source (final append, line
        finalization, silence timer).

        While an AI call is in flight, triggers are dropped, not queued; the
        silence timer is gated the same way as the aggregator. The lock is
        released on complete, error, timeout, the no-response watchdog, or
        clear.
        """
        if self.ai_call_in_flight:
            logger.debug("Trigger suppressed, AI call in flight: %r", text[:60])
            return
        self.ai_call_in_flight = True
        self.monitor.watch_dispatch()
        logger.info("Trigger (%s): %r", decision.reason.value, text[:80])
        self.bus.emit(EventType.TRIGGER_FIRED, text=text, reason=decision.reason.value)

    def _release_lock(self):
        self.ai_call_in_flight = False
        self.monitor.cancel_dispatch()

    def _on_no_response(self):
        if self.arbiter.has_live_winner():
            return
        self._release_lock()

    def _on_line_update(self, text: str):
        self.bus.emit_ephemeral(EventType.LINE_INTERIM, text=text)

    def _on_line_finalized(self, text: str):
        self.history.add_line(text)
        self.bus.emit(EventType.LINE_FINALIZED, text=text)

    def _on_evicted(self, window: str, entries: list):
        summary = [e if isinstance(e, str) else e.response_id for e in entries]
        self.bus.emit(EventType.HISTORY_EVICTED, window=window, count=len(entries),
                      entries=summary)
