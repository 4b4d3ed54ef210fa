"""
Response stream registry: winner-take-all arbitration between racing AI streams.

Several providers may answer the same question at once. The arbiter keeps
one "winner" response id per question cycle; only the winner's chunks and
completion reach the presentation sink. Everything else is dropped silently.

Winner policy
-------------
"latest" (default): every first chunk takes the winner slot, even from a
    stream that is already rendering. A slow provider can therefore steal
    the slot mid-answer.
"first": the first stream to send a first chunk keeps the slot until it
    completes, errors or times out, or the session is cleared.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from event_bus import EventType
from history_window import HistoryManager, SuggestionEntry
from stream_monitor import ExpiryReason, StreamHealthMonitor

logger = logging.getLogger(__name__)

INTERRUPTED_NOTE = "\n\n*[Response interrupted. Ask again to retry.]*"

WINNER_LATEST = "latest"
WINNER_FIRST = "first"


class StreamState(Enum):
    PENDING = 0
    STREAMING = 1
    COMPLETE = 2
    TIMED_OUT = 3

    @property
    def terminal(self) -> bool:
        return self in (StreamState.COMPLETE, StreamState.TIMED_OUT)


@dataclass
class ResponseStream:
    response_id: str
    title: str = ""
    accumulated_text: str = ""
    state: StreamState = StreamState.PENDING
    created_at: float = field(default_factory=time.time)
    last_chunk_at: float = field(default_factory=time.time)

    def advance(self, new_state: StreamState) -> bool:
        """Move forward through Pending -> Streaming -> terminal. Never backwards."""
        if self.state.terminal:
            return False
        if new_state.value < self.state.value:
            return False
        self.state = new_state
        return True


class ResponseArbiter:
    """Tracks response streams for the live question cycle.

    Args:
        monitor: StreamHealthMonitor for per-stream budgets
        emit: callback(event_type, **payload) toward the presentation sink
        release_lock: callback() that frees the AI-call-in-flight lock
        history: optional HistoryManager receiving suggestion entries
        winner_policy: "latest" or "first" (see module docstring)
    """

    def __init__(self, monitor: StreamHealthMonitor,
                 emit: Callable[..., object],
                 release_lock: Callable[[], None],
                 history: HistoryManager | None = None,
                 winner_policy: str = WINNER_LATEST):
        if winner_policy not in (WINNER_LATEST, WINNER_FIRST):
            raise ValueError(f"Unknown winner policy: {winner_policy!r}")
        self._monitor = monitor
        self._emit = emit
        self._release_lock = release_lock
        self._history = history
        self.winner_policy = winner_policy
        self.winner: str | None = None
        self._streams: dict[str, ResponseStream] = {}
        # Ids that lost the winner slot; anything they send later is dropped
        self._superseded: set[str] = set()
        self._monitor.on_expired = self.on_expired

    # ── Queries ───────────────────────────────────────────────────

    def get(self, response_id: str) -> ResponseStream | None:
        return self._streams.get(response_id)

    @property
    def winning_stream(self) -> ResponseStream | None:
        return self._streams.get(self.winner) if self.winner else None

    def has_live_winner(self) -> bool:
        stream = self.winning_stream
        return stream is not None and not stream.state.terminal

    # ── Inbound stream events ────────────────────────────────────

    def on_first_chunk(self, response_id: str, title: str = "", content: str = ""):
        if (self.winner_policy == WINNER_FIRST and self.has_live_winner()
                and response_id != self.winner):
            logger.debug("First chunk from %s ignored, %s holds the slot", response_id, self.winner)
            return

        previous = self.winner
        if previous is not None and previous != response_id:
            self._streams.pop(previous, None)
            self._monitor.stop(previous)
            self._superseded.add(previous)
            logger.info("Winner %s replaced by %s", previous, response_id)

        self._superseded.discard(response_id)
        self.winner = response_id
        self._monitor.cancel_dispatch()

        stream = self._streams.get(response_id)
        if stream is None or stream.state.terminal:
            stream = ResponseStream(response_id=response_id, title=title, accumulated_text=content)
            self._streams[response_id] = stream
            if self._history:
                self._history.add_suggestion(SuggestionEntry(response_id, title, content))
        else:
            stream.accumulated_text = content
            stream.title = title or stream.title
        stream.last_chunk_at = time.time()

        if self._history:
            self._history.streaming_response_id = response_id
            self._sync_entry(stream)

        self._monitor.start(response_id)
        self._emit(EventType.SUGGESTION_FIRST_CHUNK, response_id=response_id,
                   title=stream.title, content=content)

    def on_chunk(self, response_id: str, content: str):
        if response_id != self.winner:
            logger.debug("Dropped chunk from non-winner %s", response_id)
            return
        stream = self._streams.get(response_id)
        if stream is None or stream.state.terminal:
            return

        stream.accumulated_text += content
        stream.last_chunk_at = time.time()
        stream.advance(StreamState.STREAMING)
        self._monitor.touch(response_id)
        self._sync_entry(stream)
        self._emit(EventType.SUGGESTION_CHUNK_APPEND, response_id=response_id, content=content)

    def on_complete(self, response_id: str):
        if response_id != self.winner:
            logger.debug("Dropped completion from non-winner %s", response_id)
            return
        stream = self._streams.get(response_id)
        if stream is None or not stream.advance(StreamState.COMPLETE):
            return

        self._monitor.stop(response_id)
        if self._history:
            entry = self._history.find_suggestion(response_id)
            if entry:
                entry.text = stream.accumulated_text
                entry.complete = True
            self._history.streaming_response_id = None
        logger.info("Stream %s complete (%d chars)", response_id, len(stream.accumulated_text))
        self._release_lock()
        self._emit(EventType.SUGGESTION_COMPLETE, response_id=response_id,
                   final_text=stream.accumulated_text)
        if self._history:
            self._history.evict()

    def on_error(self, response_id: str, message: str = ""):
        """Provider failure.

        On the winner this recovers like a timeout. An id the arbiter has
        never seen means the dispatch failed before any stream started; that
        frees the lock only while the dispatch is still waiting for its first
        chunk. Errors from superseded streams are dropped.
        """
        if message:
            logger.warning("Provider error on %s: %s", response_id, message)
        if response_id == self.winner:
            self._monitor.stop(response_id)
            self._recover(response_id, ExpiryReason.ERROR)
        elif response_id in self._superseded or response_id in self._streams:
            logger.debug("Dropped error from non-winner %s", response_id)
        elif not self.has_live_winner() and self._monitor.dispatch_pending:
            self._monitor.cancel_dispatch()
            self._release_lock()

    def on_expired(self, response_id: str, reason: ExpiryReason):
        """Health monitor callback; both timers are already cancelled."""
        if response_id != self.winner:
            logger.debug("Expired non-winner %s (%s), nothing to recover", response_id, reason.value)
            return
        self._recover(response_id, reason)

    # ── Lifecycle ────────────────────────────────────────────────

    def reset(self):
        """Forget the winner and every stream, cancelling their timers."""
        self._monitor.stop_all()
        self._streams.clear()
        self._superseded.clear()
        self.winner = None

    # ── Internals ────────────────────────────────────────────────

    def _recover(self, response_id: str, reason: ExpiryReason):
        stream = self._streams.get(response_id)
        if stream is None or not stream.advance(StreamState.TIMED_OUT):
            return

        partial = stream.accumulated_text + INTERRUPTED_NOTE
        stream.accumulated_text = partial
        if self._history:
            entry = self._history.find_suggestion(response_id)
            if entry:
                entry.text = partial
                entry.interrupted = True
            self._history.streaming_response_id = None
        logger.warning("Stream %s interrupted (%s)", response_id, reason.value)
        self._release_lock()
        self._emit(EventType.SUGGESTION_INTERRUPTED, response_id=response_id,
                   partial_text=partial, reason=reason.value)
        self._emit(EventType.SUGGESTION_BOUNDARY, response_id=response_id)

    def _sync_entry(self, stream: ResponseStream):
        if not self._history:
            return
        entry = self._history.find_suggestion(stream.response_id)
        if entry:
            entry.title = stream.title
            entry.text = stream.accumulated_text
