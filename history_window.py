"""Bounded history of finalized transcript lines and AI suggestions.

Two FIFO windows capped at HISTORY_CAP entries each. Eviction runs
eagerly after every insertion and on a periodic sweep; both use the same
routine. The suggestion that is still streaming is never evicted, and
neither is anything added after it; the suggestions window can run over
cap while that stream is live and shrinks back once it ends.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import timer_registry
from timer_registry import TimerRegistry

logger = logging.getLogger(__name__)

HISTORY_CAP = 5
SWEEP_INTERVAL_SECONDS = 60.0

LINES = "lines"
SUGGESTIONS = "suggestions"


@dataclass
class SuggestionEntry:
    response_id: str
    title: str = ""
    text: str = ""
    complete: bool = False
    interrupted: bool = False
    created_at: float = field(default_factory=time.time)


class HistoryWindow:
    """Ordered window with oldest-first eviction.

    Args:
        name: label used in eviction notices
        cap: maximum number of entries kept after eviction
        is_pinned: predicate for entries that must survive eviction
    """

    def __init__(self, name: str, cap: int = HISTORY_CAP,
                 is_pinned: Callable[[object], bool] | None = None):
        self.name = name
        self.cap = cap
        self._entries: list = []
        self._is_pinned = is_pinned or (lambda entry: False)

    def append(self, entry):
        self._entries.append(entry)

    def evict(self) -> list:
        """Drop the oldest entries until the window fits. Returns what was dropped.

        Eviction stops at a pinned entry: nothing newer than it is dropped,
        so the window may stay over cap until the pin is released.
        """
        evicted = []
        while len(self._entries) > self.cap and not self._is_pinned(self._entries[0]):
            evicted.append(self._entries.pop(0))
        return evicted

    def clear(self):
        self._entries.clear()

    @property
    def entries(self) -> list:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))


class HistoryManager:
    """Owns the line and suggestion windows and their sweep timer.

    Args:
        timers: Shared TimerRegistry (owns the ``history:sweep`` key)
        on_evicted: callback(window_name, evicted_entries) for diagnostics
        cap: per-window cap
        sweep_interval: seconds between periodic sweeps
    """

    def __init__(self, timers: TimerRegistry,
                 on_evicted: Callable[[str, list], None] | None = None,
                 cap: int = HISTORY_CAP,
                 sweep_interval: float = SWEEP_INTERVAL_SECONDS):
        self._timers = timers
        self._on_evicted = on_evicted or (lambda name, entries: None)
        self._sweep_interval = sweep_interval
        self.lines = HistoryWindow(LINES, cap)
        # Suggestion still streaming; exempt from eviction
        self.streaming_response_id: str | None = None
        self.suggestions = HistoryWindow(SUGGESTIONS, cap, is_pinned=self._is_streaming)

    def _is_streaming(self, entry: SuggestionEntry) -> bool:
        return (entry.response_id == self.streaming_response_id
                and not entry.complete and not entry.interrupted)

    def add_line(self, text: str):
        self.lines.append(text)
        self.evict()

    def add_suggestion(self, entry: SuggestionEntry):
        self.suggestions.append(entry)
        self.evict()

    def find_suggestion(self, response_id: str) -> SuggestionEntry | None:
        for entry in reversed(self.suggestions.entries):
            if entry.response_id == response_id:
                return entry
        return None

    def evict(self) -> int:
        """Run eviction on both windows. Returns the number of entries dropped."""
        total = 0
        for window in (self.lines, self.suggestions):
            evicted = window.evict()
            if evicted:
                total += len(evicted)
                logger.debug("Evicted %d %s (now %d)", len(evicted), window.name, len(window))
                self._on_evicted(window.name, evicted)
        return total

    def start_sweep(self):
        self._timers.start_periodic(timer_registry.HISTORY_SWEEP, self._sweep_interval, self.evict)

    def stop_sweep(self):
        self._timers.cancel_periodic(timer_registry.HISTORY_SWEEP)

    def clear(self):
        self.streaming_response_id = None
        self.lines.clear()
        self.suggestions.clear()
