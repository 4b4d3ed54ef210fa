"""Transcript segments and the per-line aggregator.

Provides:
- TranscriptSegment: frozen dataclass for one speech-engine result
- strip_role_prefix(): removes speaker labels the STT engine sometimes emits
- LineBuffer: final/interim text for the line currently being spoken
- TranscriptAggregator: merges segments into the line, runs the pause timer,
  finalizes lines and asks the trigger policy whether to fire

No external dependencies beyond stdlib.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable

import timer_registry
from timer_registry import TimerRegistry
from trigger_policy import TriggerDecision, evaluate

logger = logging.getLogger(__name__)

# Silence after the last final segment before the line is closed
PAUSE_THRESHOLD_SECONDS = 5.0

_ROLE_PREFIX_RE = re.compile(r"^(interviewer:|candidate:|question:|answer:)\s*", re.IGNORECASE)


@dataclass(frozen=True)
class TranscriptSegment:
    """A single transcript segment from the speech engine."""
    text: str
    is_final: bool = False
    received_at: float = field(default_factory=time.time)


def strip_role_prefix(text: str) -> str:
    """Remove a leading speaker label and surrounding whitespace."""
    if not text:
        return ""
    return _ROLE_PREFIX_RE.sub("", text.strip(), count=1).strip()


@dataclass
class LineBuffer:
    final_text: str = ""
    interim_text: str = ""

    @property
    def display_text(self) -> str:
        return " ".join(part for part in (self.final_text, self.interim_text) if part)

    def append_final(self, text: str) -> bool:
        """Merge a final segment. Returns False if it was a duplicate."""
        self.interim_text = ""
        if not self.final_text:
            self.final_text = text
            return True
        if text in self.final_text:
            return False
        if text.startswith(self.final_text):
            # Engine re-sent the whole line with more words on the end
            self.final_text = text
            return True
        self.final_text = f"{self.final_text} {text}"
        return True

    def is_empty(self) -> bool:
        return not self.final_text.strip()


class TranscriptAggregator:
    """Merges interim/final segments into one line at a time.

    Args:
        timers: Shared TimerRegistry (the ``pause`` key belongs to this class)
        on_trigger: callback(text, TriggerDecision) when the policy says fire
        on_line_update: callback(display_text) whenever the visible line changes
        on_line_finalized: callback(text) when a non-empty line is closed
        pause_threshold: seconds of no final segments before the line closes
    """

    def __init__(self, timers: TimerRegistry,
                 on_trigger: Callable[[str, TriggerDecision], None] | None = None,
                 on_line_update: Callable[[str], None] | None = None,
                 on_line_finalized: Callable[[str], None] | None = None,
                 pause_threshold: float = PAUSE_THRESHOLD_SECONDS):
        self._timers = timers
        self._on_trigger = on_trigger or (lambda text, decision: None)
        self._on_line_update = on_line_update or (lambda text: None)
        self._on_line_finalized = on_line_finalized or (lambda text: None)
        self._pause_threshold = pause_threshold
        self._line: LineBuffer | None = None

    @property
    def line(self) -> LineBuffer | None:
        """The active line, or None between lines."""
        return self._line

    @property
    def final_text(self) -> str:
        return self._line.final_text if self._line else ""

    @property
    def current_text(self) -> str:
        return self._line.display_text if self._line else ""

    def ingest(self, segment: TranscriptSegment):
        text = strip_role_prefix(segment.text)
        if not text:
            return

        if self._line is None:
            self._line = LineBuffer()

        if not segment.is_final:
            self._line.interim_text = text
            self._on_line_update(self._line.display_text)
            return

        appended = self._line.append_final(text)
        self._timers.start(timer_registry.PAUSE, self._pause_threshold, self._on_pause)
        self._on_line_update(self._line.display_text)

        if appended:
            self._evaluate(self._line.final_text)
        else:
            logger.debug("Skipped duplicate final segment: %r", text)

    def finalize_line(self):
        """Close the active line: history entry (if non-empty) and trigger check."""
        self._timers.cancel(timer_registry.PAUSE)
        line = self._line
        self._line = None
        if line is None or line.is_empty():
            return

        text = line.final_text
        logger.info("Line finalized: %r", text[:80])
        self._on_line_finalized(text)
        self._evaluate(text)

    def reset(self):
        """Discard the active line without finalizing it."""
        self._timers.cancel(timer_registry.PAUSE)
        self._line = None

    def _on_pause(self):
        self.finalize_line()

    def _evaluate(self, text: str):
        decision = evaluate(text)
        if decision.should_fire:
            self._on_trigger(text, decision)
