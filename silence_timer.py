"""VAD silence timer.

Idle -> Armed on voice-stopped; Armed -> Fired after the threshold, or
back to Idle on voice-started. When it fires it runs the same trigger
policy the aggregator uses, against whatever final text is pending.
"""

import logging
from enum import Enum
from typing import Callable

import timer_registry
from timer_registry import TimerRegistry
from trigger_policy import TriggerDecision, evaluate

logger = logging.getLogger(__name__)

SILENCE_THRESHOLD_SECONDS = 3.0


class SilenceState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"


class SilenceTimer:
    """Single-shot silence timer driven by voice-activity signals.

    Args:
        timers: Shared TimerRegistry (owns the ``silence`` key)
        get_text: returns the current aggregated final text
        on_trigger: callback(text, TriggerDecision) when the policy fires
        threshold: seconds of silence before evaluating
    """

    def __init__(self, timers: TimerRegistry, get_text: Callable[[], str],
                 on_trigger: Callable[[str, TriggerDecision], None],
                 threshold: float = SILENCE_THRESHOLD_SECONDS):
        self._timers = timers
        self._get_text = get_text
        self._on_trigger = on_trigger
        self._threshold = threshold
        self.state = SilenceState.IDLE

    def voice_stopped(self):
        self._timers.start(timer_registry.SILENCE, self._threshold, self._fire)
        self.state = SilenceState.ARMED

    def voice_started(self):
        if self._timers.cancel(timer_registry.SILENCE):
            logger.debug("Voice resumed, silence timer cancelled")
        self.state = SilenceState.IDLE

    def cancel(self):
        self._timers.cancel(timer_registry.SILENCE)
        self.state = SilenceState.IDLE

    def _fire(self):
        self.state = SilenceState.FIRED
        text = self._get_text().strip()
        decision = evaluate(text)
        if decision.should_fire:
            logger.info("Silence %.1fs: triggering on %r", self._threshold, text[:60])
            self._on_trigger(text, decision)
        else:
            logger.debug("Silence %.1fs: nothing to trigger (%d chars)", self._threshold, len(text))
