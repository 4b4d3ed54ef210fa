"""Per-stream watchdog for AI response streams.

Each stream gets two timers: an overall budget measured from creation and
a stall budget measured from the last chunk. Whichever fires first cancels
both and reports the stream as expired; deciding what that means (recover
the winner, ignore a loser) is the arbiter's job.

A third, session-wide timer covers the gap between dispatching a question
and the first chunk of any answer.
"""

import logging
from enum import Enum
from typing import Callable

import timer_registry
from timer_registry import TimerRegistry

logger = logging.getLogger(__name__)

OVERALL_TIMEOUT_SECONDS = 30.0
STALL_TIMEOUT_SECONDS = 10.0
NO_RESPONSE_TIMEOUT_SECONDS = 30.0


class ExpiryReason(str, Enum):
    OVERALL = "overall_timeout"
    STALL = "stall"
    ERROR = "provider_error"


class StreamHealthMonitor:
    """Overall/stall timers per response id.

    Args:
        timers: Shared TimerRegistry (owns ``stream:*`` and ``response:pending``)
        on_expired: callback(response_id, ExpiryReason) after both timers are cancelled
        on_no_response: callback() when a dispatched question got no first chunk
        overall_timeout: seconds from stream creation
        stall_timeout: seconds since the last chunk
        no_response_timeout: seconds from dispatch to first chunk
    """

    def __init__(self, timers: TimerRegistry,
                 on_expired: Callable[[str, ExpiryReason], None] | None = None,
                 on_no_response: Callable[[], None] | None = None,
                 overall_timeout: float = OVERALL_TIMEOUT_SECONDS,
                 stall_timeout: float = STALL_TIMEOUT_SECONDS,
                 no_response_timeout: float = NO_RESPONSE_TIMEOUT_SECONDS):
        self._timers = timers
        self.on_expired = on_expired or (lambda response_id, reason: None)
        self.on_no_response = on_no_response or (lambda: None)
        self.overall_timeout = overall_timeout
        self.stall_timeout = stall_timeout
        self.no_response_timeout = no_response_timeout

    def start(self, response_id: str):
        """(Re)start both budgets for a stream."""
        self._timers.start(
            timer_registry.stream_overall_key(response_id), self.overall_timeout,
            lambda: self._expire(response_id, ExpiryReason.OVERALL),
        )
        self.touch(response_id)

    def touch(self, response_id: str):
        """A chunk arrived: restart the stall budget."""
        self._timers.start(
            timer_registry.stream_stall_key(response_id), self.stall_timeout,
            lambda: self._expire(response_id, ExpiryReason.STALL),
        )

    def stop(self, response_id: str):
        self._timers.cancel(timer_registry.stream_overall_key(response_id))
        self._timers.cancel(timer_registry.stream_stall_key(response_id))

    def is_watching(self, response_id: str) -> bool:
        return (self._timers.is_active(timer_registry.stream_overall_key(response_id))
                or self._timers.is_active(timer_registry.stream_stall_key(response_id)))

    def watch_dispatch(self):
        self._timers.start(timer_registry.RESPONSE_PENDING, self.no_response_timeout,
                           self._no_response)

    def cancel_dispatch(self):
        self._timers.cancel(timer_registry.RESPONSE_PENDING)

    @property
    def dispatch_pending(self) -> bool:
        """True between a dispatch and its first chunk."""
        return self._timers.is_active(timer_registry.RESPONSE_PENDING)

    def stop_all(self):
        self.cancel_dispatch()
        self._timers.cancel_prefix("stream:")

    def _expire(self, response_id: str, reason: ExpiryReason):
        self.stop(response_id)
        logger.warning("Stream %s expired: %s", response_id, reason.value)
        self.on_expired(response_id, reason)

    def _no_response(self):
        logger.warning("No response within %.1fs of dispatch", self.no_response_timeout)
        self.on_no_response()
