"""Purpose-keyed timers for the overlay core.

Every timer in the core (line pause, VAD silence, per-stream overall and
stall budgets, the no-response watchdog, the history sweep) lives here
under a semantic key. Starting a timer for a key cancels whatever was
armed under that key first, so there is never more than one live handle
per purpose.

Timers are plain ``loop.call_later`` handles on the session's event loop.
"""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

# Well-known keys
PAUSE = "pause"
SILENCE = "silence"
RESPONSE_PENDING = "response:pending"
HISTORY_SWEEP = "history:sweep"


def stream_overall_key(response_id: str) -> str:
    return f"stream:{response_id}:overall"


def stream_stall_key(response_id: str) -> str:
    return f"stream:{response_id}:stall"


class TimerRegistry:
    """Cancellable single-shot and periodic timers keyed by purpose.

    Args:
        loop: Event loop to schedule on. Defaults to the running loop at
            the time the first timer is started.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._intervals: dict[str, float] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self, key: str, delay: float, callback: Callable[[], None]):
        """Arm ``callback`` after ``delay`` seconds, replacing any prior timer for ``key``."""
        self.cancel(key)

        def _fire():
            # Handle is spent; drop it before the callback so the callback
            # can re-arm the same key.
            self._handles.pop(key, None)
            try:
                callback()
            except Exception as e:
                logger.error("Timer callback error for %s: %s", key, e)

        self._handles[key] = self._get_loop().call_later(delay, _fire)

    def start_periodic(self, key: str, interval: float, callback: Callable[[], None]):
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        self._intervals[key] = interval

        def _tick():
            if key not in self._intervals:
                return
            try:
                callback()
            finally:
                if key in self._intervals:
                    self.start(key, interval, _tick)

        self.start(key, interval, _tick)

    def cancel(self, key: str) -> bool:
        """Cancel the timer for ``key``. Returns True if one was live."""
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_periodic(self, key: str):
        self._intervals.pop(key, None)
        self.cancel(key)

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every timer whose key starts with ``prefix``."""
        keys = [k for k in self._handles if k.startswith(prefix)]
        for key in keys:
            self._intervals.pop(key, None)
            self.cancel(key)
        return len(keys)

    def cancel_all(self) -> int:
        """Cancel every live timer, periodic ones included."""
        count = len(self._handles)
        self._intervals.clear()
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if count:
            logger.debug("Cancelled %d live timers", count)
        return count

    def is_active(self, key: str) -> bool:
        return key in self._handles

    def active_keys(self) -> list[str]:
        return sorted(self._handles)

    def __len__(self) -> int:
        return len(self._handles)
