"""
Outbound event bus for the overlay core.

Everything the core tells the outside world (trigger fired, line updates,
suggestion render instructions, eviction notices, status) is a BusEvent.
Subscribers are plain callables: the presentation sink, the AI dispatcher,
diagnostics. With a session directory the bus also keeps a JSONL session
log of every non-ephemeral event.

Log lines are kept under PIPE_BUF so each append is a single atomic write.
"""

import json
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 4096  # POSIX PIPE_BUF
MAX_FIELD_CHARS = 200

WILDCARD = "*"


class EventType(str, Enum):
    """Outbound instruction catalog."""
    STATUS = "status"
    TRIGGER_FIRED = "trigger_fired"
    LINE_INTERIM = "line_interim"
    LINE_FINALIZED = "line_finalized"
    SUGGESTION_FIRST_CHUNK = "suggestion_first_chunk"
    SUGGESTION_CHUNK_APPEND = "suggestion_chunk_append"
    SUGGESTION_COMPLETE = "suggestion_complete"
    SUGGESTION_INTERRUPTED = "suggestion_interrupted"
    SUGGESTION_BOUNDARY = "suggestion_boundary"
    HISTORY_EVICTED = "history_evicted"
    SESSION_CLEARED = "session_cleared"


# Per-keystroke / per-token traffic: delivered to subscribers, never logged
EPHEMERAL_TYPES = frozenset({EventType.LINE_INTERIM.value, EventType.SUGGESTION_CHUNK_APPEND.value})

_ENVELOPE = ("ts", "src", "type", "gen", "sid")


def type_name(event_type) -> str:
    return event_type.value if isinstance(event_type, Enum) else str(event_type)


@dataclass
class BusEvent:
    """One outbound event.

    ``gen`` is the session generation. It increments on every clear, so a
    subscriber can tell which events belong to a discarded session.
    """
    type: str
    payload: dict = field(default_factory=dict)
    gen: int = 0
    sid: str = ""
    src: str = "overlay"
    ts: float = field(default_factory=time.time)

    def to_record(self) -> dict:
        return {"ts": self.ts, "src": self.src, "type": self.type,
                "gen": self.gen, "sid": self.sid, **self.payload}

    @classmethod
    def from_record(cls, record: dict) -> "BusEvent":
        payload = dict(record)
        envelope = {k: payload.pop(k) for k in _ENVELOPE if k in payload}
        return cls(payload=payload, **envelope)


def _dump(record: dict) -> str:
    return json.dumps(record, separators=(",", ":"), default=str) + "\n"


def _fits(line: str) -> bool:
    return len(line.encode()) <= MAX_LINE_BYTES


def _shorten(value):
    if isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
        return value[:MAX_FIELD_CHARS] + "...[truncated]"
    return value


def encode_line(evt: BusEvent) -> str:
    """JSON line for the session log, shrunk until it fits in one atomic write.

    Long strings are cut first. If that is not enough (a big list of evicted
    entries, say) only the envelope survives, flagged ``_truncated``.
    """
    record = evt.to_record()
    line = _dump(record)
    if _fits(line):
        return line

    line = _dump({k: v if k in _ENVELOPE else _shorten(v) for k, v in record.items()})
    if _fits(line):
        return line

    envelope = {k: record[k] for k in _ENVELOPE}
    envelope["_truncated"] = True
    return _dump(envelope)


def decode_line(line: str) -> BusEvent:
    return BusEvent.from_record(json.loads(line))


class SessionLog:
    """Append-only JSONL file holding one session's persistent events."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a")

    def append(self, evt: BusEvent):
        if self._file is None:
            self.open()
        self._file.write(encode_line(evt))
        self._file.flush()

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def read(self, last_n: int = 50, event_type=None,
             since_ts: float | None = None) -> list[BusEvent]:
        """Logged events, oldest first.

        Args:
            last_n: keep only this many of the newest matches (0 keeps all)
            event_type: only events of this type
            since_ts: only events at or after this timestamp

        Corrupt lines are skipped.
        """
        if not self.path.exists():
            return []
        wanted = type_name(event_type) if event_type else None
        matches = deque(maxlen=last_n or None)
        try:
            with open(self.path) as f:
                for raw in f:
                    if not raw.strip():
                        continue
                    try:
                        evt = decode_line(raw)
                    except (ValueError, TypeError):
                        continue
                    if wanted and evt.type != wanted:
                        continue
                    if since_ts and evt.ts < since_ts:
                        continue
                    matches.append(evt)
        except OSError as e:
            logger.warning("Session log read failed: %s", e)
            return []
        return list(matches)


class EventBus:
    """Subscriber fan-out plus an optional session log.

    Usage:
        bus = EventBus("overlay", session_id, session_dir=Path("logs/today"))
        bus.open()
        bus.on(EventType.SUGGESTION_COMPLETE, render_final)
        bus.on("*", record_everything)
        bus.emit(EventType.TRIGGER_FIRED, text="...", reason="natural_break")
        bus.close()

    Without ``session_dir`` nothing touches the disk.
    """

    def __init__(self, src: str = "overlay", sid: str = "", session_dir: Path | None = None):
        self._src = src
        self._sid = sid or time.strftime("%Y%m%d_%H%M%S")
        self._log = SessionLog(Path(session_dir) / "events.jsonl") if session_dir else None
        self._subscribers: dict[str, list[Callable]] = defaultdict(list)
        self.generation = 0

    @property
    def bus_path(self) -> Path | None:
        return self._log.path if self._log else None

    @property
    def sid(self) -> str:
        return self._sid

    def open(self):
        if self._log:
            self._log.open()

    def close(self):
        if self._log:
            self._log.close()

    def on(self, event_type, callback: Callable[[BusEvent], None]):
        """Subscribe ``callback`` to one event type, or to "*" for everything."""
        self._subscribers[type_name(event_type)].append(callback)

    def off(self, event_type, callback: Callable[[BusEvent], None]):
        subscribers = self._subscribers.get(type_name(event_type), [])
        if callback in subscribers:
            subscribers.remove(callback)

    def next_generation(self) -> int:
        self.generation += 1
        return self.generation

    def emit(self, event_type, **payload) -> BusEvent:
        """Deliver to subscribers, and log it unless the type is ephemeral."""
        evt = self._make(event_type, payload)
        if self._log and evt.type not in EPHEMERAL_TYPES:
            try:
                self._log.append(evt)
            except OSError as e:
                logger.error("Session log write failed: %s", e)
        self._deliver(evt)
        return evt

    def emit_ephemeral(self, event_type, **payload) -> BusEvent:
        """Deliver to subscribers only."""
        evt = self._make(event_type, payload)
        self._deliver(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type=None,
                    since_ts: float | None = None) -> list[BusEvent]:
        if self._log is None:
            return []
        return self._log.read(last_n, event_type, since_ts)

    def _make(self, event_type, payload: dict) -> BusEvent:
        return BusEvent(type=type_name(event_type), payload=payload,
                        gen=self.generation, sid=self._sid, src=self._src)

    def _deliver(self, evt: BusEvent):
        for key in (evt.type, WILDCARD):
            for callback in list(self._subscribers.get(key, ())):
                try:
                    callback(evt)
                except Exception as e:
                    logger.error("Subscriber failed on %s: %s", evt.type, e)
