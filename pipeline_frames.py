"""Typed inbound frames that flow into the overlay session.

One dataclass per event kind so the session can dispatch on type instead
of probing optional payload fields. Raw payloads (IPC/JSON dicts) are
converted with the ``*_from_payload`` helpers at the boundary.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from transcript_buffer import TranscriptSegment

logger = logging.getLogger(__name__)


class VoiceActivity(str, Enum):
    STARTED = "voice-started"
    STOPPED = "voice-stopped"


class ControlType(str, Enum):
    CLEAR = "clear"
    MUTE = "mute"
    UNMUTE = "unmute"


@dataclass(frozen=True)
class VoiceActivityFrame:
    activity: VoiceActivity
    received_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ControlFrame:
    control: ControlType


@dataclass(frozen=True)
class FirstChunkFrame:
    response_id: str
    title: str = ""
    content: str = ""


@dataclass(frozen=True)
class ChunkFrame:
    response_id: str
    content: str = ""


@dataclass(frozen=True)
class CompleteFrame:
    response_id: str


@dataclass(frozen=True)
class ErrorFrame:
    response_id: str
    message: str = ""


StreamFrame = FirstChunkFrame | ChunkFrame | CompleteFrame | ErrorFrame
InboundFrame = TranscriptSegment | VoiceActivityFrame | ControlFrame | StreamFrame


def segment_from_payload(payload) -> TranscriptSegment | None:
    """Build a TranscriptSegment from ``{"text": str, "is_final": bool}``.

    A bare string is treated as an interim segment. Returns None for
    payloads that carry no text field at all.
    """
    if isinstance(payload, str):
        return TranscriptSegment(text=payload, is_final=False)
    if not isinstance(payload, dict):
        return None
    text = payload.get("text")
    if not isinstance(text, str):
        return None
    return TranscriptSegment(text=text, is_final=payload.get("is_final") is True)


def voice_activity_from_payload(payload) -> VoiceActivityFrame | None:
    try:
        return VoiceActivityFrame(activity=VoiceActivity(payload.get("type")))
    except (AttributeError, ValueError):
        return None


def control_from_payload(payload) -> ControlFrame | None:
    value = payload.get("type") if isinstance(payload, dict) else payload
    try:
        return ControlFrame(control=ControlType(value))
    except ValueError:
        return None


def stream_frames_from_payload(payload: dict) -> list[StreamFrame]:
    """Convert a suggestion-update payload into one or more stream frames.

    Payload shape::

        {responseId, title?, content?, isStreaming, isFirstChunk?,
         isComplete?, isError?}

    A payload whose ``isStreaming`` is missing or false is a single
    non-streamed response and becomes a first-chunk immediately followed
    by a complete. A streamed payload may carry content and ``isComplete``
    together, in which case the chunk is delivered before the completion.
    """
    if not isinstance(payload, dict):
        return []
    response_id = payload.get("responseId")
    if response_id is None:
        logger.debug("Dropping stream payload without responseId: %s", payload)
        return []
    response_id = str(response_id)
    content = payload.get("content") or ""
    title = payload.get("title") or ""

    if payload.get("isError"):
        return [ErrorFrame(response_id=response_id, message=str(payload.get("message", "")))]

    if not payload.get("isStreaming"):
        return [
            FirstChunkFrame(response_id=response_id, title=title, content=content),
            CompleteFrame(response_id=response_id),
        ]

    frames: list[StreamFrame] = []
    if payload.get("isFirstChunk"):
        frames.append(FirstChunkFrame(response_id=response_id, title=title, content=content))
    elif content:
        frames.append(ChunkFrame(response_id=response_id, content=content))
    if payload.get("isComplete"):
        frames.append(CompleteFrame(response_id=response_id))
    return frames
