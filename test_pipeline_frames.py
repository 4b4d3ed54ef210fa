#!/usr/bin/env python3
"""Tests for inbound payload parsing into typed frames.

Run: python3 test_pipeline_frames.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from pipeline_frames import (
    ChunkFrame, CompleteFrame, ControlFrame, ControlType, ErrorFrame, FirstChunkFrame,
    VoiceActivity, control_from_payload, segment_from_payload,
    stream_frames_from_payload, voice_activity_from_payload,
)

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ======================================================================
# Test Group 1: Transcript and VAD payloads
# ======================================================================

@test("Transcript dict becomes a segment; is_final must be True exactly")
def test_segment_from_dict():
    seg = segment_from_payload({"text": "hello", "is_final": True})
    assert (seg.text, seg.is_final) == ("hello", True)
    assert segment_from_payload({"text": "hello", "is_final": "yes"}).is_final is False


@test("Bare string is an interim segment")
def test_segment_from_string():
    seg = segment_from_payload("partial words")
    assert (seg.text, seg.is_final) == ("partial words", False)


@test("Transcript payload without text is rejected")
def test_segment_rejects_missing_text():
    assert segment_from_payload({"is_final": True}) is None
    assert segment_from_payload({"text": 12}) is None
    assert segment_from_payload(None) is None


@test("Voice activity types parse; unknown types do not")
def test_voice_activity():
    assert voice_activity_from_payload({"type": "voice-started"}).activity is VoiceActivity.STARTED
    assert voice_activity_from_payload({"type": "voice-stopped"}).activity is VoiceActivity.STOPPED
    assert voice_activity_from_payload({"type": "noise"}) is None
    assert voice_activity_from_payload("voice-started") is None


@test("Control accepts a string or a typed dict")
def test_control():
    assert control_from_payload("clear") == ControlFrame(ControlType.CLEAR)
    assert control_from_payload({"type": "mute"}) == ControlFrame(ControlType.MUTE)
    assert control_from_payload("reboot") is None


# ======================================================================
# Test Group 2: Stream payloads
# ======================================================================

@test("Missing isStreaming means first chunk plus complete")
def test_non_streamed():
    frames = stream_frames_from_payload({"responseId": 3, "title": "T", "content": "body"})
    assert frames == [FirstChunkFrame("3", "T", "body"), CompleteFrame("3")]


@test("isStreaming false is also a single non-streamed response")
def test_explicit_non_streamed():
    frames = stream_frames_from_payload(
        {"responseId": "X", "title": "T", "content": "answer", "isStreaming": False})
    assert frames == [FirstChunkFrame("X", "T", "answer"), CompleteFrame("X")]


@test("Streamed first chunk")
def test_streamed_first_chunk():
    frames = stream_frames_from_payload(
        {"responseId": "a", "isStreaming": True, "isFirstChunk": True, "content": "x"})
    assert frames == [FirstChunkFrame("a", "", "x")]


@test("Streamed chunk with completion delivers both in order")
def test_streamed_chunk_and_complete():
    frames = stream_frames_from_payload(
        {"responseId": "a", "isStreaming": True, "content": "end", "isComplete": True})
    assert frames == [ChunkFrame("a", "end"), CompleteFrame("a")]


@test("Streamed completion without content")
def test_streamed_complete_only():
    frames = stream_frames_from_payload({"responseId": "a", "isStreaming": True, "isComplete": True})
    assert frames == [CompleteFrame("a")]


@test("Error payload becomes an error frame")
def test_error_payload():
    frames = stream_frames_from_payload({"responseId": "a", "isError": True, "message": "429"})
    assert frames == [ErrorFrame("a", "429")]


@test("Stream payload without responseId is dropped")
def test_stream_without_id():
    assert stream_frames_from_payload({"content": "orphan"}) == []
    assert stream_frames_from_payload("nope") == []


if __name__ == "__main__":
    print("=" * 60)
    print("Pipeline Frame Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")
    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")
    if ERRORS:
        print("\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")
    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
