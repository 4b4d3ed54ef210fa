#!/usr/bin/env python3
"""Tests for the transcript line buffer and aggregator.

Tests: role prefix stripping, dedup, monotonic growth, pause finalization,
       trigger evaluation on appended finals.

Run: python3 test_transcript_buffer.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent))

from timer_registry import PAUSE, TimerRegistry
from transcript_buffer import (
    LineBuffer, TranscriptAggregator, TranscriptSegment, strip_role_prefix,
)
from trigger_policy import TriggerReason

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


def make_aggregator(timers=None, pause_threshold=5.0):
    """Aggregator with recording callbacks; timers mocked unless given."""
    triggers, updates, finalized = [], [], []
    agg = TranscriptAggregator(
        timers if timers is not None else MagicMock(),
        on_trigger=lambda text, decision: triggers.append((text, decision)),
        on_line_update=updates.append,
        on_line_finalized=finalized.append,
        pause_threshold=pause_threshold,
    )
    return agg, triggers, updates, finalized


def final(text):
    return TranscriptSegment(text=text, is_final=True)


def interim(text):
    return TranscriptSegment(text=text, is_final=False)


# ======================================================================
# Test Group 1: Role prefix
# ======================================================================

@test("Role prefixes are stripped case-insensitively")
def test_strip_role_prefix():
    assert strip_role_prefix("Interviewer: tell me about yourself") == "tell me about yourself"
    assert strip_role_prefix("  QUESTION:   what is a heap") == "what is a heap"
    assert strip_role_prefix("answer: use a stack") == "use a stack"


@test("Only a leading prefix is removed")
def test_strip_role_prefix_leading_only():
    assert strip_role_prefix("the candidate: said hi") == "the candidate: said hi"
    assert strip_role_prefix("") == ""


# ======================================================================
# Test Group 2: LineBuffer merge rules
# ======================================================================

@test("Duplicate final text is not appended")
def test_line_buffer_dedup():
    line = LineBuffer()
    assert line.append_final("Tell me about recursion.")
    assert line.append_final("about recursion") is False
    assert line.final_text == "Tell me about recursion."


@test("Re-sent line with extra words replaces final text")
def test_line_buffer_prefix_extension():
    line = LineBuffer()
    line.append_final("What is")
    assert line.append_final("What is a linked list")
    assert line.final_text == "What is a linked list"


@test("Unrelated final is space-joined and clears interim")
def test_line_buffer_space_append():
    line = LineBuffer(final_text="First part", interim_text="sec")
    line.append_final("second part")
    assert line.final_text == "First part second part"
    assert line.interim_text == ""
    assert line.display_text == "First part second part"


# ======================================================================
# Test Group 3: Aggregator ingest
# ======================================================================

@test("Interim, interim, final yields one line and one trigger")
def test_interim_interim_final_scenario():
    agg, triggers, updates, _ = make_aggregator()
    agg.ingest(interim("I think"))
    agg.ingest(interim("I think the answer"))
    assert triggers == []
    assert agg.current_text == "I think the answer"

    agg.ingest(final("I think the answer is recursion."))
    assert agg.final_text == "I think the answer is recursion."
    assert agg.line.interim_text == ""
    assert len(triggers) == 1
    assert triggers[0][0] == "I think the answer is recursion."
    assert triggers[0][1].reason == TriggerReason.NATURAL_BREAK
    assert updates[-1] == "I think the answer is recursion."


@test("Interim segment replaces previous interim")
def test_interim_replaces():
    agg, _, _, _ = make_aggregator()
    agg.ingest(final("Explain"))
    agg.ingest(interim("dynamic"))
    agg.ingest(interim("dynamic programming"))
    assert agg.current_text == "Explain dynamic programming"
    assert agg.final_text == "Explain"


@test("Final text only ever grows")
def test_final_text_monotonic():
    agg, _, _, _ = make_aggregator()
    seen = []
    for text in ["Tell me", "about", "about", "your last", "Tell me", "project"]:
        agg.ingest(final(text))
        seen.append(agg.final_text)
    for before, after in zip(seen, seen[1:]):
        assert after.startswith(before), f"{after!r} does not extend {before!r}"
    assert agg.final_text == "Tell me about your last project"


@test("Duplicate final does not re-trigger")
def test_duplicate_final_no_retrigger():
    agg, triggers, _, _ = make_aggregator()
    agg.ingest(final("What is a closure?"))
    agg.ingest(final("What is a closure?"))
    assert len(triggers) == 1


@test("Empty and prefix-only segments are ignored")
def test_degenerate_segments_ignored():
    timers = MagicMock()
    agg, triggers, updates, _ = make_aggregator(timers)
    agg.ingest(final(""))
    agg.ingest(final("   "))
    agg.ingest(interim("Interviewer:"))
    assert agg.line is None
    assert updates == []
    timers.start.assert_not_called()


@test("Each final segment restarts the pause timer")
def test_final_restarts_pause_timer():
    timers = MagicMock()
    agg, _, _, _ = make_aggregator(timers, pause_threshold=2.5)
    agg.ingest(final("one"))
    agg.ingest(interim("two"))
    agg.ingest(final("two"))
    assert timers.start.call_count == 2
    key, delay, _ = timers.start.call_args[0]
    assert key == PAUSE
    assert delay == 2.5


# ======================================================================
# Test Group 4: Finalization
# ======================================================================

@test("finalize_line reports the line and evaluates it")
def test_finalize_line():
    agg, triggers, _, finalized = make_aggregator()
    agg.ingest(final("tell me about"))
    agg.ingest(final("your strengths"))
    agg.finalize_line()
    assert finalized == ["tell me about your strengths"]
    assert agg.line is None
    assert triggers == []


@test("Finalizing an interim-only line records nothing")
def test_finalize_empty_line():
    agg, triggers, _, finalized = make_aggregator()
    agg.ingest(interim("umm"))
    agg.finalize_line()
    assert finalized == []
    assert triggers == []
    assert agg.line is None


@test("reset discards the line without reporting it")
def test_reset_discards():
    timers = MagicMock()
    agg, _, _, finalized = make_aggregator(timers)
    agg.ingest(final("half a sentence"))
    agg.reset()
    assert agg.line is None
    assert finalized == []
    timers.cancel.assert_called_with(PAUSE)


@test("Pause timer finalizes the line on a real loop")
async def test_pause_timer_finalizes():
    timers = TimerRegistry()
    agg, _, _, finalized = make_aggregator(timers, pause_threshold=0.15)
    agg.ingest(final("What does a hash map"))
    await asyncio.sleep(0.04)
    agg.ingest(final("store"))
    await asyncio.sleep(0.08)
    assert finalized == [], "Second final should have restarted the timer"
    await asyncio.sleep(0.15)
    assert finalized == ["What does a hash map store"]
    assert not timers.is_active(PAUSE)


if __name__ == "__main__":
    print("=" * 60)
    print("Transcript Aggregator Tests")
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
