"""Trigger policy: is the accumulated transcript a question worth answering?

Pure functions over text. Two heuristics, either one is enough:
    natural break      - terminal punctuation followed by whitespace or end
    complete question  - an ask verb followed later by a programming noun
                         ("write ... function", "how ... sort")

Identical text is allowed to fire again; suppressing repeats is left to
the dispatcher.
"""

import re
from dataclasses import dataclass
from enum import Enum

MIN_TRIGGER_LENGTH = 5

ASK_VERBS = (
    "write", "create", "make", "build", "show", "generate", "give", "tell",
    "explain", "how", "what", "when", "where", "why", "code", "program",
    "function", "algorithm", "script",
)

TOPIC_NOUNS = (
    "code", "function", "program", "script", "algorithm", "sequence", "series",
    "sort", "search", "loop", "array", "list", "string", "number", "calculate",
    "find", "get", "return",
)

NATURAL_BREAK_RE = re.compile(r"[.!?](?:\s|$)")

COMPLETE_QUESTION_RE = re.compile(
    r"\b(" + "|".join(ASK_VERBS) + r")\b.*\b(" + "|".join(TOPIC_NOUNS) + r")\b",
    re.IGNORECASE | re.DOTALL,
)


class TriggerReason(str, Enum):
    NATURAL_BREAK = "natural_break"
    COMPLETE_QUESTION_PATTERN = "complete_question_pattern"
    NONE = "none"


@dataclass(frozen=True)
class TriggerDecision:
    should_fire: bool
    reason: TriggerReason = TriggerReason.NONE


NO_FIRE = TriggerDecision(should_fire=False)


def has_natural_break(text: str) -> bool:
    return NATURAL_BREAK_RE.search(text) is not None


def looks_like_complete_question(text: str) -> bool:
    return COMPLETE_QUESTION_RE.search(text) is not None


def evaluate(text: str, min_length: int = MIN_TRIGGER_LENGTH) -> TriggerDecision:
    """Decide whether ``text`` should spawn an AI request."""
    if not text:
        return NO_FIRE
    stripped = text.strip()
    if len(stripped) < min_length:
        return NO_FIRE
    if has_natural_break(stripped):
        return TriggerDecision(True, TriggerReason.NATURAL_BREAK)
    if looks_like_complete_question(stripped):
        return TriggerDecision(True, TriggerReason.COMPLETE_QUESTION_PATTERN)
    return NO_FIRE
