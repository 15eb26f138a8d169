"""Lexical question-type classification and follow-up query expansion."""

import re
from typing import Any

from .config import QuestionType

_MOMENT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"where\s+(did|does|do)\s+(he|she|they|you|i)\s+(say|mention|talk|discuss)",
        r"when\s+(did|does|do)\s+(he|she|they|you|i)\s+(say|mention|talk|discuss)",
        r"at\s+what\s+(time|point|moment)",
        r"in\s+which\s+video",
        r"which\s+video\s+(does|did)",
        r"what\s+time\s+does",
        r"timestamp",
        r"find\s+(the\s+)?(moment|part|section)",
        r"show\s+me\s+where",
        r"can\s+you\s+(find|show|point)",
    )
]

_CLARIFICATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"what\s+(did|does|do)\s+(he|she|they|you|i)\s+mean\s+by",
        r"what\s+do\s+you\s+mean",
        r"can\s+you\s+explain",
        r"what\s+is\s+that",
        r"clarify",
    )
]

_FOLLOW_UP_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(and|but|so|also|what about|how about)",
        r"^(why|how|what)\s*\?*$",
        r"more\s+(about|on)\s+(that|this)",
        r"tell\s+me\s+more",
        r"elaborate",
        r"^(really|seriously|interesting)",
        r"^(yes|no|okay|ok)\s*[,.]?\s*(and|but|so)?",
        r"you (said|mentioned|talked)",
        r"earlier you",
        r"go(ing)?\s+back\s+to",
    )
]

_GENERAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"what\s+(topics?|does|do)\s+(he|she|they|you)\s+(talk|cover|discuss)",
        r"what\s+(is|are)\s+your\s+(main|key)",
        r"tell\s+me\s+about",
        r"overview",
        r"generally",
        r"usually",
        r"summarize",
        r"what\s+kind\s+of",
    )
]

_CONCEPTUAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"how\s+(do|does|can|should)",
        r"what\s+is\s+(the|a|your)",
        r"explain",
        r"why\s+(do|does|is|are)",
        r"difference\s+between",
        r"tips?\s+(for|on|about)",
        r"advice\s+(for|on|about)",
        r"best\s+way",
        r"recommend",
    )
]

LOCATION_KEYWORDS = (
    "where",
    "which video",
    "when did",
    "what video",
    "timestamp",
    "show me",
    "find where",
    "link",
    "source",
    "quote",
    "clip",
)

_PRIOR_CONTEXT_RE = re.compile(
    r"\b(that|this|it|those|these|the same|what you|you said|you mentioned|earlier)\b",
    re.IGNORECASE,
)

_STOP_WORDS = frozenset(
    {
        "that", "this", "with", "have", "from", "about", "what", "where",
        "when", "which", "would", "could", "should", "there", "their", "been",
        "being", "your", "also", "just", "more", "some", "very", "will", "only",
    }
)

_EXPANDABLE = {QuestionType.FOLLOW_UP, QuestionType.CLARIFICATION, QuestionType.MOMENT}


def _matches(patterns: list[re.Pattern[str]], query: str) -> bool:
    return any(p.search(query) for p in patterns)


def classify_question(query: str, has_history: bool) -> QuestionType:
    """Bucket a query by lexical cues.

    Checks run in order: moment, clarification, follow-up, general,
    conceptual. A clarification without history is treated as conceptual,
    and follow-ups need history. Anything unmatched is conceptual when
    longer than eight words, general otherwise.
    """
    query = query.strip()
    word_count = len(query.split())

    if _matches(_MOMENT_PATTERNS, query):
        return QuestionType.MOMENT

    if _matches(_CLARIFICATION_PATTERNS, query):
        return QuestionType.CLARIFICATION if has_history else QuestionType.CONCEPTUAL

    if has_history and (_matches(_FOLLOW_UP_PATTERNS, query) or word_count <= 5):
        return QuestionType.FOLLOW_UP

    if _matches(_GENERAL_PATTERNS, query):
        return QuestionType.GENERAL

    if _matches(_CONCEPTUAL_PATTERNS, query):
        return QuestionType.CONCEPTUAL

    return QuestionType.CONCEPTUAL if word_count > 8 else QuestionType.GENERAL


def should_show_citations(question_type: QuestionType, query: str) -> bool:
    """Citations are surfaced for moment questions or location-style wording."""
    if question_type is QuestionType.MOMENT:
        return True
    lowered = query.lower()
    return any(keyword in lowered for keyword in LOCATION_KEYWORDS)


def expand_follow_up_query(
    query: str,
    history: list[dict[str, Any]],
    question_type: QuestionType,
) -> str:
    """Append topic keywords from the last exchange to a vague query.

    Only follow-up, clarification and moment questions with history are
    expanded, and only when the query is short (eight words or fewer) or
    refers back to earlier context. The expanded text is used for the
    embedding; the model still sees the original question.
    """
    if question_type not in _EXPANDABLE or not history:
        return query

    last_user = ""
    last_assistant = ""
    for message in reversed(history[-4:]):
        role = message.get("role")
        if role == "user" and not last_user:
            last_user = message.get("content") or ""
        elif role == "assistant" and not last_assistant:
            last_assistant = message.get("content") or ""
        if last_user and last_assistant:
            break

    is_short = len(query.split()) <= 8
    if not (is_short or _PRIOR_CONTEXT_RE.search(query)):
        return query
    if not (last_user or last_assistant):
        return query

    words = re.sub(r"[^\w\s]", " ", f"{last_user} {last_assistant}".lower()).split()
    keywords = [w for w in words if len(w) > 3 and w not in _STOP_WORDS][:8]
    if not keywords:
        return query
    return f"{query} {' '.join(keywords)}"
