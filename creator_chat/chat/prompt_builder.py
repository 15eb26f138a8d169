"""Grounded prompt construction for creator chat answers.

The system prompt has the model speak as the creator and answer only from
the transcript chunks block. Conversation history is appended for topic
and pronoun resolution and explicitly marked as not a source of facts.
"""

import math
from typing import Any

from .config import Confidence, QuestionType

NOT_COVERED_ANSWERS = (
    "I haven't covered that in my videos.",
    "That's not something I've discussed in the content I have indexed.",
    "I don't have information on that in my transcripts.",
)


def format_timestamp(seconds: float | None) -> str:
    """Format seconds as ``m:ss``; empty string for missing or invalid values.

    Examples:
        >>> format_timestamp(125)
        '2:05'
        >>> format_timestamp(3725)
        '62:05'
    """
    if seconds is None or math.isnan(seconds) or seconds < 0:
        return ""
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"


def chunk_has_valid_timestamps(chunk: dict[str, Any]) -> bool:
    start = chunk.get("start_time")
    end = chunk.get("end_time")
    if start is None or end is None:
        return False
    if math.isnan(start) or math.isnan(end):
        return False
    return end > start and start >= 0


def _question_guidance(question_type: QuestionType, has_timestamps: bool) -> str:
    if question_type is QuestionType.MOMENT:
        if has_timestamps:
            location = (
                '- Include the timestamp naturally: "I talked about that around [X:XX] in [video title]"\n'
                "- Be specific about the exact moment"
            )
        else:
            location = (
                "- Timestamp data is unavailable - mention the video but note you "
                "can't pinpoint the exact moment"
            )
        return (
            "The viewer wants to know WHERE or WHEN you said something.\n"
            f"{location}\n"
            '- If you can\'t find the specific moment: "I don\'t think I covered that specifically."'
        )
    if question_type is QuestionType.CLARIFICATION:
        return (
            "The viewer is asking about something from the conversation.\n"
            "- Check what was discussed earlier (in CONVERSATION HISTORY below)\n"
            "- Ground your explanation ONLY in transcript chunks\n"
            '- If you can\'t clarify from transcripts: "I\'d need to cover that more in my videos."'
        )
    if question_type is QuestionType.FOLLOW_UP:
        return (
            "This builds on the previous exchange.\n"
            "- Reference prior context from CONVERSATION HISTORY\n"
            "- Ground ALL facts in transcript chunks only\n"
            "- Connect naturally to what was discussed"
        )
    if question_type is QuestionType.CONCEPTUAL:
        return (
            "The viewer wants to understand an idea or get advice.\n"
            "- Synthesize from your transcript chunks\n"
            "- Share YOUR perspective as expressed in YOUR videos\n"
            "- Be practical and actionable"
        )
    return (
        "The viewer wants broad information about what you cover.\n"
        "- Draw from transcript chunks to identify themes\n"
        '- Answer naturally: "I typically cover X, Y, and Z..."\n'
        "- Keep it conversational, not a list"
    )


def _confidence_guidance(confidence: Confidence) -> str:
    if confidence is Confidence.HIGH:
        return "The transcript chunks are highly relevant. Answer with confidence based on them."
    if confidence is Confidence.MEDIUM:
        return (
            "The chunks are moderately relevant. You may hedge slightly: "
            "\"Based on what I've covered...\""
        )
    return (
        "The chunks have weak relevance. Either:\n"
        '- Add uncertainty: "I may have touched on this briefly..."\n'
        '- Or refuse: "I don\'t think I\'ve covered that in depth."\n'
        "Prefer refusal over a weak, speculative answer."
    )


def build_system_prompt(
    creator_name: str,
    question_type: QuestionType,
    has_timestamps: bool,
    confidence: Confidence,
) -> str:
    not_covered = "\n".join(f'- "{answer}"' for answer in NOT_COVERED_ANSWERS)
    return f"""You ARE {creator_name}, responding directly to a viewer based ONLY on your video transcripts.

## CRITICAL RULES - NEVER VIOLATE

1. **ONLY USE THE TRANSCRIPT CHUNKS BELOW** - These are your ONLY source of facts
2. **NEVER USE PRIOR KNOWLEDGE** - If it's not in the chunks, you don't know it
3. **NEVER INVENT OR INFER** - No examples, no anecdotes, no details unless explicitly in chunks
4. **REFUSE CLEARLY** when information isn't in your transcripts

## YOUR RESPONSE STYLE

- Speak as yourself (first person: "I", "my", "I've")
- Be direct and concise: 1-3 sentences for simple questions
- Paraphrase what you said - don't quote verbatim unless a short phrase adds clarity
- NEVER list video titles unless explicitly asked for a list
- NEVER mention timestamps unless the viewer asks "where/when" something was said

## QUESTION-SPECIFIC GUIDANCE

{_question_guidance(question_type, has_timestamps)}

## CONFIDENCE LEVEL: {confidence.value.upper()}

{_confidence_guidance(confidence)}

## WHEN INFORMATION IS NOT IN TRANSCRIPTS

If the chunks don't contain relevant information, say ONE of:
{not_covered}

Do NOT apologize excessively or offer alternatives unless asked."""


def build_context_block(
    chunks: list[dict[str, Any]], video_details: dict[str, dict[str, Any]]
) -> str:
    if not chunks:
        return "## TRANSCRIPT CHUNKS\n\nNo relevant transcript chunks found."

    parts = []
    for i, chunk in enumerate(chunks, 1):
        title = (video_details.get(chunk["video_id"]) or {}).get("title") or "Unknown Video"
        time_info = ""
        if chunk_has_valid_timestamps(chunk):
            time_info = (
                f"[{format_timestamp(chunk['start_time'])} - "
                f"{format_timestamp(chunk['end_time'])}]"
            )
        relevance = round((chunk.get("similarity") or 0) * 100)
        parts.append(f'[{i}] "{title}" {time_info} (relevance: {relevance}%)\n{chunk["text"]}')

    joined = "\n\n".join(parts)
    return (
        "## TRANSCRIPT CHUNKS (YOUR ONLY SOURCE OF FACTS)\n\n"
        f"{joined}\n\n"
        "---END TRANSCRIPTS---"
    )


def build_history_block(history: list[dict[str, Any]], max_messages: int) -> str:
    """Format the most recent ``max_messages`` turns; empty without history."""
    recent = history[-max_messages:] if max_messages > 0 else []
    if not recent:
        return ""

    formatted = "\n\n".join(
        f"{'Viewer' if message.get('role') == 'user' else 'You'}: {message.get('content', '')}"
        for message in recent
    )
    return (
        "## CONVERSATION HISTORY (for context only, NOT a source of facts)\n\n"
        f"{formatted}\n\n"
        "---END HISTORY---"
    )
