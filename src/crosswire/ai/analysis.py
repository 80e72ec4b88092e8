"""Thread analysis on top of any AIProvider."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from crosswire.ai.base import AIProvider
from crosswire.ai.prompts import THREAD_SUMMARY_PROMPT, THREAD_SYSTEM_PROMPT, TRANSCRIPT_LINE

URGENCY_LEVELS = ("low", "medium", "high", "urgent")
STATUSES = ("awaiting_user_response", "awaiting_contact_response", "concluded", "ongoing")


@dataclass
class TranscriptLine:
    timestamp: str
    direction: str
    sender: str
    content: str


@dataclass
class ThreadAnalysis:
    summary: str
    key_points: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    urgency: str = "low"
    current_status: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def render_transcript(lines: list[TranscriptLine], max_chars: int = 2000) -> str:
    return "\n".join(
        TRANSCRIPT_LINE.format(
            timestamp=line.timestamp,
            direction=line.direction,
            sender=line.sender,
            content=line.content[:max_chars],
        )
        for line in lines
    )


def parse_thread_analysis(result: dict) -> ThreadAnalysis | None:
    """Normalize a model reply. Returns None when it carries no summary.

    Models drift on key names, so the camelCase and ``key_topics`` variants
    are accepted too.
    """
    summary = result.get("summary") or result.get("thread_summary") or result.get("threadSummary")
    if not summary:
        return None
    urgency = str(result.get("urgency", "low")).lower()
    status = result.get("current_status") or result.get("currentStatus")
    return ThreadAnalysis(
        summary=str(summary),
        key_points=[str(p) for p in result.get("key_points") or result.get("key_topics") or []],
        action_items=[str(a) for a in result.get("action_items") or result.get("actionItems") or []],
        urgency=urgency if urgency in URGENCY_LEVELS else "low",
        current_status=status if status in STATUSES else None,
    )


def analyze_thread(
    provider: AIProvider,
    model: str,
    lines: list[TranscriptLine],
    platform: str,
    contact_name: str,
    max_chars: int = 2000,
) -> ThreadAnalysis | None:
    """Ask ``provider`` to summarize a conversation, oldest line first."""
    prompt = THREAD_SUMMARY_PROMPT.format(
        platform=platform,
        contact_name=contact_name,
        message_count=len(lines),
        transcript=render_transcript(lines, max_chars),
    )
    result = provider.complete(prompt, model, system=THREAD_SYSTEM_PROMPT, response_format="json")
    return parse_thread_analysis(result)
