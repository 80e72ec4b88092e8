"""Prompt templates for thread annotation."""

THREAD_SYSTEM_PROMPT = (
    "You summarize conversations for a personal relationship manager. "
    "Be factual and brief. Respond with JSON only."
)

THREAD_SUMMARY_PROMPT = """Summarize this {platform} conversation between the user and {contact_name}.

MESSAGES (oldest first, {message_count} total):
{transcript}

Describe where the conversation started, how it progressed and where it stands
now. Be realistic about what the user actually needs to do.

Respond in JSON only:
{{
  "summary": "two to four sentence narrative of the whole thread and its current state",
  "key_points": ["main topics or decisions"],
  "action_items": ["concrete follow-ups for the user, empty if none"],
  "urgency": "low | medium | high | urgent",
  "current_status": "awaiting_user_response | awaiting_contact_response | concluded | ongoing"
}}"""

TRANSCRIPT_LINE = "[{timestamp}] {direction} {sender}: {content}"
