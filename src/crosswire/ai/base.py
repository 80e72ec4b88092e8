"""AI provider protocol and response parsing shared by providers."""

from __future__ import annotations

import json
from typing import Protocol, runtime_checkable


@runtime_checkable
class AIProvider(Protocol):
    """Protocol for AI model providers."""

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> dict:
        """Send a prompt and get a structured response.

        Args:
            prompt: the user prompt
            model: model name/identifier
            system: optional system prompt
            response_format: if "json", request JSON output

        Returns:
            Parsed dict from JSON response, or {"text": raw_text} if not JSON.
        """
        ...


def parse_json_response(text: str) -> dict:
    """Parse a model reply as JSON, looking inside markdown fences if needed."""
    try:
        data = json.loads(text)
        return data if isinstance(data, dict) else {"data": data}
    except json.JSONDecodeError:
        pass

    for fence in ("```json", "```"):
        if fence in text:
            try:
                start = text.index(fence) + len(fence)
                end = text.index("```", start)
                data = json.loads(text[start:end].strip())
                return data if isinstance(data, dict) else {"data": data}
            except (ValueError, json.JSONDecodeError):
                continue
    return {"text": text}
