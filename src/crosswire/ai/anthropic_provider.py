"""Anthropic AI provider."""

from __future__ import annotations

from crosswire.ai.base import parse_json_response


class AnthropicProvider:
    """Anthropic Messages API client. Reads ANTHROPIC_API_KEY from the environment."""

    def __init__(self, max_tokens: int = 2048):
        self.max_tokens = max_tokens
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic()
        return self._client

    def complete(
        self,
        prompt: str,
        model: str,
        system: str = "",
        response_format: str | None = None,
    ) -> dict:
        client = self._get_client()
        kwargs: dict = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        response = client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        return parse_json_response(text)
