"""Fetch adapter factory."""

from __future__ import annotations

from crosswire.adapters.base import FetchAdapter, FetchResult
from crosswire.config import Config

__all__ = ["FetchAdapter", "FetchResult", "get_adapter", "default_adapters"]


def get_adapter(platform: str, config: Config | None = None) -> FetchAdapter:
    """Return the fetch adapter for a platform name."""
    config = config or Config()
    if platform == "gmail":
        from crosswire.adapters.gmail import GmailAdapter
        return GmailAdapter(config.gmail)
    if platform == "slack":
        from crosswire.adapters.slack import SlackAdapter
        return SlackAdapter(config.slack)
    raise ValueError(f"Unknown platform: {platform!r}. Use 'gmail' or 'slack'.")


def default_adapters(config: Config) -> dict[str, FetchAdapter]:
    return {p: get_adapter(p, config) for p in config.sync.platforms}
