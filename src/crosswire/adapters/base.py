"""Fetch adapter contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from crosswire.models import Credential, NormalizedContact, NormalizedMessage


@dataclass
class FetchResult:
    """One fetch window: contacts and messages in chronological order.

    ``next_cursor`` is None when the window carried nothing that moves the
    cursor; the stored cursor is then kept.
    """

    contacts: list[NormalizedContact] = field(default_factory=list)
    messages: list[NormalizedMessage] = field(default_factory=list)
    next_cursor: str | None = None


@runtime_checkable
class FetchAdapter(Protocol):
    platform: str

    def fetch_since(self, user_id: str, cursor: str | None, credential: Credential) -> FetchResult:
        """Pull everything newer than ``cursor`` (None means initial window).

        Raises CredentialExpired, NotAuthenticated, RateLimited or
        TransientFetchFailure.
        """
        ...
