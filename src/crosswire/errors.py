"""Exception hierarchy for sync, unification and approval failures.

Every error carries a stable ``kind`` string that is recorded on sync state,
reported per platform and returned in HTTP error bodies.
"""

from __future__ import annotations


class CrosswireError(Exception):
    """Base class for all crosswire errors."""

    kind = "error"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class NotAuthenticated(CrosswireError):
    """No usable credential for the platform."""

    kind = "not_authenticated"


class CredentialExpired(CrosswireError):
    """The credential was rejected as expired; a refresh may recover it."""

    kind = "credential_expired"


class RateLimited(CrosswireError):
    """The platform asked us to back off."""

    kind = "rate_limited"

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TransientFetchFailure(CrosswireError):
    """Network error, 5xx or fetch timeout."""

    kind = "transient_fetch_failure"


class ConflictingDecision(CrosswireError):
    """A closed pending approval was re-decided differently, or a racing
    decision tried to bind an identity that is already linked."""

    kind = "conflicting_decision"


class SyncInProgress(CrosswireError):
    kind = "sync_in_progress"

    def __init__(self, user_id: str, platform: str):
        super().__init__(f"sync already in progress for {user_id}/{platform}")
        self.user_id = user_id
        self.platform = platform


class PendingNotFound(CrosswireError):
    kind = "pending_not_found"


class ContactNotFound(CrosswireError):
    kind = "contact_not_found"
