"""Dataclasses mirroring DB tables and engine results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum


class Platform(str, Enum):
    GMAIL = "gmail"
    SLACK = "slack"


class UnificationAction(str, Enum):
    AUTO_MERGED = "auto_merged"
    AUTO_CREATED_NEW = "auto_created_new"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    DEFINITIVE_LINK_EXISTS = "definitive_link_exists"
    FILTERED_BOT = "filtered_bot"
    SUPPRESSED = "suppressed"


class PendingStatus(str, Enum):
    OPEN = "open"
    APPROVED_NEW = "approved_new"
    APPROVED_MERGE = "approved_merge"
    REJECTED = "rejected"


class DecisionKind(str, Enum):
    APPROVE_NEW = "approve_new"
    APPROVE_MERGE = "approve_merge"
    REJECT = "reject"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class NormalizedContact:
    """Platform-neutral contact shape produced by the fetch adapters."""

    remote_id: str
    name: str = ""
    email: str | None = None
    handle: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    is_bot: bool = False
    deleted: bool = False
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> NormalizedContact:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class NormalizedMessage:
    """Platform-neutral message shape produced by the fetch adapters."""

    platform_message_id: str
    content: str
    timestamp: str  # ISO-8601 UTC
    contact: NormalizedContact | None = None  # the counterpart, if any
    thread_id: str | None = None
    direction: str = "inbound"  # 'inbound' | 'outbound'
    subject: str | None = None
    from_header: str | None = None  # raw "Name <email>" as sent
    metadata: dict = field(default_factory=dict)


@dataclass
class PlatformIdentity:
    platform: str
    platform_contact_id: str
    handle: str | None = None
    email: str | None = None
    name: str | None = None
    metadata: dict = field(default_factory=dict)
    added_at: str | None = None


@dataclass
class UnifiedContact:
    id: str
    user_id: str
    full_name: str
    email: str | None = None
    phone: str | None = None
    photo_url: str | None = None
    identities: dict[str, PlatformIdentity] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Candidate:
    contact_id: str
    score: float
    reason: str


@dataclass
class UnificationResult:
    action: UnificationAction
    contact_id: str | None = None
    pending_id: str | None = None
    candidates: list[Candidate] = field(default_factory=list)
    bot_reasons: list[str] = field(default_factory=list)


@dataclass
class PendingApproval:
    id: str
    user_id: str
    platform: str
    platform_contact_id: str
    sender_name: str
    contact: NormalizedContact
    sender_email: str | None = None
    sender_handle: str | None = None
    candidate_contact_id: str | None = None
    candidate_score: float | None = None
    candidate_reasons: list[str] = field(default_factory=list)
    message_count: int = 0
    first_message_date: str | None = None
    last_message_date: str | None = None
    preview_content: str | None = None
    status: PendingStatus = PendingStatus.OPEN
    decision_target_id: str | None = None
    resolved_contact_id: str | None = None
    messages_imported: int | None = None
    created_at: str | None = None
    decided_at: str | None = None


@dataclass
class Decision:
    kind: DecisionKind
    target_id: str | None = None

    @classmethod
    def approve_new(cls) -> Decision:
        return cls(DecisionKind.APPROVE_NEW)

    @classmethod
    def approve_merge(cls, target_id: str) -> Decision:
        return cls(DecisionKind.APPROVE_MERGE, target_id)

    @classmethod
    def reject(cls) -> Decision:
        return cls(DecisionKind.REJECT)


@dataclass
class DecisionResult:
    pending_id: str
    status: PendingStatus
    contact_id: str | None = None
    messages_imported: int | None = None
    replayed: bool = False


@dataclass
class BlacklistEntry:
    id: str
    user_id: str
    platform: str
    platform_contact_id: str | None = None
    sender_name: str | None = None
    sender_email: str | None = None
    sender_handle: str | None = None
    reason: str | None = None
    created_at: str | None = None


@dataclass
class Credential:
    user_id: str
    platform: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: str | None = None
    integration_enabled: bool = True
    metadata: dict = field(default_factory=dict)


@dataclass
class PlatformReport:
    platform: str
    ok: bool = True
    processed: int = 0
    created: int = 0
    merged: int = 0
    flagged: int = 0
    linked: int = 0
    filtered: int = 0
    suppressed: int = 0
    messages: int = 0
    errors: list[str] = field(default_factory=list)
    error_kind: str | None = None
    retry_after: float | None = None
    cursor: str | None = None
    skipped_reason: str | None = None


@dataclass
class SyncReport:
    user_id: str
    status: SyncStatus
    reason: str | None = None
    platforms: dict[str, PlatformReport] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class DisplayThread:
    thread_id: str
    message: dict  # representative message row
    content: str
    display_name: str
    actual_sender: str | None
    timestamp: str
    contact_id: str | None
    thread_count: int
    thread_messages: list[dict] = field(default_factory=list)
    summary: str | None = None
    key_points: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    urgency: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)
