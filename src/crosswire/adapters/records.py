"""Tagged platform records produced by the fetch adapters.

Each platform has its own record types; ``normalize()`` turns them into the
platform-neutral shapes the unification and threading engines consume.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from crosswire.models import NormalizedContact, NormalizedMessage

SLACKBOT_ID = "USLACKBOT"


def _ts_to_iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


class GmailContactRecord(BaseModel):
    """An email correspondent, keyed by address."""

    model_config = ConfigDict(extra="forbid")

    platform: Literal["gmail"] = "gmail"
    email: str = Field(min_length=3)
    name: str = ""

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized

    def normalize(self) -> NormalizedContact:
        return NormalizedContact(
            remote_id=self.email,
            name=self.name.strip() or self.email.split("@")[0],
            email=self.email,
        )


class SlackContactRecord(BaseModel):
    """A workspace member as returned by users.list."""

    model_config = ConfigDict(extra="ignore")

    platform: Literal["slack"] = "slack"
    id: str = Field(min_length=1)
    name: str = ""  # username
    real_name: str | None = None
    display_name: str | None = None
    email: str | None = None
    phone: str | None = None
    image: str | None = None
    is_bot: bool = False
    is_app_user: bool = False
    deleted: bool = False
    team_id: str | None = None
    tz: str | None = None
    title: str | None = None

    @classmethod
    def from_api(cls, member: dict[str, Any]) -> SlackContactRecord:
        profile = member.get("profile") or {}
        return cls(
            id=member["id"],
            name=member.get("name", ""),
            real_name=member.get("real_name") or profile.get("real_name"),
            display_name=profile.get("display_name"),
            email=profile.get("email"),
            phone=profile.get("phone"),
            image=profile.get("image_192") or profile.get("image_72"),
            is_bot=bool(member.get("is_bot")),
            is_app_user=bool(member.get("is_app_user")),
            deleted=bool(member.get("deleted")),
            team_id=member.get("team_id"),
            tz=member.get("tz"),
            title=profile.get("title"),
        )

    def normalize(self) -> NormalizedContact:
        metadata = {k: v for k, v in {"team_id": self.team_id, "tz": self.tz, "title": self.title}.items() if v}
        return NormalizedContact(
            remote_id=self.id,
            name=(self.real_name or self.display_name or self.name or "").strip(),
            email=(self.email or "").strip().lower() or None,
            handle=self.name or None,
            phone=self.phone or None,
            avatar_url=self.image,
            is_bot=self.is_bot or self.is_app_user or self.id == SLACKBOT_ID,
            deleted=self.deleted,
            metadata=metadata,
        )


ContactRecord = Annotated[Union[GmailContactRecord, SlackContactRecord], Field(discriminator="platform")]


class GmailMessageRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    platform: Literal["gmail"] = "gmail"
    id: str = Field(min_length=1)
    thread_id: str | None = None
    internal_date_ms: int
    from_header: str = ""
    subject: str = ""
    body: str = ""
    snippet: str = ""
    labels: list[str] = Field(default_factory=list)
    is_sent: bool = False
    counterpart: GmailContactRecord | None = None

    def normalize(self) -> NormalizedMessage:
        return NormalizedMessage(
            platform_message_id=self.id,
            content=self.body.strip() or self.snippet,
            timestamp=_ts_to_iso(self.internal_date_ms / 1000),
            contact=self.counterpart.normalize() if self.counterpart else None,
            thread_id=self.thread_id or None,
            direction="outbound" if self.is_sent else "inbound",
            subject=self.subject or None,
            from_header=self.from_header or None,
            metadata={"labels": self.labels, "snippet": self.snippet},
        )


class SlackMessageRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    platform: Literal["slack"] = "slack"
    ts: str = Field(min_length=1)
    channel: str = Field(min_length=1)
    channel_type: str | None = None  # 'im' | 'mpim' | 'channel' | 'group'
    user: str | None = None
    text: str = ""
    thread_ts: str | None = None
    subtype: str | None = None
    is_outbound: bool = False
    counterpart: SlackContactRecord | None = None

    @property
    def message_id(self) -> str:
        return f"{self.channel}-{self.ts}"

    def normalize(self) -> NormalizedMessage:
        contact = self.counterpart.normalize() if self.counterpart else None
        # Same "Name <email>" shape as a mail From header; unknown email means no header
        sender = None
        if contact is not None and contact.email and not self.is_outbound:
            sender = f"{contact.name or contact.handle or contact.email} <{contact.email}>"
        return NormalizedMessage(
            platform_message_id=self.message_id,
            content=self.text,
            timestamp=_ts_to_iso(float(self.ts)),
            contact=contact,
            thread_id=f"{self.channel}-{self.thread_ts or self.ts}",
            direction="outbound" if self.is_outbound else "inbound",
            from_header=sender,
            metadata={
                "channel": self.channel,
                "channel_type": self.channel_type,
                "ts": self.ts,
                "subtype": self.subtype,
            },
        )


_contact_adapter = TypeAdapter(ContactRecord)


def parse_contact_record(data: dict) -> GmailContactRecord | SlackContactRecord:
    """Validate a platform-tagged contact payload into its record type."""
    return _contact_adapter.validate_python(data)
