"""Gmail fetch adapter: history-id cursors over the Gmail API."""

from __future__ import annotations

from typing import Callable

from crosswire.adapters.base import FetchResult
from crosswire.adapters.records import GmailContactRecord, GmailMessageRecord
from crosswire.config import GmailConfig
from crosswire.gmail.auth import get_gmail_service
from crosswire.gmail.client import GmailClient, HistoryExpired
from crosswire.models import Credential
from crosswire.observability import get_logger

log = get_logger(__name__)


def _counterpart(parsed: dict) -> GmailContactRecord | None:
    """The other party: the sender, or the first recipient of mail we sent."""
    if parsed["is_sent"]:
        for addr in parsed["to_addresses"]:
            if "@" in addr["email"]:
                return GmailContactRecord(email=addr["email"], name=addr["name"])
        return None
    if "@" not in parsed["from_address"]:
        return None
    return GmailContactRecord(email=parsed["from_address"], name=parsed["from_name"])


def to_record(parsed: dict) -> GmailMessageRecord:
    return GmailMessageRecord(
        id=parsed["message_id"],
        thread_id=parsed["thread_id"] or None,
        internal_date_ms=parsed["internal_date_ms"],
        from_header=parsed["from_header"],
        subject=parsed["subject"],
        body=parsed["body_text"] or parsed["snippet"],
        snippet=parsed["snippet"],
        labels=parsed["labels"],
        is_sent=parsed["is_sent"],
        counterpart=_counterpart(parsed),
    )


class GmailAdapter:
    platform = "gmail"

    def __init__(self, config: GmailConfig | None = None, service_factory: Callable | None = None):
        self.config = config or GmailConfig()
        self.service_factory = service_factory or (lambda cred: get_gmail_service(cred, self.config))

    def _message_ids(self, client: GmailClient, cursor: str | None) -> list[str]:
        if cursor:
            try:
                history = client.list_history(cursor)
            except HistoryExpired:
                log.warning("gmail_history_expired", cursor=cursor)
            else:
                ids: list[str] = []
                for event in history:
                    for added in event.get("messagesAdded", []):
                        msg_id = added.get("message", {}).get("id")
                        if msg_id and msg_id not in ids:
                            ids.append(msg_id)
                return ids
        stubs = client.search_messages(self.config.initial_query, self.config.max_initial_messages)
        return [s["id"] for s in stubs]

    def fetch_since(self, user_id: str, cursor: str | None, credential: Credential) -> FetchResult:
        service = self.service_factory(credential)
        client = GmailClient(service, credential.metadata.get("email", ""))
        profile = client.get_profile()
        if not client.user_email:
            client.user_email = profile.get("emailAddress", "").lower()
        # Read before listing so nothing between the two is skipped next time
        next_cursor = str(profile["historyId"])

        records: list[GmailMessageRecord] = []
        for msg_id in self._message_ids(client, cursor):
            parsed = client.parse_message(client.get_message(msg_id))
            if "DRAFT" in parsed["labels"]:
                continue
            records.append(to_record(parsed))
        records.sort(key=lambda r: r.internal_date_ms)

        messages = [r.normalize() for r in records]
        contacts = []
        seen: set[str] = set()
        for m in messages:
            if m.contact is not None and m.contact.remote_id not in seen:
                seen.add(m.contact.remote_id)
                contacts.append(m.contact)

        log.info(
            "gmail_fetched",
            user_id=user_id,
            cursor=cursor,
            next_cursor=next_cursor,
            messages=len(messages),
            contacts=len(contacts),
        )
        return FetchResult(contacts=contacts, messages=messages, next_cursor=next_cursor)
