"""Slack fetch adapter: Web API over httpx, newest message ts as cursor."""

from __future__ import annotations

import time
from decimal import Decimal

import httpx

from crosswire.adapters.base import FetchResult
from crosswire.adapters.records import SlackContactRecord, SlackMessageRecord
from crosswire.config import SlackConfig
from crosswire.errors import CredentialExpired, NotAuthenticated, RateLimited, TransientFetchFailure
from crosswire.models import Credential
from crosswire.observability import get_logger

log = get_logger(__name__)

AUTH_ERRORS = {
    "not_authed", "invalid_auth", "account_inactive", "token_revoked",
    "no_permission", "missing_scope", "not_allowed_token_type",
}
# Message subtypes that are not conversation content
SKIP_SUBTYPES = {"channel_join", "channel_leave", "bot_message", "message_deleted", "group_join"}


class SlackAdapter:
    platform = "slack"

    def __init__(self, config: SlackConfig | None = None, client: httpx.Client | None = None):
        self.config = config or SlackConfig()
        self.client = client or httpx.Client(timeout=30.0)

    def _call(self, method: str, token: str, **params) -> dict:
        try:
            resp = self.client.get(
                f"{self.config.api_base_url.rstrip('/')}/{method}",
                params={k: v for k, v in params.items() if v is not None},
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise TransientFetchFailure(f"Slack {method} failed: {e}") from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise RateLimited(
                f"Slack rate limit on {method}",
                retry_after=float(retry_after) if retry_after else None,
            )
        if resp.status_code >= 500:
            raise TransientFetchFailure(f"Slack {method} returned {resp.status_code}")
        resp.raise_for_status()

        data = resp.json()
        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            if error == "token_expired":
                raise CredentialExpired(f"Slack token expired ({method})")
            if error in AUTH_ERRORS:
                raise NotAuthenticated(f"Slack {method}: {error}")
            if error == "ratelimited":
                raise RateLimited(f"Slack rate limit on {method}")
            raise TransientFetchFailure(f"Slack {method}: {error}")
        return data

    def _paginate(self, method: str, token: str, key: str, max_items: int | None = None, **params):
        cursor = None
        count = 0
        while True:
            data = self._call(method, token, cursor=cursor, limit=self.config.page_size, **params)
            for item in data.get(key, []):
                yield item
                count += 1
                if max_items and count >= max_items:
                    return
            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return

    def _replies(self, token: str, channel: str, parent: dict, oldest: str):
        """Replies in a thread whose latest reply is newer than ``oldest``."""
        latest = parent.get("latest_reply")
        if not parent.get("reply_count") or not latest or Decimal(latest) <= Decimal(oldest):
            return
        for reply in self._paginate("conversations.replies", token, "messages",
                                    channel=channel, ts=parent["ts"], oldest=oldest):
            if reply["ts"] != parent["ts"]:
                yield reply

    def _channels(self, token: str) -> list[dict]:
        cap = self.config.max_channels
        channels = list(self._paginate(
            "conversations.list", token, "channels",
            max_items=cap + 1 if cap else None,
            types="im,mpim", exclude_archived="true",
        ))
        if cap and len(channels) > cap:
            log.warning("slack_channels_truncated", max_channels=cap)
            channels = channels[:cap]
        return channels

    def fetch_since(self, user_id: str, cursor: str | None, credential: Credential) -> FetchResult:
        token = credential.access_token or ""
        own_id = credential.metadata.get("slack_user_id")
        if not own_id:
            own_id = self._call("auth.test", token).get("user_id")

        members = {
            m["id"]: SlackContactRecord.from_api(m)
            for m in self._paginate("users.list", token, "members")
        }
        oldest = cursor or str(time.time() - self.config.initial_days * 86400)

        records: dict[str, SlackMessageRecord] = {}
        for channel in self._channels(token):
            is_im = bool(channel.get("is_im"))
            dm_partner = members.get(channel.get("user")) if is_im else None
            for parent in self._paginate("conversations.history", token, "messages", channel=channel["id"], oldest=oldest):
                for msg in [parent, *self._replies(token, channel["id"], parent, oldest)]:
                    if msg.get("subtype") in SKIP_SUBTYPES or not msg.get("user"):
                        continue
                    outbound = msg["user"] == own_id
                    record = SlackMessageRecord(
                        ts=msg["ts"],
                        channel=channel["id"],
                        channel_type="im" if is_im else "mpim",
                        user=msg["user"],
                        text=msg.get("text", ""),
                        thread_ts=msg.get("thread_ts"),
                        subtype=msg.get("subtype"),
                        is_outbound=outbound,
                        counterpart=dm_partner if outbound else members.get(msg["user"]),
                    )
                    records[record.message_id] = record

        ordered = sorted(records.values(), key=lambda r: Decimal(r.ts))
        next_cursor = ordered[-1].ts if ordered else None

        contacts = [m.normalize() for uid, m in members.items() if uid != own_id]
        messages = [r.normalize() for r in ordered]
        log.info(
            "slack_fetched",
            user_id=user_id,
            cursor=cursor,
            next_cursor=next_cursor,
            messages=len(messages),
            contacts=len(contacts),
        )
        return FetchResult(contacts=contacts, messages=messages, next_cursor=next_cursor)
