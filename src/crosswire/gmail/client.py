"""Gmail API wrapper: search, fetch, history, with error translation."""

from __future__ import annotations

import base64
import email.utils

from googleapiclient.errors import HttpError

from crosswire.errors import CredentialExpired, NotAuthenticated, RateLimited, TransientFetchFailure


class HistoryExpired(Exception):
    """The stored historyId is too old; the caller must re-list from a query."""


def _translate(e: HttpError) -> Exception:
    status = e.resp.status
    if status == 401:
        return CredentialExpired(f"Gmail rejected the access token: {e}")
    if status == 429 or (status == 403 and "rateLimitExceeded" in str(e)):
        retry_after = e.resp.get("retry-after")
        return RateLimited(f"Gmail rate limit: {e}", retry_after=float(retry_after) if retry_after else None)
    if status == 403:
        return NotAuthenticated(f"Gmail access denied: {e}")
    return TransientFetchFailure(f"Gmail API error {status}: {e}")


class GmailClient:
    """Wraps the Gmail API service with pagination and message parsing."""

    def __init__(self, service, user_email: str = ""):
        self.service = service
        self.user_email = user_email.lower()

    def _execute(self, request):
        try:
            return request.execute()
        except HttpError as e:
            raise _translate(e) from e
        except OSError as e:
            raise TransientFetchFailure(f"Gmail request failed: {e}") from e

    def search_messages(self, query: str, max_results: int | None = None) -> list[dict]:
        """Return message stubs matching the Gmail search query, newest first."""
        messages: list[dict] = []
        page_token = None

        while True:
            result = self._execute(
                self.service.users().messages().list(userId="me", q=query, pageToken=page_token)
            )
            messages.extend(result.get("messages", []))
            page_token = result.get("nextPageToken")
            if not page_token or (max_results and len(messages) >= max_results):
                break

        return messages[:max_results] if max_results else messages

    def get_message(self, message_id: str, fmt: str = "full") -> dict:
        return self._execute(
            self.service.users().messages().get(userId="me", id=message_id, format=fmt)
        )

    def list_history(self, start_history_id: str) -> list[dict]:
        """List history events since the given historyId.

        Raises HistoryExpired when Gmail no longer has that point in history.
        """
        history: list[dict] = []
        page_token = None

        while True:
            try:
                result = self.service.users().history().list(
                    userId="me",
                    startHistoryId=start_history_id,
                    historyTypes="messageAdded",
                    pageToken=page_token,
                ).execute()
            except HttpError as e:
                if e.resp.status == 404:
                    raise HistoryExpired(start_history_id) from e
                raise _translate(e) from e
            except OSError as e:
                raise TransientFetchFailure(f"Gmail request failed: {e}") from e

            history.extend(result.get("history", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return history

    def get_profile(self) -> dict:
        return self._execute(self.service.users().getProfile(userId="me"))

    def parse_message(self, raw_msg: dict) -> dict:
        """Parse a raw Gmail API message into a flat dict."""
        payload = raw_msg.get("payload", {})
        header_map: dict[str, str] = {}
        for h in payload.get("headers", []):
            key = h.get("name", "").lower()
            header_map.setdefault(key, h.get("value", ""))

        body_parts: dict[str, list[str]] = {"html": [], "text": []}
        self._extract_parts(payload, body_parts)

        from_header = header_map.get("from", "")
        from_name, from_email = email.utils.parseaddr(from_header)
        from_email = from_email.lower()
        labels = raw_msg.get("labelIds", [])
        is_sent = "SENT" in labels or (bool(self.user_email) and from_email == self.user_email)

        to_addresses = [
            {"name": n.strip(), "email": e.strip().lower()}
            for n, e in email.utils.getaddresses([header_map.get("to", "")]) if e
        ]

        return {
            "message_id": raw_msg["id"],
            "thread_id": raw_msg.get("threadId", ""),
            "internal_date_ms": int(raw_msg.get("internalDate", 0)),
            "from_header": from_header,
            "from_address": from_email,
            "from_name": from_name.strip(),
            "to_addresses": to_addresses,
            "subject": header_map.get("subject", ""),
            "body_text": "\n".join(body_parts["text"]),
            "body_html": "\n".join(body_parts["html"]),
            "labels": labels,
            "snippet": raw_msg.get("snippet", ""),
            "is_sent": is_sent,
        }

    def _extract_parts(self, part: dict, body_parts: dict[str, list]) -> None:
        """Recursively collect text/plain and text/html bodies, skipping attachments."""
        if part.get("filename"):
            return

        sub_parts = part.get("parts", [])
        if sub_parts:
            for sub in sub_parts:
                self._extract_parts(sub, body_parts)
            return

        body_data = part.get("body", {}).get("data", "")
        if not body_data:
            return

        try:
            decoded = base64.urlsafe_b64decode(body_data).decode("utf-8", errors="replace")
        except ValueError:
            return

        mime_type = part.get("mimeType", "")
        if mime_type == "text/html":
            body_parts["html"].append(decoded)
        elif mime_type == "text/plain":
            body_parts["text"].append(decoded)
