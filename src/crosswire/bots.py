"""Bot and automated-account detection for incoming platform contacts.

Three signal families with different trust levels:

- explicit platform flags (``is_bot``, ``deleted``): high confidence
- automated address patterns and known bot domains: high confidence
- bot-like names and handles: medium confidence

Only high-confidence detections are filtered. Medium and low signals are
reported so callers can log them, but they never block ingestion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from crosswire.models import NormalizedContact

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

AUTOMATED_EMAIL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(no-?reply|noreply)@",
        r"^(do-?not-?reply|donotreply)@",
        r"^(admin|administrator|system|root|postmaster)@",
        r"^(support|help|info|contact)@",
        r"^(notifications?|alerts?)@",
        r"^(automated?|auto)@",
        r"^(service|services)@",
        r"^(mailer|daemon|bounce)@",
        r"^(marketing|newsletter|news)@",
        r"^(campaign|promo|promotion)@",
        r"^(updates?|announcements?)@",
        r"^(security|abuse|spam)@",
        r"^(phishing|fraud|safety)@",
        r"^(api|webhook|integration)@",
        r"^(slack|teams|discord|zoom)@",
        r"^(github|gitlab|jira|trello)@",
        r"^(test|testing|demo)@",
        r"^(null|void|dummy)@",
    )
]

BOT_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"bot",
        r"automation",
        r"automated",
        r"^(slack|teams|discord|zoom)",
        r"^(github|gitlab|jira|trello)",
        r"^(google|microsoft|apple)",
        r"^(calendar|reminder|notification)",
        r"^(system|admin|root)",
        r"^(service|daemon|process)",
        r"integration$",
        r"webhook$",
        r"^(assistant|ai|gpt|claude)",
        r"^(chatbot|chat.?bot)",
    )
]

BOT_DOMAINS = {
    "notifications.service.slack.com",
    "noreply.github.com",
    "no-reply.accounts.google.com",
    "noreply.medium.com",
    "notifications.google.com",
    "mail-noreply.google.com",
    "zapier.com",
    "ifttt.com",
    "automate.io",
    "noreply.com",
    "donotreply.com",
    "no-reply.com",
}

GENERIC_NAMES = {"", "unknown user"}


@dataclass
class BotCheck:
    is_bot: bool
    confidence: str
    reasons: list[str] = field(default_factory=list)

    @property
    def should_filter(self) -> bool:
        return self.is_bot and self.confidence == HIGH


@dataclass
class BotRules:
    """Pattern tables used by detect_bot(); extendable from YAML."""

    email_patterns: list[re.Pattern] = field(default_factory=lambda: list(AUTOMATED_EMAIL_PATTERNS))
    name_patterns: list[re.Pattern] = field(default_factory=lambda: list(BOT_NAME_PATTERNS))
    domains: set[str] = field(default_factory=lambda: set(BOT_DOMAINS))


def load_bot_rules(path: str | Path | None = None) -> BotRules:
    """Load extra bot domains and patterns from a YAML file.

    Expected keys: ``domains``, ``email_patterns``, ``name_patterns`` (all
    lists). Entries are added to the built-in tables. Returns the built-in
    rules if the file is missing.
    """
    rules = BotRules()
    if path is None:
        return rules

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return rules

    for domain in data.get("domains") or []:
        rules.domains.add(str(domain).lower())
    for pattern in data.get("email_patterns") or []:
        rules.email_patterns.append(re.compile(str(pattern), re.IGNORECASE))
    for pattern in data.get("name_patterns") or []:
        rules.name_patterns.append(re.compile(str(pattern), re.IGNORECASE))
    return rules


_DEFAULT_RULES = BotRules()


def detect_bot(contact: NormalizedContact, rules: BotRules | None = None) -> BotCheck:
    """Classify a contact. Pure function of the contact and the rule tables."""
    rules = rules or _DEFAULT_RULES
    reasons: list[str] = []
    confidence = LOW

    if contact.is_bot:
        reasons.append("platform marked as bot")
        confidence = HIGH

    if contact.deleted:
        reasons.append("account is deleted or deactivated")
        confidence = HIGH

    if contact.email:
        email = contact.email.strip()
        for pattern in rules.email_patterns:
            if pattern.search(email):
                reasons.append(f"automated email pattern: {email}")
                confidence = HIGH
                break
        domain = email.rpartition("@")[2].lower()
        if domain and domain in rules.domains:
            reasons.append(f"known bot domain: {domain}")
            confidence = HIGH

    for label, value in (("name", contact.name), ("handle", contact.handle)):
        if not value:
            continue
        for pattern in rules.name_patterns:
            if pattern.search(value):
                reasons.append(f"bot {label} pattern: {value}")
                if confidence == LOW:
                    confidence = MEDIUM
                break

    if (contact.name or "").strip().lower() in GENERIC_NAMES:
        # Not definitive on its own
        reasons.append("missing or generic name")

    is_bot = bool(reasons) and confidence in (HIGH, MEDIUM)
    return BotCheck(is_bot=is_bot, confidence=confidence, reasons=reasons)
