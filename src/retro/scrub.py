"""Secret redaction applied to session text before it is sent for analysis."""

from __future__ import annotations

import re

from .ingest.models import Session

SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"AKIA[0-9A-Z]{16}"), "[REDACTED_AWS_KEY]"),
    (re.compile(r"gh[ps]_[A-Za-z0-9_]{36,}"), "[REDACTED_GH_TOKEN]"),
    (re.compile(r"gho_[A-Za-z0-9_]{36,}"), "[REDACTED_GH_OAUTH]"),
    (
        re.compile(
            r"(?i)(api[_-]?key|token|secret|password|passwd|authorization)"
            r"\s*[=:]\s*['\"]?([A-Za-z0-9_\-./+]{16,})['\"]?",
        ),
        r"\1=[REDACTED]",
    ),
    (re.compile(r"(?i)Bearer\s+[A-Za-z0-9_\-./+]{20,}"), "Bearer [REDACTED]"),
    (re.compile(r"-----BEGIN[A-Z ]*PRIVATE KEY-----"), "[REDACTED_PRIVATE_KEY]"),
    (re.compile(r"sk-ant-[A-Za-z0-9_\-]{20,}"), "[REDACTED_ANTHROPIC_KEY]"),
    (re.compile(r"sk-[A-Za-z0-9]{20,}"), "[REDACTED_OPENAI_KEY]"),
]


def scrub_secrets(text: str) -> str:
    """Replace anything that looks like a credential."""
    for pattern, replacement in SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def scrub_session(session: Session) -> None:
    """Redact every free-text field of a session in place."""
    for user in session.user_messages:
        user.text = scrub_secrets(user.text)
    for assistant in session.assistant_messages:
        assistant.text = scrub_secrets(assistant.text)
        if assistant.thinking_summary:
            assistant.thinking_summary = scrub_secrets(assistant.thinking_summary)
    session.summaries = [scrub_secrets(s) for s in session.summaries]
    session.errors = [scrub_secrets(e) for e in session.errors]
