"""Deterministic failure classification for backend output and HTTP responses."""

from __future__ import annotations

import re
from dataclasses import dataclass

from prompt_relay.dispatch.models import NO_ERROR, ErrorCategory, ErrorClassification

MESSAGE_MAX_CHARS = 200


@dataclass(slots=True, frozen=True)
class ErrorRule:
    """One ordered pattern -> outcome mapping."""

    name: str
    pattern: re.Pattern[str]
    category: ErrorCategory
    requires_fallback: bool
    actionable: bool
    suggested_fix: str
    extracts_wait_time: bool = False


_RATE_LIMIT_FIX = "Wait and retry - temporary rate limiting"
_AUTH_FIX = "Check API key configuration for this provider"

# Billing phrasing must win over the generic "limit" rules below.
ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        name="quota_exceeded",
        pattern=re.compile(r"billing|payment|credit|insufficient funds", re.IGNORECASE),
        category=ErrorCategory.QUOTA_EXCEEDED,
        requires_fallback=True,
        actionable=True,
        suggested_fix="Check billing status and add credits to the provider account",
    ),
    ErrorRule(
        name="rate_limit",
        pattern=re.compile(r"API Error: 429|rate.?limit|too many requests", re.IGNORECASE),
        category=ErrorCategory.RATE_LIMIT,
        requires_fallback=False,
        actionable=False,
        suggested_fix=_RATE_LIMIT_FIX,
    ),
    ErrorRule(
        name="usage_limit",
        pattern=re.compile(
            r"hit your usage limit|You've hit your limit|usage limit|Upgrade to Pro",
            re.IGNORECASE,
        ),
        category=ErrorCategory.USAGE_LIMIT,
        requires_fallback=True,
        actionable=True,
        suggested_fix=(
            "Provider usage limit reached. Using fallback provider or wait for limit reset."
        ),
        extracts_wait_time=True,
    ),
    ErrorRule(
        name="auth_error",
        pattern=re.compile(
            r"unauthorized|invalid.?api.?key|authentication|forbidden|401|403",
            re.IGNORECASE,
        ),
        category=ErrorCategory.AUTH_ERROR,
        requires_fallback=True,
        actionable=True,
        suggested_fix=_AUTH_FIX,
    ),
    ErrorRule(
        name="model_not_found",
        pattern=re.compile(
            r"model.*(?:not found|does not exist|unavailable)|invalid model",
            re.IGNORECASE,
        ),
        category=ErrorCategory.MODEL_NOT_FOUND,
        requires_fallback=True,
        actionable=True,
        suggested_fix="Check model name and availability in provider settings",
    ),
    ErrorRule(
        name="network_error",
        pattern=re.compile(
            r"ECONNREFUSED|ENOTFOUND|network error|connection refused|timeout|ETIMEDOUT",
            re.IGNORECASE,
        ),
        category=ErrorCategory.NETWORK_ERROR,
        requires_fallback=False,
        actionable=False,
        suggested_fix="Check network connectivity and provider endpoint URL",
    ),
    ErrorRule(
        name="timeout",
        pattern=re.compile(r"timed out|timeout exceeded|SIGTERM", re.IGNORECASE),
        category=ErrorCategory.TIMEOUT,
        requires_fallback=False,
        actionable=False,
        suggested_fix="Consider increasing timeout or reducing prompt complexity",
    ),
)

_UNIT = r"(?:day|hour|minute|second)s?"
_WAIT_TIME_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"resets?\s+(\d{1,2}(?:am|pm)?)\s*\(([^)]+)\)", re.IGNORECASE),
    re.compile(rf"try again in\s+((?:\d+\s*{_UNIT}\s*)+)", re.IGNORECASE),
    re.compile(rf"wait\s+((?:\d+\s*{_UNIT}\s*)+)", re.IGNORECASE),
    re.compile(rf"in\s+(\d+\s*{_UNIT})", re.IGNORECASE),
)
_LOOSE_WAIT_TIME = re.compile(
    r"(\d+\s*days?)?[,\s]*(\d+\s*hours?)?[,\s]*(\d+\s*min(?:ute)?s?)?",
    re.IGNORECASE,
)
_ANY_TIME_TOKEN = re.compile(r"(\d+)\s*(day|hour|min|sec)(?:ute)?s?", re.IGNORECASE)

_MESSAGE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Error:\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r'error":\s*"([^"]+)"', re.IGNORECASE),
    re.compile(r'message":\s*"([^"]+)"', re.IGNORECASE),
    re.compile(r"failed:\s*(.+?)(?:\n|$)", re.IGNORECASE),
)


def classify_error(text: str | None, exit_code: int | None = None) -> ErrorClassification:
    """Classify process-style failure output.

    An explicit zero exit code is always a success. Otherwise the first
    matching rule wins; unmatched output is ``unknown`` only when the exit
    code signals failure.
    """

    if exit_code == 0:
        return NO_ERROR

    haystack = text or ""
    for rule in ERROR_RULES:
        if rule.pattern.search(haystack) is None:
            continue
        return ErrorClassification(
            has_error=True,
            category=rule.category,
            message=extract_error_message(haystack),
            wait_time=extract_wait_time(haystack) if rule.extracts_wait_time else None,
            requires_fallback=rule.requires_fallback,
            actionable=rule.actionable,
            suggested_fix=rule.suggested_fix,
        )

    if exit_code is not None:
        return ErrorClassification(
            has_error=True,
            category=ErrorCategory.UNKNOWN,
            message=extract_error_message(haystack) or f"Process exited with code {exit_code}",
        )
    return NO_ERROR


def classify_http_error(
    status: int,
    status_text: str | None = None,
    body: str | None = None,
) -> ErrorClassification:
    """Classify a chat-completion HTTP response by status code, then body."""

    if 200 <= status < 300:
        return NO_ERROR

    if status == 429:
        return ErrorClassification(
            has_error=True,
            category=ErrorCategory.RATE_LIMIT,
            message=f"Rate limit exceeded ({status})",
            wait_time=extract_wait_time(body),
            suggested_fix=_RATE_LIMIT_FIX,
        )

    if status in (401, 403):
        return ErrorClassification(
            has_error=True,
            category=ErrorCategory.AUTH_ERROR,
            message=f"Authentication failed ({status})",
            requires_fallback=True,
            actionable=True,
            suggested_fix=_AUTH_FIX,
        )

    if body:
        return classify_error(body)

    return ErrorClassification(
        has_error=True,
        category=ErrorCategory.UNKNOWN,
        message=status_text or f"HTTP {status}",
    )


def extract_wait_time(text: str | None) -> str | None:
    """Return the first human-readable wait phrase found in ``text``."""

    if not text:
        return None

    for pattern in _WAIT_TIME_PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        phrase = " ".join(group for group in match.groups() if group).strip()
        if phrase:
            return phrase

    # Only the leftmost loose match counts; it is empty unless the text opens with a duration.
    loose = _LOOSE_WAIT_TIME.search(text)
    if loose is not None:
        phrase = " ".join(group.strip() for group in loose.groups() if group).strip()
        if phrase:
            return phrase

    tokens = [match.group(0) for match in _ANY_TIME_TOKEN.finditer(text)]
    if tokens:
        return " ".join(tokens)
    return None


def extract_error_message(text: str | None) -> str:
    """Pick the most relevant human message from failure output."""

    if not text:
        return ""

    for pattern in _MESSAGE_PATTERNS:
        match = pattern.search(text)
        if match is not None:
            return match.group(1).strip()

    for line in text.splitlines():
        if line.strip():
            return line[:MESSAGE_MAX_CHARS]
    return text[:MESSAGE_MAX_CHARS]
