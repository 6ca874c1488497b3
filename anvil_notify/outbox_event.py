"""Turning business outbox rows into notification event envelopes.

Business services write email fields at the top level of an outbox row's
JSON payload::

    {
      "recipients":       [{"email": "...", "name": "..."}],  # or "recipient"
      "payload":          {...template variables...},
      "from_override":    {"email": "...", "name": "..."},    # optional
      "attachments":      [{"url": "...", ...}],              # optional
      "cc":               [{"email": "...", "name": "..."}],  # optional
      "bcc":              [{"email": "...", "name": "..."}],  # optional
      "sender_account":   "transactional",                    # optional
      "send_mode":        "individual" | "group",             # optional
      "group_retry_mode": "whole" | "individual",             # optional
      "metadata":         {"source": "orders-service"}        # optional
    }

:func:`build_event` reshapes this into the envelope the consumer expects,
with every email field nested under ``channel_overrides.email``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from anvil_notify.fetcher import AttachmentRef


class _SendMode(str, Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


class _GroupRetryMode(str, Enum):
    WHOLE = "whole"
    INDIVIDUAL = "individual"


class _RetryPolicy(str, Enum):
    RETRY = "retry"
    NO_RETRY = "no_retry"


@dataclass
class OutboxRow:
    """One row claimed from the business outbox table.

    ``created_at`` is when the business event was written; it becomes the
    event timestamp so attachment expiry is measured from then, not from
    whenever the worker picked the row up. ``fail_count`` is the running
    tally of earlier publish failures.
    """

    id: UUID
    event_id: UUID
    event_type: str
    payload: Any
    created_at: datetime
    fail_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


def promote_recipients(payload: Any) -> Any:
    """Return the recipients of an outbox payload in array form.

    ``recipients`` is forwarded as-is and wins over ``recipient``; a
    singular ``recipient`` is wrapped in a one-element list; with neither
    key the result is an empty list.
    """
    if isinstance(payload, Mapping):
        if "recipients" in payload:
            return payload["recipients"]
        if "recipient" in payload:
            return [payload["recipient"]]
    return []


def build_event(row: OutboxRow) -> dict[str, Any]:
    """Build the JSON-ready notification event for ``row``.

    Raises :class:`ValueError` when the recipients field is malformed. Every
    other optional field that is absent or malformed takes its default.
    """
    payload = row.payload if isinstance(row.payload, Mapping) else {}

    try:
        recipients = _parse_mailboxes(promote_recipients(payload))
    except (TypeError, ValueError, KeyError) as exc:
        raise ValueError(
            f"outbox row has malformed recipients field — skipping: {exc}"
        ) from exc

    sender_account = payload.get("sender_account")
    if not isinstance(sender_account, str):
        sender_account = None

    metadata = payload.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, Mapping) else {}

    template_payload = payload.get("payload", {})

    email = {
        "send_mode": _lenient(
            lambda: _parse_enum(_SendMode, payload["send_mode"]), _SendMode.INDIVIDUAL
        ).value,
        "recipients": recipients,
        "cc": _lenient(lambda: _parse_mailboxes(payload["cc"]), []),
        "bcc": _lenient(lambda: _parse_mailboxes(payload["bcc"]), []),
        "from_override": _lenient(
            lambda: _parse_mailbox(payload["from_override"]), None
        ),
        "attachments": _lenient(
            lambda: _parse_attachments(payload["attachments"]), []
        ),
        "sender_account": sender_account,
        "group_retry_mode": _lenient(
            lambda: _parse_enum(_GroupRetryMode, payload["group_retry_mode"]),
            _GroupRetryMode.WHOLE,
        ).value,
        "retry_policy": _RetryPolicy.RETRY.value,
    }

    return {
        "event_id": str(row.event_id),
        "timestamp": row.created_at.isoformat(),
        "event_type": row.event_type,
        "payload": template_payload,
        "metadata": metadata,
        "channel_overrides": {"email": email},
    }


def _lenient(parse, default):
    try:
        return parse()
    except (TypeError, ValueError, KeyError):
        return default


def _parse_enum(enum_cls, value: Any):
    if not isinstance(value, str):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    return enum_cls(value.lower())


def _parse_mailbox(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"expected an object, got {type(value).__name__}")
    email = value["email"]
    if not isinstance(email, str):
        raise TypeError("email must be a string")
    name = value.get("name")
    if name is not None and not isinstance(name, str):
        raise TypeError("name must be a string or null")
    return {"email": email, "name": name}


def _parse_mailboxes(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise TypeError(f"expected an array, got {type(value).__name__}")
    return [_parse_mailbox(item) for item in value]


def _parse_attachments(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        raise TypeError(f"expected an array, got {type(value).__name__}")
    return [_parse_attachment(item).to_dict() for item in value]


def _parse_attachment(value: Any) -> AttachmentRef:
    if not isinstance(value, Mapping):
        raise TypeError(f"expected an object, got {type(value).__name__}")
    ref = AttachmentRef.from_dict(value)
    for name in ("url", "filename", "content_type"):
        if not isinstance(getattr(ref, name), str):
            raise TypeError(f"{name} must be a string")
    if ref.fetch_token is not None and not isinstance(ref.fetch_token, str):
        raise TypeError("fetch_token must be a string or null")
    age = ref.max_age_secs
    if age is not None and (isinstance(age, bool) or not isinstance(age, int) or age < 0):
        raise TypeError("max_age_secs must be a non-negative integer or null")
    return ref