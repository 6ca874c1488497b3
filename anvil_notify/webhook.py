"""Email delivery by POSTing a JSON document to a webhook endpoint."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from anvil_notify.errors import (
    PermanentMailerError,
    RateLimitedError,
    TransientMailerError,
)
from anvil_notify.message import EmailMessage
from anvil_notify.sender import EmailSender

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 512
_DEFAULT_TIMEOUT_SECS = 30.0


@dataclass
class WebhookConfig:
    """Where to POST messages and the optional bearer token to send."""

    url: str
    auth_token: str | None = None


def build_webhook_body(msg: EmailMessage) -> dict[str, Any]:
    """Build the JSON document POSTed for ``msg``.

    Attachment bytes are base64-encoded so the receiver gets a
    self-contained payload.
    """

    def mailboxes(refs):
        return [{"email": r.email, "name": r.name} for r in refs]

    return {
        "event_id": str(msg.event_id),
        "to_email": msg.to_email,
        "to_name": msg.to_name,
        "to_extra": mailboxes(msg.to_extra),
        "subject": msg.subject,
        "body_html": msg.body_html,
        "body_text": msg.body_text,
        "from_email_override": msg.from_email_override,
        "from_name_override": msg.from_name_override,
        "attachments": [
            {
                "filename": a.filename,
                "content_type": a.content_type,
                "data": base64.b64encode(a.data).decode("ascii"),
            }
            for a in msg.attachments
        ],
        "cc": mailboxes(msg.cc),
        "bcc": mailboxes(msg.bcc),
    }


class WebhookSender(EmailSender):
    """Sends email by POSTing it to an HTTP endpoint.

    Pass a shared ``client`` to reuse an existing connection pool; without
    one, a client with a 30 s timeout is created and owned by the sender.
    """

    def __init__(self, cfg: WebhookConfig, client: httpx.AsyncClient | None = None):
        self._owns_client = client is None
        self._client = (
            client
            if client is not None
            else httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT_SECS, follow_redirects=True)
        )
        self._url = cfg.url
        self._auth_token = cfg.auth_token

    async def aclose(self) -> None:
        """Close the HTTP client if this sender created it."""
        if self._owns_client:
            await self._client.aclose()

    async def send(self, msg: EmailMessage) -> None:
        """POST ``msg``; map failures onto permanent, transient or rate-limit errors."""
        headers = {}
        if self._auth_token is not None:
            headers["Authorization"] = f"Bearer {self._auth_token}"

        try:
            resp = await self._client.post(
                self._url, json=build_webhook_body(msg), headers=headers
            )
        except httpx.HTTPError as exc:
            raise TransientMailerError(str(exc)) from exc

        status = resp.status_code
        if 200 <= status < 300:
            logger.info(
                "Email %s dispatched via webhook (attachments=%d, cc=%d, bcc=%d)",
                msg.event_id,
                len(msg.attachments),
                len(msg.cc),
                len(msg.bcc),
            )
            return

        detail = _truncated_body(resp.content)
        if status == 429:
            logger.warning("Webhook rate-limited: %s", detail)
            raise RateLimitedError(f"webhook HTTP 429: {detail}")
        status_text = f"{status} {resp.reason_phrase}".strip()
        if 400 <= status < 500:
            raise PermanentMailerError(f"webhook HTTP {status_text}: {detail}")
        raise TransientMailerError(f"webhook HTTP {status_text}: {detail}")


def _truncated_body(raw: bytes) -> str:
    text = raw[:_ERROR_BODY_LIMIT].decode("utf-8", errors="replace")
    if len(raw) > _ERROR_BODY_LIMIT:
        return f"{text}… ({len(raw)} bytes total)"
    return text