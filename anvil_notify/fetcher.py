"""Fetching attachment URLs at send time.

Every attachment is fetched concurrently and retried on its own, so one
flaky storage server does not hold up the others. Client errors (4xx),
oversized bodies and expired URLs are permanent failures; server errors,
timeouts, network errors and HTTP 429 are retried up to
``FETCH_MAX_RETRIES`` times with delays of 1 s, 2 s and 4 s.
"""

from __future__ import annotations

import asyncio
import logging
from asyncio import sleep
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from urllib.parse import urlsplit

import httpx

from anvil_notify.errors import (
    AppError,
    PermanentMailerError,
    RateLimitedError,
    TransientMailerError,
)
from anvil_notify.message import ResolvedAttachment

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
"""Largest response body accepted for a single attachment (10 MiB)."""

FETCH_MAX_RETRIES = 3
"""Retries of a transient fetch failure before giving up."""


@dataclass
class AttachmentRef:
    """A reference to a file that is fetched from ``url`` when sending."""

    url: str
    filename: str
    content_type: str
    fetch_token: str | None = None
    max_age_secs: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "filename": self.filename,
            "content_type": self.content_type,
            "fetch_token": self.fetch_token,
            "max_age_secs": self.max_age_secs,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AttachmentRef:
        return cls(
            url=data["url"],
            filename=data["filename"],
            content_type=data["content_type"],
            fetch_token=data.get("fetch_token"),
            max_age_secs=data.get("max_age_secs"),
        )

    def validate(
        self, event_timestamp: datetime, check_time: datetime | None = None
    ) -> None:
        """Check the reference before any network call.

        Raises :class:`ValueError` for an empty or non-HTTP(S) URL, a
        filename that is empty or holds a path separator, or a URL older
        than ``max_age_secs`` at ``check_time`` (default: now).
        """
        if not self.url.strip():
            raise ValueError(f"attachment '{self.filename}' has an empty url")
        parts = urlsplit(self.url)
        if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
            raise ValueError(
                f"attachment '{self.filename}' url must be http or https: {self.url}"
            )
        if not self.filename.strip():
            raise ValueError("attachment filename must not be empty")
        if any(sep in self.filename for sep in ("/", "\\", "\0")):
            raise ValueError(
                f"attachment filename '{self.filename}' must not contain path separators"
            )
        if self.max_age_secs is not None:
            now = check_time if check_time is not None else datetime.now(timezone.utc)
            age = (now - event_timestamp).total_seconds()
            if age > self.max_age_secs:
                raise ValueError(
                    f"attachment '{self.filename}' url expired: age {age:.0f}s "
                    f"exceeds max_age_secs {self.max_age_secs}"
                )


async def fetch_attachments(
    client: httpx.AsyncClient,
    refs: Iterable[AttachmentRef],
    event_timestamp: datetime,
    max_bytes: int = MAX_ATTACHMENT_BYTES,
) -> list[ResolvedAttachment]:
    """Fetch every attachment and return them in the order of ``refs``.

    All references are validated first; a failure there raises
    :class:`PermanentMailerError` before any request is made. When fetches
    fail, a retryable error is raised if there is one, so the caller
    requeues; only if every failure is permanent is a permanent error raised.
    """
    refs = list(refs)
    now = datetime.now(timezone.utc)
    for ref in refs:
        try:
            ref.validate(event_timestamp, now)
        except ValueError as exc:
            raise PermanentMailerError(str(exc)) from exc

    results = await asyncio.gather(
        *(_fetch_one_with_retry(client, ref, max_bytes) for ref in refs),
        return_exceptions=True,
    )

    errors: list[AppError] = []
    resolved: list[ResolvedAttachment] = []
    for result in results:
        if isinstance(result, AppError):
            errors.append(result)
        elif isinstance(result, BaseException):
            raise result
        else:
            resolved.append(result)

    if not errors:
        return resolved
    retryable = next((e for e in errors if not e.is_permanent_mailer()), None)
    raise retryable if retryable is not None else errors[0]


async def _fetch_one_with_retry(
    client: httpx.AsyncClient, ref: AttachmentRef, max_bytes: int
) -> ResolvedAttachment:
    last_err: AppError | None = None
    for attempt in range(FETCH_MAX_RETRIES + 1):
        if attempt:
            delay = 1 << min(attempt - 1, 3)
            logger.warning(
                "Attachment %r fetch transient failure — retrying (attempt %d, delay %ds)",
                ref.filename,
                attempt,
                delay,
            )
            await sleep(delay)
        try:
            data = await _fetch_one(client, ref, max_bytes)
        except AppError as exc:
            if exc.is_permanent_mailer():
                raise
            last_err = exc
        else:
            return ResolvedAttachment(
                filename=ref.filename, content_type=ref.content_type, data=data
            )
    if last_err is None:
        last_err = TransientMailerError(
            f"attachment '{ref.filename}' fetch failed after {FETCH_MAX_RETRIES} retries"
        )
    raise last_err


async def _fetch_one(
    client: httpx.AsyncClient, ref: AttachmentRef, max_bytes: int
) -> bytes:
    logger.debug("Fetching attachment %r from %s", ref.filename, ref.url)
    headers = {}
    if ref.fetch_token is not None:
        headers["Authorization"] = f"Bearer {ref.fetch_token}"
    try:
        async with client.stream("GET", ref.url, headers=headers) as resp:
            _check_status(resp, ref)
            _check_content_type(resp, ref)
            return await _read_capped(resp, ref, max_bytes)
    except httpx.HTTPError as exc:
        raise TransientMailerError(
            f"attachment fetch network error '{ref.filename}': {exc}"
        ) from exc


def _check_status(resp: httpx.Response, ref: AttachmentRef) -> None:
    status = resp.status_code
    status_text = f"{status} {resp.reason_phrase}".strip()
    if status == 429:
        logger.warning("Attachment source for %r returned 429", ref.filename)
        raise RateLimitedError(
            f"attachment '{ref.filename}' source returned HTTP 429"
        )
    if 400 <= status < 500:
        raise PermanentMailerError(
            f"attachment '{ref.filename}' fetch returned HTTP {status_text} ({ref.url})"
        )
    if 500 <= status < 600:
        raise TransientMailerError(
            f"attachment '{ref.filename}' fetch returned HTTP {status_text} — will retry"
        )


def _check_content_type(resp: httpx.Response, ref: AttachmentRef) -> None:
    # A mismatch often means an expired URL served an HTML error page; the
    # bytes are still attached under the declared type.
    response_type = resp.headers.get("content-type")
    if response_type is None:
        return
    response_base = response_type.split(";", 1)[0].strip()
    declared_base = ref.content_type.split(";", 1)[0].strip()
    if response_base and response_base != declared_base:
        logger.warning(
            "Attachment %r Content-Type mismatch (declared %r, response %r) — "
            "the URL may have expired and returned an error page. "
            "Attaching bytes using the declared type.",
            ref.filename,
            ref.content_type,
            response_type,
        )


async def _read_capped(
    resp: httpx.Response, ref: AttachmentRef, max_bytes: int
) -> bytes:
    body = bytearray()
    try:
        async for chunk in resp.aiter_bytes():
            body += chunk
            if len(body) > max_bytes:
                raise PermanentMailerError(
                    f"attachment '{ref.filename}' exceeds size limit "
                    f"({len(body)} > {max_bytes} bytes)"
                )
    except httpx.HTTPError as exc:
        raise TransientMailerError(
            f"attachment '{ref.filename}' read error: {exc}"
        ) from exc
    logger.debug("Attachment %r fetched (%d bytes)", ref.filename, len(body))
    return bytes(body)