# anvil-notify

Building blocks for a transactional email notification service, written for
asyncio.

- **Messages** (`anvil_notify.message`): `EmailMessage`, `MailboxRef` and
  `ResolvedAttachment` describe a rendered email ready for delivery, with To
  (including extra To addresses for group sends), CC, BCC and attachments.
  Each has `to_dict()` and `from_dict()`.
- **Templates** (`anvil_notify.template`): Jinja2 rendering with strict
  undefined variables. `render_template` inserts values verbatim (subjects,
  plain-text bodies); `render_html_template` HTML-escapes every
  `{{ variable }}` unless it is marked `| safe`.
- **Attachments** (`anvil_notify.fetcher`): `AttachmentRef` points at a file by
  URL; `fetch_attachments` validates every reference first, then downloads all of
  them concurrently with an `httpx.AsyncClient`, each with its own retry budget
  and a per-file size cap (`MAX_ATTACHMENT_BYTES`, 10 MiB, by default).
- **Delivery** (`anvil_notify.sender`, `anvil_notify.webhook`,
  `anvil_notify.registry`): `EmailSender` is the abstract backend interface;
  `WebhookSender` posts the message as JSON (attachments base64-encoded, body
  built by `build_webhook_body`). `SenderRegistry` maps named sender accounts to
  senders.
- **Outbox** (`anvil_notify.outbox_event`, `anvil_notify.outbox_worker`):
  `promote_recipients` and `build_event` turn rows of a business service's outbox
  table into notification events; `OutboxWorker` polls the outbox, publishes
  pending rows, records failures and reaps rows left stuck in progress.

## Errors

Delivery and rendering failures are raised as subclasses of
`anvil_notify.errors.AppError`:

| Exception               | Meaning                                                   | Retry? |
|-------------------------|-----------------------------------------------------------|--------|
| `PermanentMailerError`  | 4xx response, oversize or invalid attachment              | no     |
| `TransientMailerError`  | network error, timeout, 5xx response                      | yes    |
| `RateLimitedError`      | HTTP 429 from a webhook or file server                    | yes    |
| `TemplateError`         | template fails to parse or references a missing variable  | no     |

`AppError.is_permanent_mailer()` is true only for `PermanentMailerError`.

`AttachmentRef.validate` raises `ValueError`; `fetch_attachments` turns that into
`PermanentMailerError` before making any request. `build_event` raises
`ValueError` when the recipients field of an outbox payload is malformed.

## Rendering templates

```python
from anvil_notify.template import render_html_template, render_template

payload = {"name": "Alice", "orderId": "ORD-1", "amount": "42.00"}

subject = render_template("Order {{ orderId }} confirmed", payload)
# "Order ORD-1 confirmed"

html = render_html_template("<p>{{ company }}</p>", {"company": "Acme & Sons"})
# "<p>Acme &amp; Sons</p>"
```

A variable missing from the payload raises `TemplateError` rather than rendering
an empty string.

## Fetching attachments

```python
from datetime import datetime, timezone

import httpx

from anvil_notify.fetcher import AttachmentRef, fetch_attachments

refs = [
    AttachmentRef(
        url="https://files.example.com/invoice.pdf",
        filename="invoice.pdf",
        content_type="application/pdf",
        max_age_secs=3600,
    )
]

async with httpx.AsyncClient(timeout=30) as client:
    attachments = await fetch_attachments(client, refs, datetime.now(timezone.utc))
```

Results come back in the order of `refs`. A 4xx response or an oversize body is
permanent; 5xx, 429 and network errors are retried up to three times with delays
of 1 s, 2 s and 4 s. If several fetches fail, a retryable error is raised when
there is one, so the caller can requeue. A `fetch_token` is sent as a bearer
token.

## Sending through a webhook

```python
from anvil_notify.webhook import WebhookConfig, WebhookSender

sender = WebhookSender(WebhookConfig(url="https://hooks.example.com/mail", auth_token="token"))
await sender.send(message)
await sender.aclose()
```

Pass an existing `httpx.AsyncClient` as the second argument to share its
connection pool; otherwise the sender creates one with a 30 s timeout and closes
it in `aclose()`. Error response bodies are cut to 512 bytes in the raised
message.

## Choosing a sender account

```python
from anvil_notify.registry import SenderRegistry

registry = SenderRegistry()
registry.register("transactional", transactional_sender)

sender = registry.resolve("transactional") or default_sender
```

`resolve` returns `None` for an absent or unknown name, so the caller falls back
to its default sender; an unknown name is logged as a warning.

## Outbox payloads

A business service writes email fields at the top level of its outbox payload:

```json
{
  "recipients": [{"email": "alice@example.com", "name": "Alice"}],
  "payload": {"orderId": "123"},
  "cc": [{"email": "cc@example.com"}],
  "sender_account": "transactional"
}
```

A legacy single `"recipient"` object is promoted to a one-element list; when both
keys are present, `"recipients"` wins:

```python
from anvil_notify.outbox_event import promote_recipients

promote_recipients({"recipient": {"email": "alice@example.com"}})
# [{"email": "alice@example.com"}]
```

`build_event(row)` takes an `OutboxRow` and returns a JSON-ready dict with the
email fields nested under `channel_overrides.email`, using the row's
`created_at` as the event timestamp. Optional fields that are absent or malformed
take their defaults (`send_mode` "individual", `group_retry_mode` "whole",
`retry_policy` "retry").

## Running the outbox worker

`OutboxWorker(config, store, publisher)` needs two objects you supply:

- an `OutboxStore` implementation (claim a batch of pending rows, mark a row
  published, record a publish failure, reset stale in-progress rows), and
- an `EventPublisher` implementation (connect and declare the exchange, publish a
  message and wait for confirmation, report whether it is still connected).

```python
import asyncio

from anvil_notify.outbox_worker import OutboxConfig, OutboxWorker

shutdown = asyncio.Event()
worker = OutboxWorker(OutboxConfig(), store, publisher)
await worker.run(shutdown)  # returns once shutdown is set
```

`run` reconnects after a failure with a fixed 2 s pause and runs a reaper every
half `stale_lock_timeout_secs`. While the outbox is empty the poll interval
doubles, up to eight times `poll_interval_ms` (see `next_idle_multiplier`). A row
is marked published only after the publisher confirms it; a failed row goes back
to pending until `max_publish_failures` is reached. `poll_once()` and
`reap_once()` run a single cycle each.

## What this package does not do

- It has no SMTP sender; `WebhookSender` is the only delivery backend included.
- It has no database or message-broker code: `OutboxStore` and `EventPublisher`
  are abstract and must be implemented against your own storage and broker.
- It has no queue consumer that renders and delivers events, and no command-line
  program or server; it is a library to be used from your own service.

## Running the tests

Install the package with its `test` extra and run pytest.