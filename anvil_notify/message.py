"""Rendered, ready-to-send email messages and their parts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
from uuid import UUID


@dataclass
class MailboxRef:
    """A mailbox used in To (extra), Cc and Bcc lists."""

    email: str
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"email": self.email, "name": self.name}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MailboxRef:
        return cls(email=data["email"], name=data.get("name"))


@dataclass
class ResolvedAttachment:
    """A file attachment whose bytes have already been fetched."""

    filename: str
    content_type: str
    data: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "data": list(self.data),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResolvedAttachment:
        return cls(
            filename=data["filename"],
            content_type=data["content_type"],
            data=bytes(data["data"]),
        )


@dataclass(kw_only=True)
class EmailMessage:
    """A rendered email consumed by every sending backend.

    ``to_extra`` holds additional To: addresses for group sends; when it is
    non-empty all addresses, ``to_email`` included, share a single To: header.
    CC and BCC recipients are not tracked, filtered or retried on their own.
    """

    event_id: UUID
    to_email: str
    subject: str
    body_html: str
    body_text: str
    to_name: str | None = None
    to_extra: list[MailboxRef] = field(default_factory=list)
    from_email_override: str | None = None
    from_name_override: str | None = None
    attachments: list[ResolvedAttachment] = field(default_factory=list)
    cc: list[MailboxRef] = field(default_factory=list)
    bcc: list[MailboxRef] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "to_email": self.to_email,
            "to_name": self.to_name,
            "to_extra": [m.to_dict() for m in self.to_extra],
            "subject": self.subject,
            "body_html": self.body_html,
            "body_text": self.body_text,
            "from_email_override": self.from_email_override,
            "from_name_override": self.from_name_override,
            "attachments": [a.to_dict() for a in self.attachments],
            "cc": [m.to_dict() for m in self.cc],
            "bcc": [m.to_dict() for m in self.bcc],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EmailMessage:
        """Build a message from its dict form; list fields may be absent."""
        return cls(
            event_id=UUID(str(data["event_id"])),
            to_email=data["to_email"],
            to_name=data.get("to_name"),
            to_extra=[MailboxRef.from_dict(m) for m in data.get("to_extra", [])],
            subject=data["subject"],
            body_html=data["body_html"],
            body_text=data["body_text"],
            from_email_override=data.get("from_email_override"),
            from_name_override=data.get("from_name_override"),
            attachments=[
                ResolvedAttachment.from_dict(a) for a in data.get("attachments", [])
            ],
            cc=[MailboxRef.from_dict(m) for m in data.get("cc", [])],
            bcc=[MailboxRef.from_dict(m) for m in data.get("bcc", [])],
        )