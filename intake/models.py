"""Data carried between the OneDrive reader, OpenProject and the history workbook.

``TicketRequest`` is the parsed drop-folder document and lives for a single
ingestion pass. ``WorkItemRecord`` is the small projection of a created work
package that the history workbook and the retry queue need; it is the only
thing that outlives the pass.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from dateutil import parser as dt_parser
from dateutil import tz

from intake.errors import TicketParseError

DEFAULT_TICKET_TYPE = "default"
DISPLAY_DATE_FORMAT = "%d/%m/%Y, %H:%M:%S"
PROJECT_HREF_PATTERN = re.compile(r"/projects/([^/]+)/?$")
# Characters Excel refuses in worksheet titles, and its title length limit.
INVALID_SHEET_TITLE_CHARS = re.compile(r"[\\/?*\[\]:]")
MAX_SHEET_TITLE_LENGTH = 31


@dataclass(frozen=True)
class FileRef:
    id: str
    name: str


@dataclass(frozen=True)
class AttachmentRef:
    id: str
    name: str


@dataclass(frozen=True)
class TicketRequest:
    subject: str
    project_name: str
    description: str = ""
    priority_name: str = ""
    accountable_name: str = ""
    assignee_name: str = ""
    release_date: Optional[str] = None
    requester: Optional[str] = None
    type: str = DEFAULT_TICKET_TYPE
    attachments: Tuple[AttachmentRef, ...] = ()
    chat_id: Optional[str] = None
    chat_type: Optional[str] = None


@dataclass
class WorkItemRecord:
    id: int
    subject: str
    created_at: Optional[str]
    project: Optional[str]
    type: str = DEFAULT_TICKET_TYPE
    message_id: Optional[str] = None
    channel_id: Optional[str] = None

    @classmethod
    def from_work_package(
        cls,
        payload: Mapping[str, Any],
        ticket_type: Optional[str] = None,
        *,
        channel_id: Optional[str] = None,
    ) -> "WorkItemRecord":
        work_package_id = payload.get("id")
        if work_package_id is None:
            raise ValueError("Work package response has no id")
        return cls(
            id=int(work_package_id),
            subject=str(payload.get("subject") or ""),
            created_at=payload.get("createdAt"),
            project=project_identifier(payload),
            type=normalize_ticket_type(ticket_type),
            channel_id=channel_id,
        )

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "createdAt": self.created_at,
            "project": self.project,
            "messageID": self.message_id,
            "type": self.type,
            "channelID": self.channel_id,
        }

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "WorkItemRecord":
        if not isinstance(data, Mapping) or data.get("id") is None:
            raise ValueError(f"Queue entry without an id: {data!r}")
        return cls(
            id=int(data["id"]),
            subject=str(data.get("subject") or ""),
            created_at=data.get("createdAt"),
            project=data.get("project"),
            type=normalize_ticket_type(data.get("type")),
            message_id=data.get("messageID"),
            channel_id=data.get("channelID"),
        )


@dataclass
class PendingUpdate:
    record: WorkItemRecord
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_snapshot(self) -> Dict[str, Any]:
        data = self.record.to_snapshot()
        data["attempts"] = self.attempts
        data["enqueuedAt"] = self.enqueued_at
        if self.last_error:
            data["lastError"] = self.last_error
        return data

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "PendingUpdate":
        record = WorkItemRecord.from_snapshot(data)
        return cls(
            record=record,
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("lastError"),
            enqueued_at=data.get("enqueuedAt") or datetime.now(timezone.utc).isoformat(),
        )


def project_identifier(payload: Mapping[str, Any]) -> Optional[str]:
    embedded = payload.get("_embedded") or {}
    project = embedded.get("project") or {}
    identifier = project.get("identifier")
    if identifier:
        return str(identifier)
    links = payload.get("_links") or {}
    href = (links.get("project") or {}).get("href") or ""
    match = PROJECT_HREF_PATTERN.search(href)
    if match:
        return match.group(1)
    return payload.get("project")


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> Optional[str]:
    text = _text(value)
    return text or None


def normalize_ticket_type(value: Any) -> str:
    """Ticket type as a usable worksheet title; falls back to ``default``."""
    title = INVALID_SHEET_TITLE_CHARS.sub("", _text(value))
    title = title[:MAX_SHEET_TITLE_LENGTH].strip().strip("'")
    return title or DEFAULT_TICKET_TYPE


def parse_attachments(raw: Any) -> Tuple[AttachmentRef, ...]:
    if not raw:
        return ()
    if not isinstance(raw, list):
        raise TicketParseError("attachments must be a list")
    refs: List[AttachmentRef] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise TicketParseError(f"Invalid attachment entry: {entry!r}")
        attachment_id = _text(entry.get("id"))
        if not attachment_id:
            raise TicketParseError(f"Attachment without id: {entry!r}")
        refs.append(AttachmentRef(id=attachment_id, name=_text(entry.get("name")) or attachment_id))
    return tuple(refs)


def parse_ticket(content: Union[bytes, str, Mapping[str, Any]]) -> TicketRequest:
    if isinstance(content, (bytes, bytearray)):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise TicketParseError("Ticket document is not UTF-8") from exc
    if isinstance(content, str):
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise TicketParseError(f"Ticket document is not valid JSON: {exc}") from exc
    else:
        data = content
    if not isinstance(data, Mapping):
        raise TicketParseError("Ticket document must be a JSON object")

    subject = _text(data.get("subject"))
    if not subject:
        raise TicketParseError("Ticket document has no subject")

    return TicketRequest(
        subject=subject,
        project_name=_text(data.get("projectName")),
        description=str(data.get("description") or ""),
        priority_name=_text(data.get("priorityName")),
        accountable_name=_text(data.get("accountableName")),
        assignee_name=_text(data.get("assigneeName")),
        release_date=_optional_text(data.get("releaseDate")),
        requester=_optional_text(data.get("from")),
        type=normalize_ticket_type(data.get("type")),
        attachments=parse_attachments(data.get("attachments")),
        chat_id=_optional_text(data.get("chatID")),
        chat_type=_optional_text(data.get("chatType")),
    )


def format_timestamp(value: Optional[str], tz_name: str = "Asia/Singapore") -> str:
    """Render an ISO timestamp as ``DD/MM/YYYY, HH:MM:SS`` in ``tz_name``."""
    if not value:
        return ""
    try:
        dt = dt_parser.isoparse(value)
    except (ValueError, OverflowError):
        return str(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    zone = tz.gettz(tz_name) or timezone.utc
    return dt.astimezone(zone).strftime(DISPLAY_DATE_FORMAT)
