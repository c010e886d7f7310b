"""Turn a parsed ticket request into an OpenProject work package.

The creator resolves names through the lookup table, copies attachments from
OneDrive into OpenProject, and submits the work package. When OpenProject
rejects the responsible (accountable) or assignee user for lack of
permission, the request is retried once with those people written into the
note field instead of linked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from intake.errors import CreationError, InvalidReferenceError, RemoteIOError
from intake.lookup_table import LookupTable
from intake.models import TicketRequest, WorkItemRecord
from intake.openproject_client import is_permission_rejection, rejects_assignee


class Tracker(Protocol):
    def create_work_package(self, body: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def upload_attachment(self, file_name: str, content: bytes) -> Dict[str, Any]:
        ...


class BinarySource(Protocol):
    def download_binary(self, item_id: str) -> bytes:
        ...


@dataclass(frozen=True)
class UploadedAttachment:
    id: int
    name: str


@dataclass(frozen=True)
class ResolvedIds:
    project: int
    priority: int
    assignee: int
    responsible: Optional[int]


def markdown(raw: str) -> Dict[str, str]:
    return {"format": "markdown", "raw": raw, "html": ""}


def accountable_note(ticket: TicketRequest) -> str:
    return f"\n\n**Accountable:**\n{ticket.accountable_name}"


def attachment_markup(description: str, uploaded: List[UploadedAttachment]) -> str:
    if not uploaded:
        return description
    lines = [f'<img class="op-uc-image" src="/api/v3/attachments/{item.id}/content">' for item in uploaded]
    return description + "\n\n**Attachments:**\n" + "\n".join(lines) + "\n"


class WorkItemCreator:
    def __init__(
        self,
        tracker: Tracker,
        lookup: LookupTable,
        source: BinarySource,
        *,
        work_package_type_id: int = 6,
        release_date_field: str = "customField20",
        note_field: str = "customField16",
        default_priority_id: Optional[int] = None,
    ) -> None:
        self.tracker = tracker
        self.lookup = lookup
        self.source = source
        self.work_package_type_id = work_package_type_id
        self.release_date_field = release_date_field
        self.note_field = note_field
        self.default_priority_id = default_priority_id
        self.log = logging.getLogger(self.__class__.__name__)

    def create(self, ticket: TicketRequest) -> WorkItemRecord:
        ids = self.resolve_ids(ticket)
        uploaded = self.upload_attachments(ticket)
        description = attachment_markup(ticket.description, uploaded)

        body = self.build_body(ticket, ids, description, uploaded)
        try:
            payload = self.tracker.create_work_package(body)
        except RemoteIOError as exc:
            if not is_permission_rejection(exc):
                raise CreationError(f"Failed to create ticket: {exc}") from exc
            drop_assignee = rejects_assignee(exc)
            self.log.info(
                "OpenProject rejected a user for '%s'; retrying with note field (assignee dropped: %s)",
                ticket.subject,
                drop_assignee,
            )
            body = self.build_fallback_body(ticket, ids, description, uploaded, drop_assignee=drop_assignee)
            try:
                payload = self.tracker.create_work_package(body)
            except RemoteIOError as retry_exc:
                raise CreationError(f"Failed to create ticket on retry: {retry_exc}") from retry_exc

        try:
            record = WorkItemRecord.from_work_package(payload, ticket.type, channel_id=ticket.chat_id)
        except (TypeError, ValueError) as exc:
            raise CreationError(f"Unexpected work package response: {exc}") from exc
        self.log.info("Created work package #%s: %s", record.id, record.subject)
        return record

    def resolve_ids(self, ticket: TicketRequest) -> ResolvedIds:
        project_id = self.lookup.resolve("projects", ticket.project_name)
        assignee_id = self.lookup.resolve("users", ticket.assignee_name)
        priority_id = self.lookup.resolve("priorities", ticket.priority_name) or self.default_priority_id
        responsible_id = self.lookup.resolve("users", ticket.accountable_name)

        missing = []
        if not project_id:
            missing.append(f"project '{ticket.project_name}'")
        if not priority_id:
            missing.append(f"priority '{ticket.priority_name}'")
        if not assignee_id:
            missing.append(f"assignee '{ticket.assignee_name}'")
        if missing:
            raise InvalidReferenceError(f"Invalid {', '.join(missing)}")
        if ticket.accountable_name and not responsible_id:
            self.log.info("Accountable '%s' not found; recording as a note", ticket.accountable_name)

        return ResolvedIds(
            project=project_id,
            priority=priority_id,
            assignee=assignee_id,
            responsible=responsible_id,
        )

    def upload_attachments(self, ticket: TicketRequest) -> List[UploadedAttachment]:
        uploaded: List[UploadedAttachment] = []
        for attachment in ticket.attachments:
            try:
                content = self.source.download_binary(attachment.id)
                response = self.tracker.upload_attachment(attachment.name, content)
                uploaded.append(UploadedAttachment(id=int(response["id"]), name=attachment.name))
            except (RemoteIOError, KeyError, TypeError, ValueError) as exc:
                self.log.error("Error processing attachment %s: %s", attachment.name, exc)
        return uploaded

    def _base_body(
        self,
        ticket: TicketRequest,
        ids: ResolvedIds,
        description: str,
        uploaded: List[UploadedAttachment],
    ) -> Dict[str, Any]:
        return {
            "subject": ticket.subject,
            "_type": "WorkPackage",
            "description": markdown(description),
            self.release_date_field: ticket.release_date,
            "_links": {
                "project": {"href": f"/api/v3/projects/{ids.project}"},
                "assignee": {"href": f"/api/v3/users/{ids.assignee}"},
                "type": {"href": f"/api/v3/types/{self.work_package_type_id}"},
                "priority": {"href": f"/api/v3/priorities/{ids.priority}"},
                "attachments": [{"href": f"/api/v3/attachments/{item.id}"} for item in uploaded],
            },
        }

    def build_body(
        self,
        ticket: TicketRequest,
        ids: ResolvedIds,
        description: str,
        uploaded: List[UploadedAttachment],
    ) -> Dict[str, Any]:
        body = self._base_body(ticket, ids, description, uploaded)
        if ids.responsible:
            body["_links"]["responsible"] = {"href": f"/api/v3/users/{ids.responsible}"}
        elif ticket.accountable_name:
            body[self.note_field] = markdown(accountable_note(ticket))
        return body

    def build_fallback_body(
        self,
        ticket: TicketRequest,
        ids: ResolvedIds,
        description: str,
        uploaded: List[UploadedAttachment],
        *,
        drop_assignee: bool,
    ) -> Dict[str, Any]:
        body = self._base_body(ticket, ids, description, uploaded)
        note = accountable_note(ticket)
        if drop_assignee:
            del body["_links"]["assignee"]
            note += f"\n\n**Assignee:**\n{ticket.assignee_name}"
        body[self.note_field] = markdown(note)
        return body
