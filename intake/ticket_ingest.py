"""OneDrive drop folder -> OpenProject ingestion cycle.

Each cycle lists the ``.json`` ticket documents in the drop folder and runs
them one at a time through: read, parse, create the work package, record it
in the history workbook (queueing the record when that fails), notify the
requester's Teams chat, and move the document to the archive folder.

A failure anywhere in one document's pipeline leaves that document where it
is, so it is picked up again on the next cycle, and the cycle moves on to the
next document. Documents are never processed in parallel: the history
workbook merge is a read-modify-write of a single remote file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from intake.errors import SyncError
from intake.models import FileRef, TicketRequest, WorkItemRecord, parse_ticket
from intake.update_queue import DurableUpdateQueue

ARCHIVED = "archived"
CREATED = "created"
FAILED_ISOLATED = "failed-isolated"


class TicketSource(Protocol):
    def list_ticket_files(self, folder_path: str) -> List[FileRef]:
        ...

    def read_file_content(self, file_ref: FileRef) -> bytes:
        ...

    def archive(self, file_ref: FileRef) -> None:
        ...


class Creator(Protocol):
    def create(self, ticket: TicketRequest) -> WorkItemRecord:
        ...


class Synchronizer(Protocol):
    def sync(self, record: WorkItemRecord) -> bool:
        ...


class Notifier(Protocol):
    def notify(self, record: WorkItemRecord, chat_id: str) -> Optional[str]:
        ...


@dataclass
class CycleStats:
    listed: int = 0
    archived: int = 0
    created_not_archived: int = 0
    queued: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)

    def log_failure(self, message: str) -> None:
        self.failures.append(message)


class TicketIngestor:
    def __init__(
        self,
        source: TicketSource,
        creator: Creator,
        synchronizer: Synchronizer,
        queue: DurableUpdateQueue,
        notifier: Optional[Notifier] = None,
        *,
        folder_path: str = "/new-ticket",
    ) -> None:
        self.source = source
        self.creator = creator
        self.synchronizer = synchronizer
        self.queue = queue
        self.notifier = notifier
        self.folder_path = folder_path
        self.log = logging.getLogger(self.__class__.__name__)

    def run_cycle(self) -> CycleStats:
        stats = CycleStats()
        try:
            files = self.source.list_ticket_files(self.folder_path)
        except Exception as exc:
            self.log.error("Error reading files from %s: %s", self.folder_path, exc)
            stats.log_failure(f"list {self.folder_path}: {exc}")
            return stats

        stats.listed = len(files)
        self.log.debug("Found %s ticket files in %s", len(files), self.folder_path)
        for file_ref in files:
            outcome = self.process_file(file_ref, stats)
            if outcome == ARCHIVED:
                stats.archived += 1
            elif outcome == CREATED:
                stats.created_not_archived += 1
            else:
                stats.failed += 1

        if files:
            self.log.info(
                "Ingestion cycle finished: %s archived, %s created but not archived, %s queued, %s failed",
                stats.archived,
                stats.created_not_archived,
                stats.queued,
                stats.failed,
            )
        for failure in stats.failures:
            self.log.warning(" - %s", failure)
        return stats

    def process_file(self, file_ref: FileRef, stats: Optional[CycleStats] = None) -> str:
        stats = stats if stats is not None else CycleStats()
        try:
            content = self.source.read_file_content(file_ref)
            ticket = parse_ticket(content)
            record = self.creator.create(ticket)
            self.log.info("Created ticket #%s from %s: %s", record.id, file_ref.name, record.subject)
        except Exception as exc:
            self.log.error("Error processing file %s: %s", file_ref.name, exc)
            stats.log_failure(f"{file_ref.name}: {exc}")
            return FAILED_ISOLATED

        self.record_history(record, stats)
        self.notify(ticket, record)

        try:
            self.source.archive(file_ref)
        except Exception as exc:
            self.log.error("Created #%s but could not archive %s: %s", record.id, file_ref.name, exc)
            stats.log_failure(f"archive {file_ref.name}: {exc}")
            return CREATED
        self.log.info("Moved %s to archive", file_ref.name)
        return ARCHIVED

    def record_history(self, record: WorkItemRecord, stats: CycleStats) -> None:
        try:
            self.synchronizer.sync(record)
            return
        except SyncError as exc:
            self.log.warning("History update for #%s failed, queueing: %s", record.id, exc)
            error = str(exc)
        except Exception as exc:
            self.log.exception("Unexpected history update failure for #%s, queueing", record.id)
            error = str(exc)
        self.queue.enqueue(record, error)
        stats.queued += 1

    def notify(self, ticket: TicketRequest, record: WorkItemRecord) -> None:
        if not ticket.chat_id or self.notifier is None:
            return
        try:
            record.message_id = self.notifier.notify(record, ticket.chat_id)
        except Exception as exc:
            self.log.error("Error posting notification for #%s: %s", record.id, exc)
            return
        # A queued record shares this object; persist its new message id.
        if record.message_id and record.id in self.queue:
            self.queue.flush()
