"""Idempotent merge of created work packages into the OneDrive history workbook.

Every merge downloads the current workbook, appends a row to the worksheet
named after the ticket type unless a row with the same work package id is
already there, and uploads the whole file again. The duplicate scan always
runs against the freshly downloaded copy because people edit the workbook by
hand between merges.

Only the upload is retried when OneDrive reports the file as locked; every
other failure surfaces as ``SyncError`` and the caller decides whether to
queue the record for a later attempt.
"""

from __future__ import annotations

import io
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from intake.errors import DocumentLockedError, SyncError
from intake.models import WorkItemRecord, format_timestamp, normalize_ticket_type

HEADER_COLUMNS = (
    ("ID", 10),
    ("Subject", 50),
    ("Created on", 20),
    ("Link", 50),
)
COLUMN_LETTERS = "ABCD"
ID_COLUMN = 1
LINK_COLUMN = 4
LINK_COLOR = "0563C1"
MAX_UPLOAD_ATTEMPTS = 5
DEFAULT_LOCK_RETRY_DELAY_SECONDS = 10.0


class DocumentStore(Protocol):
    def get_item(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    def download_item(self, item_id: str) -> bytes:
        ...

    def upload_new(self, path: str, data: bytes) -> Dict[str, Any]:
        ...

    def upload_existing(self, item_id: str, data: bytes) -> Dict[str, Any]:
        ...


def init_worksheet(worksheet: Worksheet) -> None:
    for index, (header, width) in enumerate(HEADER_COLUMNS, start=1):
        cell = worksheet.cell(row=1, column=index, value=header)
        cell.font = Font(bold=True)
        worksheet.column_dimensions[COLUMN_LETTERS[index - 1]].width = width


def find_worksheet(workbook: Workbook, title: str) -> Optional[Worksheet]:
    # openpyxl compares titles case-insensitively when naming new sheets.
    wanted = title.lower()
    return next((ws for ws in workbook.worksheets if ws.title.lower() == wanted), None)


def get_or_create_worksheet(workbook: Workbook, ticket_type: str) -> Worksheet:
    title = normalize_ticket_type(ticket_type)
    worksheet = find_worksheet(workbook, title)
    if worksheet is not None:
        return worksheet
    worksheet = workbook.create_sheet(title=title)
    init_worksheet(worksheet)
    return worksheet


def find_row(worksheet: Worksheet, work_package_id: int) -> Optional[int]:
    """Return the row number already holding ``work_package_id``, if any."""
    wanted = str(work_package_id)
    for row_number, (value,) in enumerate(
        worksheet.iter_rows(min_row=2, min_col=ID_COLUMN, max_col=ID_COLUMN, values_only=True),
        start=2,
    ):
        if value is None:
            continue
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if str(value).strip() == wanted:
            return row_number
    return None


def append_record(
    worksheet: Worksheet,
    record: WorkItemRecord,
    url: str,
    tz_name: str,
) -> int:
    worksheet.append([record.id, record.subject, format_timestamp(record.created_at, tz_name), url])
    row_number = worksheet.max_row
    link_cell = worksheet.cell(row=row_number, column=LINK_COLUMN)
    link_cell.value = f"WP#{record.id}"
    link_cell.hyperlink = url
    link_cell.font = Font(color=LINK_COLOR, underline="single")
    return row_number


def merge_record(
    workbook: Workbook,
    record: WorkItemRecord,
    url: str,
    tz_name: str = "Asia/Singapore",
) -> bool:
    """Add ``record`` to its worksheet; False when the id is already present."""
    worksheet = get_or_create_worksheet(workbook, record.type)
    existing = find_row(worksheet, record.id)
    if existing is not None:
        return False
    append_record(worksheet, record, url, tz_name)
    return True


def new_workbook() -> Workbook:
    workbook = Workbook()
    workbook.remove(workbook.active)
    return workbook


def serialize(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class SpreadsheetSynchronizer:
    def __init__(
        self,
        store: DocumentStore,
        *,
        document_path: str,
        url_builder: Callable[[Optional[str], int], str],
        tz_name: str = "Asia/Singapore",
        max_upload_attempts: int = MAX_UPLOAD_ATTEMPTS,
        lock_retry_delay: float = DEFAULT_LOCK_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.document_path = document_path
        self.url_builder = url_builder
        self.tz_name = tz_name
        self.max_upload_attempts = max(1, max_upload_attempts)
        self.lock_retry_delay = max(0.0, lock_retry_delay)
        self.sleep = sleep
        self.log = logging.getLogger(self.__class__.__name__)
        # Read-modify-write of one remote file: calls from the ingest and
        # drain jobs must not overlap.
        self._lock = threading.Lock()

    def sync(self, record: WorkItemRecord) -> bool:
        """Ensure exactly one history row exists for ``record``.

        Returns True when a row was appended, False when the work package was
        already recorded. Raises ``SyncError`` on any failure.
        """
        with self._lock:
            try:
                return self._sync_locked(record)
            except SyncError:
                raise
            except Exception as exc:
                raise SyncError(f"Failed to record work package #{record.id}: {exc}") from exc

    def _sync_locked(self, record: WorkItemRecord) -> bool:
        item = self.store.get_item(self.document_path)
        if item is None:
            self.log.info("History workbook %s not found; creating it", self.document_path)
            workbook = new_workbook()
            item_id = None
        else:
            item_id = str(item["id"])
            content = self.store.download_item(item_id)
            workbook = load_workbook(io.BytesIO(content))

        url = self.url_builder(record.project, record.id)
        if not merge_record(workbook, record, url, self.tz_name):
            self.log.debug("Work package #%s already in worksheet '%s'", record.id, record.type)
            return False

        self._upload(item_id, serialize(workbook), record)
        self.log.info("Added work package #%s to worksheet '%s'", record.id, record.type)
        return True

    def _upload(self, item_id: Optional[str], data: bytes, record: WorkItemRecord) -> None:
        for attempt in range(1, self.max_upload_attempts + 1):
            try:
                if item_id is None:
                    self.store.upload_new(self.document_path, data)
                else:
                    self.store.upload_existing(item_id, data)
                return
            except DocumentLockedError as exc:
                self.log.warning(
                    "History workbook locked while recording #%s (%s/%s): %s",
                    record.id,
                    attempt,
                    self.max_upload_attempts,
                    exc,
                )
                if attempt < self.max_upload_attempts:
                    self.sleep(self.lock_retry_delay)
        raise SyncError(
            f"History workbook still locked after {self.max_upload_attempts} attempts; "
            f"work package #{record.id} not recorded"
        )
