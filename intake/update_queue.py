"""Local retry queue for history-workbook merges that failed.

The queue is a set of ``WorkItemRecord`` keyed by work package id, mirrored to
a JSON file so pending merges survive restarts. Both the ingestion job and
the drain job touch it, so every read-modify-persist sequence runs under one
lock and the file is replaced atomically.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from intake.errors import QueuePersistenceError
from intake.models import PendingUpdate, WorkItemRecord

DEFAULT_MAX_ATTEMPTS = 288


class Synchronizer(Protocol):
    def sync(self, record: WorkItemRecord) -> bool:
        ...


class DurableUpdateQueue:
    def __init__(
        self,
        path: Path | str,
        *,
        dead_letter_path: Optional[Path | str] = None,
        max_attempts: Optional[int] = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.path = Path(path)
        self.dead_letter_path = Path(dead_letter_path) if dead_letter_path else self.path.with_name(
            f"{self.path.stem}_dead_letter.json"
        )
        self.max_attempts = max_attempts if max_attempts and max_attempts > 0 else None
        self.log = logging.getLogger(self.__class__.__name__)
        self._entries: "OrderedDict[int, PendingUpdate]" = OrderedDict()
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, work_package_id: object) -> bool:
        with self._lock:
            return work_package_id in self._entries

    def pending(self) -> List[WorkItemRecord]:
        with self._lock:
            return [entry.record for entry in self._entries.values()]

    def open(self) -> "DurableUpdateQueue":
        with self._lock:
            self._entries = OrderedDict()
            try:
                loaded = self._load()
            except QueuePersistenceError as exc:
                self.log.error("%s; starting with an empty retry queue", exc)
                loaded = []
            for entry in loaded:
                self._entries.setdefault(entry.record.id, entry)
        self.log.info("Loaded %s pending history updates from %s", len(self._entries), self.path)
        return self

    def close(self) -> None:
        self.flush()

    def flush(self) -> None:
        with self._lock:
            self._persist_or_log()

    def enqueue(self, record: WorkItemRecord, error: Optional[str] = None) -> bool:
        """Add ``record`` unless its id is already pending; returns True when added."""
        with self._lock:
            added = record.id not in self._entries
            if added:
                self._entries[record.id] = PendingUpdate(record=record, last_error=error)
                self.log.info("Queued work package #%s for a later history update", record.id)
            else:
                self.log.debug("Work package #%s already queued", record.id)
            self._persist_or_log()
            return added

    def drain_once(self, synchronizer: Synchronizer) -> Dict[str, int]:
        """Retry every pending record once; failures stay queued."""
        stats = {"succeeded": 0, "failed": 0, "dead_lettered": 0, "remaining": 0}
        if not self._drain_lock.acquire(blocking=False):
            self.log.info("Previous drain still running; skipping")
            with self._lock:
                stats["remaining"] = len(self._entries)
            return stats
        try:
            with self._lock:
                snapshot = [entry.record for entry in self._entries.values()]
            if not snapshot:
                return stats

            self.log.info("Retrying %s pending history updates", len(snapshot))
            removed = False
            for record in snapshot:
                try:
                    synchronizer.sync(record)
                except Exception as exc:
                    stats["failed"] += 1
                    self.log.error("Failed to process work package %s: %s", record.id, exc)
                    if self._record_failure(record.id, str(exc)):
                        stats["dead_lettered"] += 1
                        removed = True
                    continue
                with self._lock:
                    self._entries.pop(record.id, None)
                stats["succeeded"] += 1
                removed = True

            with self._lock:
                if removed:
                    self._persist_or_log()
                stats["remaining"] = len(self._entries)
            self.log.info(
                "Drain finished: %s recorded, %s failed, %s dead-lettered, %s remaining",
                stats["succeeded"],
                stats["failed"],
                stats["dead_lettered"],
                stats["remaining"],
            )
            return stats
        finally:
            self._drain_lock.release()

    def _record_failure(self, work_package_id: int, error: str) -> bool:
        with self._lock:
            entry = self._entries.get(work_package_id)
            if entry is None:
                return False
            entry.attempts += 1
            entry.last_error = error
            if self.max_attempts is None or entry.attempts < self.max_attempts:
                return False
            try:
                self._append_dead_letter(entry)
            except QueuePersistenceError as exc:
                self.log.error("%s; keeping work package #%s queued", exc, work_package_id)
                return False
            del self._entries[work_package_id]
            self.log.error(
                "Work package #%s failed %s history updates; moved to %s",
                work_package_id,
                entry.attempts,
                self.dead_letter_path,
            )
            return True

    def _load(self) -> List[PendingUpdate]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write_json(self.path, [])
            return []
        except OSError as exc:
            raise QueuePersistenceError(f"Failed to read retry queue {self.path}: {exc}") from exc

        if not text.strip():
            return []
        try:
            raw = json.loads(text)
            if not isinstance(raw, list):
                raise ValueError("expected a JSON list")
            return [PendingUpdate.from_snapshot(item) for item in raw]
        except (ValueError, TypeError) as exc:
            self._preserve_corrupt()
            raise QueuePersistenceError(f"Malformed retry queue {self.path}: {exc}") from exc

    def _preserve_corrupt(self) -> None:
        backup = self.path.with_name(self.path.name + ".corrupt")
        try:
            shutil.copyfile(self.path, backup)
            self.log.error("Copied unreadable retry queue to %s for inspection", backup)
        except OSError as exc:
            self.log.error("Could not copy unreadable retry queue %s: %s", self.path, exc)

    def _persist_or_log(self) -> None:
        try:
            self._write_json(self.path, [entry.to_snapshot() for entry in self._entries.values()])
        except QueuePersistenceError as exc:
            self.log.error("%s; continuing with in-memory queue", exc)

    def _append_dead_letter(self, entry: PendingUpdate) -> None:
        existing: List[Any] = []
        if self.dead_letter_path.exists():
            try:
                existing = json.loads(self.dead_letter_path.read_text(encoding="utf-8") or "[]")
            except (OSError, ValueError) as exc:
                raise QueuePersistenceError(f"Failed to read dead-letter file {self.dead_letter_path}: {exc}") from exc
            if not isinstance(existing, list):
                raise QueuePersistenceError(f"Dead-letter file {self.dead_letter_path} is not a JSON list")
        snapshot = entry.to_snapshot()
        snapshot["deadLetteredAt"] = datetime.now(timezone.utc).isoformat()
        existing.append(snapshot)
        self._write_json(self.dead_letter_path, existing)

    @staticmethod
    def _write_json(path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, ensure_ascii=False, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise QueuePersistenceError(f"Failed to write {path}: {exc}") from exc
