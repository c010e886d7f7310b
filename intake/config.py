from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from intake.errors import MissingCredentialsError

DEFAULT_FOLDER_PATH = "/new-ticket"
DEFAULT_ARCHIVE_PATH = "/new-ticket/archive"
DEFAULT_HISTORY_PATH = "/history-openproject.xlsx"
DEFAULT_DATA_DIR = "json"
QUEUE_FILE_NAME = "failed_updates_queue.json"
DEAD_LETTER_FILE_NAME = "failed_updates_dead_letter.json"


@dataclass
class Config:
    openproject_url: str
    openproject_token: str
    tenant_id: str
    client_id: str
    client_secret: str
    user_email: str
    user_password: str
    folder_path: str
    archive_path: str
    history_path: str
    data_dir: Path
    interval_minutes: float
    drain_interval_minutes: float
    lookup_refresh_hours: float
    work_package_type_id: int
    release_date_field: str
    note_field: str
    default_priority_id: Optional[int]
    timezone: str
    lock_retry_delay: float
    max_sync_attempts: int
    log_level: str
    once: bool

    @property
    def queue_path(self) -> Path:
        return self.data_dir / QUEUE_FILE_NAME

    @property
    def dead_letter_path(self) -> Path:
        return self.data_dir / DEAD_LETTER_FILE_NAME


def _required_env() -> Dict[str, str]:
    names = (
        "OPENPROJECT_URL",
        "OPENPROJECT_TOKEN",
        "MICROSOFT_TENANT_ID",
        "MICROSOFT_CLIENT_ID",
        "MICROSOFT_CLIENT_SECRET",
        "MICROSOFT_USER_EMAIL",
        "MICROSOFT_USER_PASSWORD",
    )
    values = {name: os.getenv(name) or "" for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise MissingCredentialsError(f"Missing credentials: {', '.join(missing)}")
    return values


def _env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise SystemExit(f"Invalid number for {name}: '{raw}'") from exc
    return max(minimum, value)


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise SystemExit(f"Invalid integer for {name}: '{raw}'") from exc


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create OpenProject work packages from OneDrive ticket files"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single ingestion cycle and queue drain, then exit",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("INTAKE_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    env = _required_env()
    return Config(
        openproject_url=env["OPENPROJECT_URL"].rstrip("/"),
        openproject_token=env["OPENPROJECT_TOKEN"],
        tenant_id=env["MICROSOFT_TENANT_ID"],
        client_id=env["MICROSOFT_CLIENT_ID"],
        client_secret=env["MICROSOFT_CLIENT_SECRET"],
        user_email=env["MICROSOFT_USER_EMAIL"],
        user_password=env["MICROSOFT_USER_PASSWORD"],
        folder_path=os.getenv("ONEDRIVE_FOLDER_PATH") or DEFAULT_FOLDER_PATH,
        archive_path=os.getenv("ONEDRIVE_ARCHIVE_PATH") or DEFAULT_ARCHIVE_PATH,
        history_path=os.getenv("HISTORY_WORKBOOK_PATH") or DEFAULT_HISTORY_PATH,
        data_dir=Path(os.getenv("INTAKE_DATA_DIR") or DEFAULT_DATA_DIR),
        interval_minutes=_env_float("INTERVAL_CHECK", 1.0, 0.1),
        drain_interval_minutes=_env_float("QUEUE_DRAIN_INTERVAL", 5.0, 0.1),
        lookup_refresh_hours=_env_float("LOOKUP_REFRESH_HOURS", 24.0, 0.1),
        work_package_type_id=_env_int("WORK_PACKAGE_TYPE_ID", 6) or 6,
        release_date_field=os.getenv("RELEASE_DATE_FIELD") or "customField20",
        note_field=os.getenv("NOTE_FIELD") or "customField16",
        default_priority_id=_env_int("DEFAULT_PRIORITY_ID", None),
        timezone=os.getenv("REPORT_TIMEZONE") or "Asia/Singapore",
        lock_retry_delay=_env_float("SYNC_LOCK_RETRY_DELAY", 10.0, 0.0),
        max_sync_attempts=_env_int("SYNC_MAX_ATTEMPTS", 288) or 0,
        log_level=args.log_level,
        once=bool(args.once),
    )


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
