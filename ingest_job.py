#!/usr/bin/env python3
"""OneDrive ticket folder -> OpenProject intake daemon.

Polls the OneDrive drop folder for ticket documents, creates a work package
for each, records it in the shared history workbook and notifies Teams.
History merges that fail are kept in a local retry queue drained by a second
timer; a third timer refreshes the OpenProject name lookups.

Run ``python ingest_job.py --once`` for a single pass (cron style) or without
arguments to keep polling until SIGINT/SIGTERM.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from intake.chat_notifier import TeamsNotifier
from intake.config import Config, build_config, parse_args, setup_logging
from intake.errors import MissingCredentialsError
from intake.graph_client import GraphClient, GraphTokenProvider
from intake.lookup_table import LookupTable
from intake.openproject_client import OpenProjectClient
from intake.scheduler import PeriodicJob
from intake.spreadsheet_sync import SpreadsheetSynchronizer
from intake.ticket_ingest import TicketIngestor
from intake.update_queue import DurableUpdateQueue
from intake.work_items import WorkItemCreator

load_dotenv(override=False)

LOOKUP_CHECK_INTERVAL_SECONDS = 3600


@dataclass
class Components:
    lookup: LookupTable
    queue: DurableUpdateQueue
    synchronizer: SpreadsheetSynchronizer
    ingestor: TicketIngestor


def build_components(config: Config) -> Components:
    tokens = GraphTokenProvider(
        tenant_id=config.tenant_id,
        client_id=config.client_id,
        client_secret=config.client_secret,
        username=config.user_email,
        password=config.user_password,
    )
    graph = GraphClient(tokens, archive_path=config.archive_path)
    openproject = OpenProjectClient(config.openproject_url, config.openproject_token)

    lookup = LookupTable(
        openproject,
        cache_dir=config.data_dir,
        refresh_interval_seconds=int(config.lookup_refresh_hours * 3600),
    )
    queue = DurableUpdateQueue(
        config.queue_path,
        dead_letter_path=config.dead_letter_path,
        max_attempts=config.max_sync_attempts,
    )
    synchronizer = SpreadsheetSynchronizer(
        graph,
        document_path=config.history_path,
        url_builder=openproject.work_package_url,
        tz_name=config.timezone,
        lock_retry_delay=config.lock_retry_delay,
    )
    creator = WorkItemCreator(
        openproject,
        lookup,
        graph,
        work_package_type_id=config.work_package_type_id,
        release_date_field=config.release_date_field,
        note_field=config.note_field,
        default_priority_id=config.default_priority_id,
    )
    notifier = TeamsNotifier(graph, openproject.work_package_url, tz_name=config.timezone)
    ingestor = TicketIngestor(
        graph,
        creator,
        synchronizer,
        queue,
        notifier,
        folder_path=config.folder_path,
    )
    return Components(lookup=lookup, queue=queue, synchronizer=synchronizer, ingestor=ingestor)


def build_jobs(config: Config, components: Components) -> List[PeriodicJob]:
    return [
        PeriodicJob(
            "ticket-ingest",
            config.interval_minutes * 60,
            components.ingestor.run_cycle,
            run_immediately=True,
        ),
        PeriodicJob(
            "history-queue-drain",
            config.drain_interval_minutes * 60,
            lambda: components.queue.drain_once(components.synchronizer),
        ),
        PeriodicJob(
            "lookup-refresh",
            min(LOOKUP_CHECK_INTERVAL_SECONDS, config.lookup_refresh_hours * 3600),
            lambda: components.lookup.refresh(force=False),
        ),
    ]


def run_forever(config: Config, components: Components) -> None:
    log = logging.getLogger("ticket_intake")
    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        log.info("Received signal %s; shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    jobs = build_jobs(config, components)
    for job in jobs:
        job.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        for job in jobs:
            job.stop(timeout=30)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    log = logging.getLogger("ticket_intake")
    try:
        config = build_config(args)
    except MissingCredentialsError as exc:
        log.error("%s", exc)
        return 2

    log.info("Starting OneDrive ticket processor on %s", config.folder_path)
    components = build_components(config)
    components.queue.open()
    try:
        components.lookup.initialize()
        if config.once:
            components.ingestor.run_cycle()
            components.queue.drain_once(components.synchronizer)
        else:
            run_forever(config, components)
    except Exception as exc:  # pragma: no cover - top-level safety net
        log.exception("Ticket intake failed: %s", exc)
        return 1
    finally:
        components.queue.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
