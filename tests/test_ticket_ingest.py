import json
import tempfile
import unittest
from pathlib import Path

from fakes import HISTORY_PATH, FakeDrive, FakeTracker, make_lookup, ticket_document, work_package_url

from intake.chat_notifier import TeamsNotifier
from intake.errors import RemoteIOError
from intake.spreadsheet_sync import SpreadsheetSynchronizer
from intake.ticket_ingest import ARCHIVED, CREATED, FAILED_ISOLATED, TicketIngestor
from intake.update_queue import DurableUpdateQueue
from intake.work_items import WorkItemCreator


class TicketIngestorTestCase(unittest.TestCase):
  def setUp(self) -> None:
    self._tmp = tempfile.TemporaryDirectory()
    self.addCleanup(self._tmp.cleanup)
    tmp = Path(self._tmp.name)
    self.drive = FakeDrive()
    self.tracker = FakeTracker()
    self.queue = DurableUpdateQueue(tmp / "failed_updates_queue.json").open()
    self.synchronizer = SpreadsheetSynchronizer(
      self.drive,
      document_path=HISTORY_PATH,
      url_builder=work_package_url,
      sleep=lambda _: None,
    )
    self.creator = WorkItemCreator(self.tracker, make_lookup(tmp), self.drive)
    self.notifier = TeamsNotifier(self.drive, work_package_url)
    self.ingestor = TicketIngestor(self.drive, self.creator, self.synchronizer, self.queue, self.notifier)

  def test_ticket_is_created_recorded_and_archived(self) -> None:
    self.drive.add_ticket("f1", ticket_document())

    stats = self.ingestor.run_cycle()

    self.assertEqual(stats.archived, 1)
    self.assertEqual(self.drive.archived, ["f1"])
    self.assertEqual(self.drive.rows(), [(42, "Printer broken", "01/03/2024, 10:03:04", "WP#42")])
    self.assertEqual(self.drive.messages, [])
    self.assertEqual(len(self.queue), 0)

  def test_failing_file_does_not_block_the_others(self) -> None:
    self.drive.add_ticket("f1", ticket_document(subject="First"))
    self.drive.add_ticket("f2", ticket_document(subject="Second", projectName="Unknown"))
    self.drive.add_ticket("f3", b"{broken json")
    self.drive.add_ticket("f4", ticket_document(subject="Fourth"))

    stats = self.ingestor.run_cycle()

    self.assertEqual(self.drive.archived, ["f1", "f4"])
    self.assertEqual(stats.archived, 2)
    self.assertEqual(stats.failed, 2)
    self.assertEqual(len(stats.failures), 2)
    self.assertEqual([row[1] for row in self.drive.rows()], ["First", "Fourth"])

  def test_history_failure_queues_record_and_still_archives(self) -> None:
    self.drive.locked_uploads = -1
    self.drive.add_ticket("f1", ticket_document())

    stats = self.ingestor.run_cycle()

    self.assertEqual(stats.queued, 1)
    self.assertEqual(self.drive.archived, ["f1"])
    self.assertEqual([record.id for record in self.queue.pending()], [42])

    self.drive.locked_uploads = 0
    self.queue.drain_once(self.synchronizer)
    self.assertEqual(len(self.queue), 0)
    self.assertEqual([row[0] for row in self.drive.rows()], [42])

  def test_notification_sent_and_failures_ignored(self) -> None:
    self.drive.add_ticket("f1", ticket_document(chatID="19:chat-a"))
    self.ingestor.run_cycle()
    self.assertEqual(self.drive.messages[0][0], "19:chat-a")
    self.assertIn("ID: #42", self.drive.messages[0][1])

    self.drive.fail_messages = True
    self.drive.add_ticket("f2", ticket_document(chatID="19:chat-b"))
    stats = self.ingestor.run_cycle()
    self.assertEqual(stats.archived, 1)
    self.assertEqual(self.drive.archived, ["f1", "f2"])

  def test_queued_record_keeps_notification_message_id(self) -> None:
    self.drive.locked_uploads = -1
    self.drive.add_ticket("f1", ticket_document(chatID="19:chat-a"))

    self.ingestor.run_cycle()

    self.assertEqual(self.queue.pending()[0].message_id, "msg-1")
    saved = json.loads(self.queue.path.read_text())
    self.assertEqual(saved[0]["messageID"], "msg-1")
    self.assertEqual(saved[0]["channelID"], "19:chat-a")

  def test_archive_failure_leaves_file_for_next_cycle(self) -> None:
    self.tracker.fixed_id = 42
    ref = self.drive.add_ticket("f1", ticket_document())
    self.drive.fail_archive = {"f1"}

    self.assertEqual(self.ingestor.process_file(ref), CREATED)
    self.drive.fail_archive = set()
    self.assertEqual(self.ingestor.process_file(ref), ARCHIVED)

    self.assertEqual(len(self.tracker.bodies), 2)
    self.assertEqual(self.drive.rows(), [(42, "Printer broken", "01/03/2024, 10:03:04", "WP#42")])

  def test_unparseable_ticket_is_isolated(self) -> None:
    ref = self.drive.add_ticket("f1", {"projectName": "Facilities"})

    self.assertEqual(self.ingestor.process_file(ref), FAILED_ISOLATED)
    self.assertEqual(self.drive.archived, [])

  def test_listing_failure_ends_cycle_quietly(self) -> None:
    def broken_listing(folder_path):
      raise RemoteIOError("graph down", status_code=503)

    self.drive.list_ticket_files = broken_listing

    stats = self.ingestor.run_cycle()

    self.assertEqual(stats.listed, 0)
    self.assertEqual(len(stats.failures), 1)


if __name__ == "__main__":
  unittest.main()
