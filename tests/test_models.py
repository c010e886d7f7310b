import json
import unittest

from intake.errors import TicketParseError
from intake.models import (
  AttachmentRef,
  PendingUpdate,
  WorkItemRecord,
  format_timestamp,
  normalize_ticket_type,
  parse_ticket,
  project_identifier,
)


class ParseTicketTestCase(unittest.TestCase):
  def test_parses_full_document(self) -> None:
    content = json.dumps({
      "subject": "  Printer broken ",
      "projectName": "Facilities",
      "description": "Paper jam",
      "priorityName": "High",
      "accountableName": "B. Lee",
      "assigneeName": "A. Tan",
      "releaseDate": "2024-03-15",
      "from": "someone@example.com",
      "type": "hardware",
      "chatID": "19:abc",
      "chatType": "oneOnOne",
      "attachments": [{"id": "att-1", "name": "photo.png"}],
    }).encode("utf-8")

    ticket = parse_ticket(content)

    self.assertEqual(ticket.subject, "Printer broken")
    self.assertEqual(ticket.requester, "someone@example.com")
    self.assertEqual(ticket.type, "hardware")
    self.assertEqual(ticket.chat_id, "19:abc")
    self.assertEqual(ticket.attachments, (AttachmentRef(id="att-1", name="photo.png"),))

  def test_defaults_for_optional_fields(self) -> None:
    ticket = parse_ticket('{"subject": "Desk", "projectName": "IT"}')

    self.assertEqual(ticket.type, "default")
    self.assertIsNone(ticket.release_date)
    self.assertIsNone(ticket.chat_id)
    self.assertEqual(ticket.attachments, ())

  def test_rejects_bad_documents(self) -> None:
    for content in (b"{oops", b"[1, 2]", b'{"projectName": "IT"}', b'{"subject": "x", "attachments": "a.png"}'):
      with self.subTest(content=content):
        with self.assertRaises(TicketParseError):
          parse_ticket(content)

  def test_ticket_type_is_a_valid_worksheet_title(self) -> None:
    ticket = parse_ticket('{"subject": "Laptop", "type": "Hardware/Software [new]"}')

    self.assertEqual(ticket.type, "HardwareSoftware new")
    self.assertEqual(normalize_ticket_type("x" * 40), "x" * 31)
    self.assertEqual(normalize_ticket_type("???"), "default")
    self.assertEqual(normalize_ticket_type(None), "default")
    self.assertEqual(WorkItemRecord.from_snapshot({"id": 1, "type": "a:b"}).type, "ab")

  def test_byte_order_mark_is_accepted(self) -> None:
    ticket = parse_ticket(b'\xef\xbb\xbf{"subject": "BOM"}')

    self.assertEqual(ticket.subject, "BOM")


class WorkItemRecordTestCase(unittest.TestCase):
  def test_project_identifier_from_embedded_or_link(self) -> None:
    self.assertEqual(project_identifier({"_embedded": {"project": {"identifier": "it"}}}), "it")
    self.assertEqual(project_identifier({"_links": {"project": {"href": "/api/v3/projects/facilities"}}}), "facilities")
    self.assertIsNone(project_identifier({}))

  def test_from_work_package_requires_id(self) -> None:
    with self.assertRaises(ValueError):
      WorkItemRecord.from_work_package({"subject": "x"})

  def test_pending_update_snapshot_roundtrip_keeps_attempts(self) -> None:
    record = WorkItemRecord(id=5, subject="S", created_at="2024-01-01T00:00:00Z", project="it", channel_id="19:c")
    pending = PendingUpdate(record=record, attempts=3, last_error="locked")

    restored = PendingUpdate.from_snapshot(pending.to_snapshot())

    self.assertEqual(restored.record, record)
    self.assertEqual(restored.attempts, 3)
    self.assertEqual(restored.last_error, "locked")


class FormatTimestampTestCase(unittest.TestCase):
  def test_renders_in_singapore_time(self) -> None:
    self.assertEqual(format_timestamp("2024-03-01T18:30:00Z"), "02/03/2024, 02:30:00")

  def test_other_zone_and_bad_input(self) -> None:
    self.assertEqual(format_timestamp("2024-03-01T18:30:00Z", "UTC"), "01/03/2024, 18:30:00")
    self.assertEqual(format_timestamp("yesterday"), "yesterday")
    self.assertEqual(format_timestamp(None), "")


if __name__ == "__main__":
  unittest.main()
