import unittest

from fakes import CREATED_AT, HISTORY_PATH, FakeDrive, work_package_url

from intake.errors import SyncError
from intake.models import WorkItemRecord
from intake.spreadsheet_sync import SpreadsheetSynchronizer, merge_record, new_workbook, serialize


def _record(work_package_id: int = 42, subject: str = "Printer broken", ticket_type: str = "default") -> WorkItemRecord:
  return WorkItemRecord(
    id=work_package_id,
    subject=subject,
    created_at=CREATED_AT,
    project="facilities",
    type=ticket_type,
  )


class SpreadsheetSyncTestCase(unittest.TestCase):
  def setUp(self) -> None:
    self.drive = FakeDrive()
    self.sleeps = []
    self.sync = SpreadsheetSynchronizer(
      self.drive,
      document_path=HISTORY_PATH,
      url_builder=work_package_url,
      lock_retry_delay=2.5,
      sleep=self.sleeps.append,
    )

  def test_creates_workbook_with_typed_worksheet_and_linked_row(self) -> None:
    self.assertTrue(self.sync.sync(_record()))

    workbook = self.drive.workbook()
    self.assertEqual(workbook.sheetnames, ["default"])
    worksheet = workbook["default"]
    self.assertEqual([cell.value for cell in worksheet[1]], ["ID", "Subject", "Created on", "Link"])
    self.assertTrue(worksheet["A1"].font.b)
    self.assertEqual(
      [cell.value for cell in worksheet[2]],
      [42, "Printer broken", "01/03/2024, 10:03:04", "WP#42"],
    )
    self.assertEqual(worksheet["D2"].hyperlink.target, work_package_url("facilities", 42))

  def test_same_record_twice_leaves_one_row(self) -> None:
    self.assertTrue(self.sync.sync(_record()))
    self.assertFalse(self.sync.sync(_record()))

    self.assertEqual(len(self.drive.rows()), 1)
    self.assertEqual(self.drive.uploads, 1)

  def test_rows_added_by_hand_are_respected(self) -> None:
    workbook = new_workbook()
    merge_record(workbook, _record(7, "Added by hand"), work_package_url("facilities", 7))
    worksheet = workbook["default"]
    worksheet.append(["42", "typed in as text", "", ""])
    self.drive.documents[HISTORY_PATH] = serialize(workbook)
    self.drive.item_ids[HISTORY_PATH] = "item-1"

    self.assertFalse(self.sync.sync(_record(42)))
    self.assertEqual(self.drive.uploads, 0)

  def test_appends_to_existing_workbook_by_type(self) -> None:
    self.sync.sync(_record(42))
    self.sync.sync(_record(43, "Laptop request", ticket_type="hardware"))
    self.sync.sync(_record(44, "Desk lamp"))

    self.assertEqual(self.drive.workbook().sheetnames, ["default", "hardware"])
    self.assertEqual([row[0] for row in self.drive.rows("default")], [42, 44])
    self.assertEqual([row[0] for row in self.drive.rows("hardware")], [43])

  def test_types_differing_only_in_case_share_a_worksheet(self) -> None:
    self.sync.sync(_record(1, ticket_type="Bug"))
    self.assertTrue(self.sync.sync(_record(42, ticket_type="bug")))
    self.assertFalse(self.sync.sync(_record(42, ticket_type="bug")))
    self.sync.sync(_record(43, ticket_type="BUG"))

    self.assertEqual(self.drive.workbook().sheetnames, ["Bug"])
    self.assertEqual([row[0] for row in self.drive.rows("Bug")], [1, 42, 43])

  def test_unusable_sheet_titles_are_cleaned(self) -> None:
    long_type = "Facilities maintenance and repairs"

    self.assertTrue(self.sync.sync(_record(42, ticket_type="Hardware/Software")))
    self.assertTrue(self.sync.sync(_record(43, ticket_type=long_type)))
    self.assertFalse(self.sync.sync(_record(42, ticket_type="Hardware/Software")))

    self.assertEqual(self.drive.workbook().sheetnames, ["HardwareSoftware", long_type[:31]])
    self.assertEqual([row[0] for row in self.drive.rows("HardwareSoftware")], [42])

  def test_lock_contention_gives_up_after_five_uploads(self) -> None:
    self.drive.locked_uploads = -1

    with self.assertRaises(SyncError):
      self.sync.sync(_record())

    self.assertEqual(self.drive.upload_attempts, 5)
    self.assertEqual(self.sleeps, [2.5, 2.5, 2.5, 2.5])
    self.assertNotIn(HISTORY_PATH, self.drive.documents)

  def test_lock_released_before_retries_run_out(self) -> None:
    self.drive.locked_uploads = 2

    self.assertTrue(self.sync.sync(_record()))

    self.assertEqual(self.drive.upload_attempts, 3)
    self.assertEqual(len(self.drive.rows()), 1)

  def test_remote_failures_surface_as_sync_error(self) -> None:
    self.drive.fail_get = True

    with self.assertRaises(SyncError):
      self.sync.sync(_record())

  def test_corrupt_workbook_surfaces_as_sync_error(self) -> None:
    self.drive.documents[HISTORY_PATH] = b"not a workbook"
    self.drive.item_ids[HISTORY_PATH] = "item-1"

    with self.assertRaises(SyncError):
      self.sync.sync(_record())


if __name__ == "__main__":
  unittest.main()
