import threading
import unittest

from intake.scheduler import PeriodicJob


class PeriodicJobTestCase(unittest.TestCase):
  def test_run_once_reports_failure_without_raising(self) -> None:
    def boom() -> None:
      raise RuntimeError("boom")

    self.assertFalse(PeriodicJob("failing", 60, boom).run_once())
    self.assertTrue(PeriodicJob("ok", 60, lambda: None).run_once())

  def test_runs_repeatedly_until_stopped(self) -> None:
    ran = threading.Event()
    calls = []

    def tick() -> None:
      calls.append(1)
      if len(calls) >= 3:
        ran.set()

    job = PeriodicJob("tick", 0.01, tick)
    job.start()
    self.assertTrue(ran.wait(5))
    job.stop(timeout=5)

    self.assertFalse(job.running)
    self.assertGreaterEqual(len(calls), 3)

  def test_keeps_running_after_exceptions(self) -> None:
    done = threading.Event()
    calls = []

    def flaky() -> None:
      calls.append(1)
      if len(calls) == 1:
        raise RuntimeError("first run fails")
      done.set()

    job = PeriodicJob("flaky", 0.01, flaky, run_immediately=True)
    job.start()
    self.assertTrue(done.wait(5))
    job.stop(timeout=5)

    self.assertGreaterEqual(len(calls), 2)


if __name__ == "__main__":
  unittest.main()
