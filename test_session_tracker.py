#!/usr/bin/env python3
"""Tests for per-session schema tracking."""

import threading
import time
import unittest

from odata_gateway_lib.session_tracker import SessionTracker


class TestSessionTracker(unittest.TestCase):

    def setUp(self):
        self.tracker = SessionTracker(ttl_seconds=3600)

    def test_unknown_session_created_lazily(self):
        self.assertEqual(self.tracker.session_count(), 0)
        self.assertFalse(self.tracker.has_schema_been_provided("s1", "businesspartner"))
        self.assertEqual(self.tracker.session_count(), 1)

    def test_mark_is_per_service(self):
        self.tracker.mark_schema_as_provided("s1", "businesspartner")
        self.assertTrue(self.tracker.has_schema_been_provided("s1", "businesspartner"))
        self.assertFalse(self.tracker.has_schema_been_provided("s1", "glaccount"))
        self.assertFalse(self.tracker.has_schema_been_provided("s2", "businesspartner"))

    def test_mark_is_idempotent(self):
        self.tracker.mark_schema_as_provided("s1", "businesspartner")
        self.tracker.mark_schema_as_provided("s1", "businesspartner")
        self.assertTrue(self.tracker.has_schema_been_provided("s1", "businesspartner"))

    def test_forget_session(self):
        self.tracker.mark_schema_as_provided("s1", "businesspartner")
        self.assertTrue(self.tracker.forget_session("s1"))
        self.assertFalse(self.tracker.forget_session("s1"))
        self.assertFalse(self.tracker.has_schema_been_provided("s1", "businesspartner"))

    def test_sweep_idle(self):
        self.tracker.mark_schema_as_provided("old", "businesspartner")
        self.tracker.mark_schema_as_provided("fresh", "businesspartner")
        self.tracker._sessions["old"].last_activity = time.time() - 7200

        self.assertEqual(self.tracker.sweep_idle(), 1)
        self.assertEqual(self.tracker.session_count(), 1)
        self.assertFalse(self.tracker.has_schema_been_provided("old", "businesspartner"))

    def test_touch_evicts_other_idle_sessions(self):
        self.tracker.mark_schema_as_provided("old", "businesspartner")
        self.tracker._sessions["old"].last_activity = time.time() - 7200
        self.tracker.has_schema_been_provided("new", "businesspartner")
        self.assertNotIn("old", self.tracker._sessions)

    def test_touch_refreshes_activity(self):
        self.tracker.mark_schema_as_provided("s1", "businesspartner")
        self.tracker._sessions["s1"].last_activity = time.time() - 3000
        self.assertTrue(self.tracker.has_schema_been_provided("s1", "businesspartner"))
        self.assertGreater(self.tracker._sessions["s1"].last_activity, time.time() - 5)

    def test_no_ttl_never_evicts(self):
        tracker = SessionTracker(ttl_seconds=None)
        tracker.mark_schema_as_provided("s1", "x")
        tracker._sessions["s1"].last_activity = 0
        tracker.has_schema_been_provided("s2", "x")
        self.assertEqual(tracker.sweep_idle(), 0)
        self.assertEqual(tracker.session_count(), 2)

    def test_concurrent_marks(self):
        def worker(n):
            for i in range(50):
                self.tracker.mark_schema_as_provided(f"s{n}", f"svc{i % 5}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.tracker.session_count(), 8)
        for n in range(8):
            self.assertTrue(self.tracker.has_schema_been_provided(f"s{n}", "svc4"))


if __name__ == "__main__":
    unittest.main()
