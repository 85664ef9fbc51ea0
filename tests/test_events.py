from __future__ import annotations

import unittest

from wsc.errors import DiagramMismatch, ReplacementNotFound
from wsc.events import EventChannel


class TestEventChannel(unittest.TestCase):
    def test_subscribers_receive_in_order_and_can_unsubscribe(self):
        channel = EventChannel()
        seen = []
        channel.subscribe(lambda notice: seen.append(("a", notice.kind)))
        unsubscribe = channel.subscribe(lambda notice: seen.append(("b", notice.kind)))
        channel.emit("edit-failed", "quota")
        unsubscribe()
        channel.emit("edit-discarded", "late", level="info")
        self.assertEqual(seen, [("a", "edit-failed"), ("b", "edit-failed"), ("a", "edit-discarded")])

    def test_failing_subscriber_does_not_stop_delivery(self):
        channel = EventChannel()
        seen = []

        def broken(notice):
            raise RuntimeError("subscriber bug")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        notice = channel.emit("render-failure", "bad source", diagram_id="diagram-0")
        self.assertEqual(seen, [notice])

    def test_report_uses_error_fields(self):
        channel = EventChannel()
        notice = channel.report(DiagramMismatch("diagram-2", "changed elsewhere"))
        self.assertEqual(notice.kind, "diagram-mismatch")
        self.assertEqual(notice.details, {"diagram_id": "diagram-2"})
        self.assertEqual(notice.message, "diagram-2: changed elsewhere")

        notice = channel.report(ReplacementNotFound("x" * 80))
        self.assertEqual(notice.kind, "replacement-not-found")
        self.assertTrue(notice.message.endswith("...'"))
        self.assertEqual(channel.kinds(), ["diagram-mismatch", "replacement-not-found"])
        self.assertEqual(notice.to_dict()["level"], "warning")


if __name__ == "__main__":
    unittest.main()
