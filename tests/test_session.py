from __future__ import annotations

import asyncio
import unittest
from pathlib import Path

from wsc.codec import find_macro_spans, replace_at, segment_at
from wsc.events import EventChannel
from wsc.session import EditSession

REPO_ROOT = Path(__file__).resolve().parents[1]
SAMPLE_PAGE = REPO_ROOT / "tests" / "fixtures" / "sample_page.xml"
BROKEN_PAGE = '<p>a</p><ac:structured-macro ac:name="x"><p>b</p>'
LEAD_MARKUP = "<p>a&mdash;b<br /></p>\n<table><tbody><tr><td>x</td></tr></tbody></table>\n"
JIRA_MACRO = (
    '<ac:structured-macro ac:name="jira"><ac:parameter ac:name="key">OPS-1</ac:parameter>'
    "</ac:structured-macro>"
)
EDITED_PAGE = LEAD_MARKUP + JIRA_MACRO + "<p>Edit this sentence please.</p>"


def sample_text() -> str:
    return SAMPLE_PAGE.read_text(encoding="utf-8")


def macro_raws(text: str) -> list:
    return [text[start:end] for start, end in find_macro_spans(text)]


def fake_renderer(code: str) -> str:
    if "sequenceDiagram" in code:
        raise ValueError("Parse error on line 2")
    return f"<svg data-len='{len(code)}'></svg>"


class TestEditSessionCommit(unittest.TestCase):
    maxDiff = None

    def test_rich_commit_keeps_macros(self):
        text = sample_text()
        session = EditSession(text, title="Service")
        surface = session.to_surface("rich")
        result = session.commit("rich", surface.replace("Capacity", "Limits"))
        self.assertIn("<h2>Limits</h2>", result)
        for raw in macro_raws(text):
            self.assertIn(raw, result)
        self.assertEqual([record.id for record in session.diagrams], ["diagram-0", "diagram-1"])

    def test_rich_edit_leaves_markup_before_a_macro_untouched(self):
        session = EditSession(EDITED_PAGE)
        surface = session.to_surface("rich")
        result = session.commit("rich", surface.replace("this sentence", "that phrase"))
        self.assertEqual(result, LEAD_MARKUP + JIRA_MACRO + "<p>Edit that phrase please.</p>")

    def test_unchanged_commit_is_identity(self):
        text = sample_text()
        session = EditSession(text)
        for mode in ("rich", "plain", "preview"):
            with self.subTest(mode=mode):
                self.assertEqual(session.commit(mode, session.to_surface(mode)), text)
        self.assertTrue(session.round_trip_ok())

    def test_plain_commit_updates_diagram_source(self):
        text = sample_text()
        session = EditSession(text)
        surface = session.to_surface("plain")
        result = session.commit("plain", surface.replace("queue --> worker", "queue --> sink"))
        self.assertEqual(result, text.replace("queue --> worker", "queue --> sink"))
        self.assertTrue(session.diagrams[0].code.endswith("queue --> sink"))
        self.assertFalse(session.diagrams[0].modified)


class TestEditSessionDiagrams(unittest.TestCase):
    def test_update_diagram_rewrites_only_its_payload(self):
        text = sample_text()
        session = EditSession(text)
        self.assertTrue(session.update_diagram("diagram-1", "sequenceDiagram\n  A->>C: ping"))
        self.assertEqual(session.storage_text, text.replace("A->>B: ping", "A->>C: ping"))
        self.assertEqual(session.diagrams[1].original_code, "sequenceDiagram\n  A->>C: ping")

    def test_update_diagram_mismatch_is_reported(self):
        events = EventChannel()
        session = EditSession(sample_text(), events=events)
        record = session.registry.get("diagram-0")
        target = segment_at(session.segments, record.owner_path)
        session.segments = replace_at(session.segments, record.owner_path, target.with_body("graph TD;X"))
        before = session.storage_text

        self.assertFalse(session.update_diagram("diagram-0", "graph TD;Y"))
        self.assertEqual(events.kinds(), ["diagram-mismatch"])
        self.assertEqual(record.code, record.original_code)
        self.assertEqual(session.storage_text, before)

    def test_update_unknown_diagram_raises(self):
        session = EditSession(sample_text())
        with self.assertRaises(KeyError):
            session.update_diagram("diagram-7", "graph TD;A")

    def test_renders_survive_for_unchanged_diagrams(self):
        events = EventChannel()
        session = EditSession(sample_text(), events=events)
        renders = session.render_diagrams(fake_renderer)
        self.assertTrue(renders["diagram-0"].ok)
        self.assertFalse(renders["diagram-1"].ok)
        self.assertEqual(events.kinds(), ["render-failure"])

        preview = session.to_surface("preview")
        self.assertIn("<svg data-len=", preview)
        self.assertIn("Parse error on line 2", preview)

        session.update_diagram("diagram-0", "graph TD;A-->B")
        self.assertNotIn("diagram-0", session.renders)
        self.assertIn("diagram-1", session.renders)

    def test_async_render(self):
        session = EditSession(sample_text())

        async def renderer(code):
            await asyncio.sleep(0)
            return fake_renderer(code)

        renders = asyncio.run(session.render_diagrams_async(renderer))
        self.assertEqual(sorted(renders), ["diagram-0", "diagram-1"])


class TestEditSessionSelection(unittest.TestCase):
    def test_replacement_in_preview_commits_to_storage(self):
        text = sample_text()
        session = EditSession(text)
        replacer = session.replacer("preview")
        self.assertIsNotNone(replacer.select("with jitter."))
        replacer.propose("<p>with capped backoff.</p>")
        replacer.apply()

        result = session.storage_text
        self.assertIn("with capped backoff.", result)
        self.assertNotIn("with jitter.", result)
        for raw in macro_raws(text):
            self.assertIn(raw, result)

        replacer.undo()
        self.assertIn("with jitter.", session.storage_text)
        self.assertNotIn("capped backoff", session.storage_text)

    def test_replacement_after_macro_keeps_earlier_markup(self):
        session = EditSession(EDITED_PAGE)
        replacer = session.replacer("preview")
        self.assertIsNotNone(replacer.select("this sentence"))
        replacer.propose("that phrase")
        replacer.apply()
        self.assertEqual(session.storage_text, LEAD_MARKUP + JIRA_MACRO + "<p>Edit that phrase please.</p>")

        replacer.undo()
        self.assertEqual(session.storage_text, EDITED_PAGE)

    def test_replacer_needs_html_surface(self):
        session = EditSession(sample_text())
        with self.assertRaises(ValueError):
            session.replacer("plain")


class TestEditSessionRecovery(unittest.TestCase):
    def test_unparseable_document_is_plain_only(self):
        events = EventChannel()
        session = EditSession(BROKEN_PAGE, events=events)
        self.assertTrue(session.plain_only)
        self.assertEqual(events.kinds(), ["parse-failure"])
        with self.assertRaises(ValueError):
            session.to_surface("rich")
        self.assertEqual(session.to_surface("plain"), BROKEN_PAGE)
        self.assertEqual(session.commit("plain", BROKEN_PAGE.replace("<p>a</p>", "<p>z</p>")), BROKEN_PAGE.replace("<p>a</p>", "<p>z</p>"))

    def test_validate(self):
        self.assertEqual(EditSession(sample_text()).validate(), [])
        events = EventChannel()
        warnings = EditSession("<p>a<p>", events=events).validate()
        self.assertTrue(warnings[0].startswith("not well-formed XML"))
        self.assertIn("document-invalid", events.kinds())
        self.assertEqual(EditSession("").validate(), ["document is empty"])

    def test_snapshot_restores_session(self):
        session = EditSession(sample_text(), title="Service Overview")
        snapshot = session.snapshot()
        restored = EditSession.from_snapshot(snapshot)
        self.assertEqual(restored.title, "Service Overview")
        self.assertEqual(restored.storage_text, session.storage_text)
        self.assertEqual(
            [record.code for record in restored.diagrams],
            [record.code for record in session.diagrams],
        )


if __name__ == "__main__":
    unittest.main()
