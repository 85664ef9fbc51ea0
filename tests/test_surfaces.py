from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from tests.helpers.diagnostics import text_diff, write_failure_bundle
from tests.helpers.storage_inspector import inspect_markup
from wsc.codec import MacroSegment, find_macro_spans, parse, serialize
from wsc.diagrams import DiagramRegistry, RenderResult
from wsc.surfaces import (
    PLAIN_MARKER_RE,
    PlainTextAdapter,
    PreviewAdapter,
    RichTextAdapter,
    find_placeholders,
    make_adapter,
    normalize_markup,
    protect_placeholders,
    restore_placeholders,
)

REPO_ROOT = Path(__file__).resolve().parents[1]
SAMPLE_PAGE = REPO_ROOT / "tests" / "fixtures" / "sample_page.xml"
HELLO_DIAGRAM = (
    '<p>Hello <ac:structured-macro ac:name="mermaid"><ac:parameter ac:name="code">'
    "<![CDATA[graph TD;A-->B]]></ac:parameter></ac:structured-macro> world</p>"
)


def load(text: str):
    segments = parse(text)
    registry = DiagramRegistry()
    registry.register(segments)
    return segments, registry


def macro_raws(text: str) -> list:
    return [text[start:end] for start, end in find_macro_spans(text)]


class TestRichSurface(unittest.TestCase):
    maxDiff = None

    def test_diagram_becomes_one_encoded_placeholder(self):
        segments, registry = load(HELLO_DIAGRAM)
        surface = RichTextAdapter(registry).to_surface(segments)
        placeholders = find_placeholders(surface)
        self.assertEqual(len(placeholders), 1)
        self.assertEqual(placeholders[0].kind, "diagram")
        self.assertEqual(placeholders[0].diagram_id, "diagram-0")
        self.assertEqual(placeholders[0].attrs["data-original-code"], "graph%20TD%3BA--%3EB")
        self.assertIn('contenteditable="false"', surface)
        self.assertNotIn("ac:structured-macro", surface)

    def test_unchanged_surface_round_trips_byte_for_byte(self):
        text = SAMPLE_PAGE.read_text(encoding="utf-8")
        segments, registry = load(text)
        adapter = RichTextAdapter(registry)
        surface = adapter.to_surface(segments)
        self.assertEqual(serialize(adapter.from_surface(surface)), text)

    def test_normalized_path_keeps_inline_diagram_in_place(self):
        segments, registry = load(HELLO_DIAGRAM)
        surface = RichTextAdapter(registry).to_surface(segments)
        fresh = RichTextAdapter(registry)
        result = fresh.from_surface(surface)
        self.assertEqual(len(result), 3)
        self.assertEqual(serialize(result), HELLO_DIAGRAM)

    def test_structure_survives_an_edit_cycle(self):
        text = SAMPLE_PAGE.read_text(encoding="utf-8")
        segments, registry = load(text)
        adapter = RichTextAdapter(registry)
        surface = adapter.to_surface(segments)
        edited = surface.replace("with jitter.", "with full jitter.")
        self.assertNotEqual(edited, surface)
        result = serialize(adapter.from_surface(edited))

        before = inspect_markup(text)
        after = inspect_markup(result)
        errors = []
        for field in ("tables", "headings", "paragraphs", "emphasis", "macros"):
            if getattr(before, field) != getattr(after, field):
                errors.append(f"{field}: {getattr(before, field)!r} != {getattr(after, field)!r}")
        for raw in macro_raws(text):
            if raw not in result:
                errors.append(f"macro not preserved verbatim: {raw[:60]}")
        link = text[text.index("<ac:link>"):text.index("</ac:link>") + len("</ac:link>")]
        if link not in result:
            errors.append("inline link was not preserved")
        if "with full jitter." not in result:
            errors.append("edit was lost")
        if errors:
            failure_bundle = write_failure_bundle(
                Path(tempfile.mkdtemp(prefix="wst-surface-")) / "failure_bundle",
                original_text=text,
                result_text=result,
                original_snapshot=before,
                result_snapshot=after,
                errors=errors,
            )
            self.fail(f"Rich edit cycle failed. Diagnostics: {failure_bundle}\n- " + "\n- ".join(errors))

    def test_untouched_markup_keeps_its_storage_text(self):
        prefix = "<p>a&mdash;b<br /></p>\n<table><tbody><tr><td>x</td></tr></tbody></table>\n"
        text = prefix + HELLO_DIAGRAM + "<p>tail</p>"
        segments, registry = load(text)
        adapter = RichTextAdapter(registry)
        surface = adapter.to_surface(segments)
        result = serialize(adapter.from_surface(surface.replace("<p>tail</p>", "<p>end</p>")))
        self.assertEqual(result, prefix + HELLO_DIAGRAM + "<p>end</p>")

    def test_inline_link_is_protected(self):
        segments, registry = load(SAMPLE_PAGE.read_text(encoding="utf-8"))
        surface = RichTextAdapter(registry).to_surface(segments)
        kinds = [placeholder.kind for placeholder in find_placeholders(surface)]
        self.assertEqual(kinds, ["inline", "diagram", "macro", "macro", "macro"])
        self.assertIn(">the runbook</span>", surface)

    def test_deleting_a_placeholder_removes_the_diagram(self):
        segments, registry = load("<p>keep</p>" + HELLO_DIAGRAM)
        adapter = RichTextAdapter(registry)
        surface = adapter.to_surface(segments)
        (placeholder,) = find_placeholders(surface)
        edited = surface[:placeholder.start] + surface[placeholder.end:]
        result = adapter.from_surface(edited)
        self.assertFalse(any(isinstance(segment, MacroSegment) for segment in result))
        self.assertEqual(serialize(result), "<p>keep</p><p>Hello  world</p>")

    def test_registry_code_is_used_on_the_way_out(self):
        segments, registry = load(HELLO_DIAGRAM)
        adapter = RichTextAdapter(registry)
        surface = adapter.to_surface(segments)
        registry.update_code("diagram-0", "graph TD;A-->C")
        result = adapter.from_surface(surface + "<p>more</p>")
        self.assertEqual(serialize(result), HELLO_DIAGRAM.replace("A-->B", "A-->C") + "<p>more</p>")

    def test_protect_and_restore_are_inverse(self):
        segments, registry = load(SAMPLE_PAGE.read_text(encoding="utf-8"))
        surface = RichTextAdapter(registry).to_surface(segments)
        protected, placeholders = protect_placeholders(surface)
        self.assertNotIn("data-wst-kind", protected)
        originals = [surface[item.start:item.end] for item in placeholders]
        self.assertEqual(restore_placeholders(protected, originals), surface)


class TestPlainSurface(unittest.TestCase):
    maxDiff = None

    def test_diagrams_are_wrapped_in_markers(self):
        segments, registry = load(SAMPLE_PAGE.read_text(encoding="utf-8"))
        surface = PlainTextAdapter(registry).to_surface(segments)
        markers = PLAIN_MARKER_RE.findall(surface)
        self.assertEqual(len(markers), 2)
        self.assertIn("queue --> worker<!--/wst:diagram-->", surface)
        self.assertIn('<ac:structured-macro ac:name="jira"', surface)

    def test_edited_marker_body_wins(self):
        text = SAMPLE_PAGE.read_text(encoding="utf-8")
        segments, registry = load(text)
        adapter = PlainTextAdapter(registry)
        surface = adapter.to_surface(segments)
        edited = surface.replace("queue --> worker", "queue --> sink").replace("A->>B: ping", "A->>B: pong")
        result = serialize(adapter.from_surface(edited))
        expected = text.replace("queue --> worker", "queue --> sink").replace("A->>B: ping", "A->>B: pong")
        self.assertEqual(result, expected, msg=text_diff(expected, result, "plain"))

    def test_text_edit_keeps_every_macro_byte_identical(self):
        text = SAMPLE_PAGE.read_text(encoding="utf-8")
        segments, registry = load(text)
        adapter = PlainTextAdapter(registry)
        surface = adapter.to_surface(segments)
        result = serialize(adapter.from_surface(surface.replace("Capacity", "Limits")))
        self.assertEqual(result, text.replace("Capacity", "Limits"))

    def test_broken_plain_edit_falls_back_to_markup(self):
        segments, registry = load(HELLO_DIAGRAM)
        adapter = PlainTextAdapter(registry)
        adapter.to_surface(segments)
        broken = '<p>x</p><ac:structured-macro ac:name="jira">'
        result = adapter.from_surface(broken)
        self.assertEqual(len(result), 1)
        self.assertEqual(serialize(result), broken)


class TestPreviewSurface(unittest.TestCase):
    def test_render_slot_shows_svg_or_error(self):
        text = "<p>a</p>" + HELLO_DIAGRAM + HELLO_DIAGRAM.replace("A-->B", "A-->X")
        segments, registry = load(text)
        adapter = PreviewAdapter(
            registry,
            renders={
                "diagram-0": RenderResult("diagram-0", output="<svg>ok</svg>"),
                "diagram-1": RenderResult("diagram-1", error="Lexical error"),
            },
        )
        surface = adapter.to_surface(segments)
        self.assertIn('<div class="wst-diagram-render"><svg>ok</svg></div>', surface)
        self.assertIn("Lexical error", surface)
        self.assertIn("graph TD;A--&gt;X", surface)
        self.assertEqual(serialize(adapter.from_surface(surface)), text)

    def test_callout_body_is_shown_read_only(self):
        segments, registry = load(SAMPLE_PAGE.read_text(encoding="utf-8"))
        surface = PreviewAdapter(registry).to_surface(segments)
        self.assertIn("Traffic moves to the standby region.", surface)
        self.assertEqual(len(find_placeholders(surface)), 5)


class TestSurfaceHelpers(unittest.TestCase):
    def test_normalize_markup(self):
        self.assertEqual(
            normalize_markup("<p></p><p>a&nbsp;b<br></p><table><tr><td></td></tr></table>"),
            "<p>a&nbsp;b<br/></p><table><tr><td></td></tr></table>",
        )

    def test_make_adapter(self):
        self.assertIsInstance(make_adapter("plain"), PlainTextAdapter)
        self.assertEqual(make_adapter("preview").mode, "preview")
        with self.assertRaises(ValueError):
            make_adapter("wysiwyg")


if __name__ == "__main__":
    unittest.main()
