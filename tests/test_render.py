from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from pagerender.engine import (
    Diagram,
    DiagramKind,
    DiagramParseError,
    ErrorPayload,
    Newpage,
    PagedPayload,
    PageContent,
    SequencePayload,
    SimplePayload,
    TextDiagramEngine,
    include_context,
)
from pagerender.imaging import ImageFormat
from pagerender.pages import split_pages
from pagerender.render import (
    NORMAL,
    PARTIAL,
    CancellationToken,
    DocumentRenderer,
    NormalRenderer,
    RenderCache,
    RenderingCancelled,
    RenderRequest,
    RenderResult,
    Titles,
    apply_zoom,
    extract_titles,
    outline,
    render_and_save,
    render_document,
    scale_factor,
    select_strategy,
)

PARTIAL_DOC = (
    "@startuml\n"
    "' pagerender.partial\n"
    "title First\n"
    "A -> B : one\n"
    "newpage Second\n"
    "B -> A : two\n"
    "newpage\n"
    "C\n"
    "@enduml"
)


def _png_width(blob: bytes) -> int:
    return int.from_bytes(blob[16:20], "big")


def _simple(title=None) -> Diagram:
    return Diagram(DiagramKind.SIMPLE, SimplePayload(PageContent(title=title)), title=title)


def _diagram_ids(item) -> set[int]:
    return {id(diagram) for page in item.pages for diagram in page.diagrams}


class RecordingEngine:
    def __init__(self) -> None:
        self.inner = TextDiagramEngine()
        self.contexts = []
        self.parsed: list[str] = []

    def parse(self, text, context, *, state=None):
        self.contexts.append(context)
        self.parsed.append(text)
        return self.inner.parse(text, context, state=state)

    def fragment_states(self, texts, context):
        return self.inner.fragment_states(texts, context)


class _CancellingBlock:
    def __init__(self, token: CancellationToken) -> None:
        self.token = token

    def get_diagram(self) -> Diagram:
        self.token.cancel()
        return _simple("first")


class _CancellingEngine:
    def __init__(self, token: CancellationToken) -> None:
        self.token = token
        self.inner = TextDiagramEngine()

    def parse(self, text, context, *, state=None):
        return [_CancellingBlock(self.token)] + self.inner.parse(text, context, state=state)

    def fragment_states(self, texts, context):
        return self.inner.fragment_states(texts, context)


class ScaleTests(unittest.TestCase):
    def test_clamped_scale_factor(self) -> None:
        self.assertEqual(scale_factor(150), 1.5)
        self.assertEqual(scale_factor(50), 1.0)
        self.assertEqual(scale_factor(300), 2.0)
        for zoom in (0, 1, 99, 100):
            self.assertEqual(scale_factor(zoom), 1.0)
        for zoom in (100, 125, 175, 200):
            self.assertEqual(scale_factor(zoom), zoom / 100)
        self.assertEqual(scale_factor(201), 2.0)

    def test_apply_zoom_is_set_once(self) -> None:
        diagram = _simple()
        apply_zoom(diagram, 150)
        apply_zoom(diagram, 150)
        self.assertEqual(diagram.scale, 1.5)
        apply_zoom(diagram, 200)
        self.assertEqual(diagram.scale, 1.5)

    def test_apply_zoom_reaches_paged_pages(self) -> None:
        pages = [_simple("a"), _simple("b")]
        pages[1].scale = 1.2
        paged = Diagram(DiagramKind.PAGED, PagedPayload(pages))
        apply_zoom(paged, 180)
        self.assertEqual([page.scale for page in pages], [1.8, 1.2])


class TitleTests(unittest.TestCase):
    def test_titles_per_kind_in_page_order(self) -> None:
        sequence = Diagram(
            DiagramKind.SEQUENCE,
            SequencePayload([PageContent()] * 3, [Newpage("p2"), Newpage("")]),
            title="S",
        )
        paged = Diagram(DiagramKind.PAGED, PagedPayload([_simple("a"), _simple(None)]))
        simple = _simple("")
        error = Diagram(DiagramKind.ERROR, ErrorPayload("boom"))
        titled_error = Diagram(DiagramKind.ERROR, ErrorPayload("boom"), title="E")

        titles = extract_titles([sequence, paged, simple, error, titled_error])
        self.assertEqual(list(titles), ["S", "p2", None, "a", None, None, None, "E"])
        self.assertEqual(titles.get(99), None)
        self.assertEqual(titles[0], "S")

    def test_result_rejects_title_count_mismatch(self) -> None:
        with self.assertRaises(ValueError):
            RenderResult(NORMAL, 2, Titles((None,)), (), 0.0)


class StrategyTests(unittest.TestCase):
    def test_marker_only_counts_in_first_fragment(self) -> None:
        self.assertEqual(select_strategy(split_pages(PARTIAL_DOC)), PARTIAL)
        self.assertEqual(select_strategy(split_pages("A\nnewpage\n' pagerender.partial\nB")), NORMAL)
        self.assertEqual(select_strategy(split_pages("A")), NORMAL)


class NormalRenderTests(unittest.TestCase):
    def test_example_document(self) -> None:
        item = render_document(RenderRequest("A\n@newpage Second\nB"))
        result = item.result
        self.assertEqual(result.strategy, NORMAL)
        self.assertEqual(result.total_pages, 2)
        self.assertEqual(list(result.titles), [None, "Second"])
        self.assertEqual([image.index for image in result.images], [0, 1])
        self.assertEqual(result.images[1].title, "Second")
        self.assertEqual([f.text for f in item.fragments], ["A", "B"])
        self.assertFalse(item.partial)

    def test_single_page_keeps_full_metadata(self) -> None:
        result = render_document(RenderRequest("A\nnewpage T\nB\nnewpage\nC", page=1)).result
        self.assertEqual(result.total_pages, 3)
        self.assertEqual(len(result.titles), 3)
        self.assertEqual([image.index for image in result.images], [1])
        self.assertIsNotNone(result.image(1))
        self.assertIsNone(result.image(0))

    def test_out_of_range_page_renders_nothing(self) -> None:
        result = render_document(RenderRequest("A\nnewpage\nB", page=5)).result
        self.assertEqual(result.total_pages, 2)
        self.assertEqual(result.images, ())

    def test_zoom_and_width(self) -> None:
        base = render_document(RenderRequest("Box")).result.images[0].data
        zoomed = render_document(RenderRequest("Box", zoom=200)).result.images[0].data
        shrunk = render_document(RenderRequest("Box", zoom=50)).result.images[0].data
        self.assertAlmostEqual(_png_width(zoomed), 2 * _png_width(base), delta=1)
        self.assertEqual(_png_width(shrunk), _png_width(base))
        fitted = render_document(RenderRequest("Box", width=33)).result.images[0].data
        self.assertEqual(_png_width(fitted), 33)

    def test_svg_output(self) -> None:
        result = render_document(RenderRequest("Box", format=ImageFormat.SVG)).result
        self.assertIn(b"<svg", result.images[0].data)


class PartialRenderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = TextDiagramEngine()

    def render(self, source: str, previous=None, **kwargs):
        return render_document(RenderRequest(source, **kwargs), previous, engine=self.engine)

    def render_normal(self, source: str):
        with include_context(None) as context:
            return NormalRenderer().render(
                RenderRequest(source),
                split_pages(source),
                None,
                engine=self.engine,
                context=context,
                token=CancellationToken(),
            )

    def assert_matches_normal(self, item, source: str) -> None:
        normal = self.render_normal(source)
        self.assertEqual(item.result.strategy, PARTIAL)
        self.assertEqual(item.result.total_pages, normal.result.total_pages)
        self.assertEqual(item.result.titles, normal.result.titles)

    def test_matches_normal_render(self) -> None:
        normal = self.render_normal(PARTIAL_DOC)
        first = self.render(PARTIAL_DOC)
        second = self.render(PARTIAL_DOC, first)

        self.assertEqual(list(normal.result.titles), ["First", "Second", None])
        for item in (first, second):
            self.assertEqual(item.result.strategy, PARTIAL)
            self.assertEqual(item.result.titles, normal.result.titles)
            self.assertEqual(item.result.total_pages, normal.result.total_pages)
        self.assertEqual(second.result.reused_fragments, 3)
        self.assertEqual(second.result.rendered_fragments, 0)
        self.assertTrue(all(image.reused for image in second.result.images))

    def test_unchanged_fragments_reuse_diagrams(self) -> None:
        first = self.render(PARTIAL_DOC)
        edited = PARTIAL_DOC.replace("B -> A : two", "B -> A : changed")
        second = self.render(edited, first)

        self.assertEqual(second.result.reused_fragments, 2)
        self.assertEqual(second.result.rendered_fragments, 1)
        self.assertIs(second.pages[0].diagrams[0], first.pages[0].diagrams[0])
        self.assertIsNot(second.pages[1].diagrams[0], first.pages[1].diagrams[0])
        self.assertIs(second.pages[2].diagrams[0], first.pages[2].diagrams[0])
        self.assertEqual([image.reused for image in second.result.images], [True, False, True])
        self.assertEqual(second.fragments[1].text, "B -> A : changed")

    def test_reused_pages_are_renumbered(self) -> None:
        first = self.render(PARTIAL_DOC)
        edited = PARTIAL_DOC.replace("B -> A : two", "B -> A : two\n@enduml\n@startuml\nX")
        second = self.render(edited, first)

        self.assertEqual(second.result.total_pages, 4)
        self.assertEqual(list(second.result.titles), ["First", "Second", None, None])
        self.assertEqual(second.result.reused_fragments, 2)
        self.assert_matches_normal(second, edited)
        last = second.result.images[-1]
        self.assertEqual(last.index, 3)
        self.assertTrue(last.reused)
        self.assertEqual(last.data, first.result.images[2].data)
        self.assertEqual(second.pages[2].fragment.offset, edited.rindex("C\n@enduml"))

    def test_marker_title_edit_rerenders_its_fragment(self) -> None:
        source = "' pagerender.partial\nA\nnewpage Second\nB"
        edited = source.replace("Second", "Renamed")
        first = self.render(source)
        second = self.render(edited, first)

        self.assertEqual(list(second.result.titles), [None, "Renamed"])
        self.assertEqual(second.result.images[1].title, "Renamed")
        self.assertFalse(second.result.images[1].reused)
        self.assertEqual(second.result.reused_fragments, 1)
        self.assert_matches_normal(second, edited)

    def test_blocks_spanning_pages_match_normal_render(self) -> None:
        for source in (
            "@startuml\n' pagerender.partial\nA\nnewpage\nB\n@enduml\n@startuml\nC\n@enduml",
            "@startuml\n' pagerender.partial\ntitle One\nA\nnewpage Two\nB\n@enduml\n"
            "ignored\n@startuml\ntitle Three\nC\n@enduml",
            "@startuml\n' pagerender.partial\nA\n@enduml\nnewpage Lost\n@startuml\nB\n@enduml",
        ):
            with self.subTest(source=source):
                self.assert_matches_normal(self.render(source), source)

        item = self.render(
            "@startuml\n' pagerender.partial\ntitle One\nA\nnewpage Two\nB\n@enduml\n"
            "ignored\n@startuml\ntitle Three\nC\n@enduml"
        )
        self.assertEqual(list(item.result.titles), ["One", "Two", "Three"])

    def test_block_state_change_rerenders_following_fragment(self) -> None:
        source = "@startuml\n' pagerender.partial\nA\nnewpage\nB\n@enduml"
        edited = source.replace("A\n", "A\n@enduml\n")
        first = self.render(source)
        self.assertEqual(first.result.total_pages, 2)

        second = self.render(edited, first)
        self.assertEqual(second.result.reused_fragments, 0)
        self.assertEqual(second.result.total_pages, 1)
        self.assert_matches_normal(second, edited)

    def test_syntax_error_is_confined_to_its_page(self) -> None:
        source = "' pagerender.partial\nA\nnewpage\nB ->"
        item = self.render(source)

        self.assertEqual(self.render_normal(source).result.total_pages, 1)
        self.assertEqual(item.result.total_pages, 2)
        self.assertEqual(item.pages[0].diagrams[0].kind, DiagramKind.SIMPLE)
        self.assertEqual(item.pages[1].diagrams[0].kind, DiagramKind.ERROR)

    def test_fragment_count_change_renders_everything(self) -> None:
        first = self.render(PARTIAL_DOC)
        for edited in (
            PARTIAL_DOC.replace("C\n", "C\nnewpage Fourth\nD\n"),
            PARTIAL_DOC.replace("newpage\nC\n", "C\n"),
        ):
            second = self.render(edited, first)
            self.assertEqual(second.result.reused_fragments, 0)
            self.assertFalse(_diagram_ids(first) & _diagram_ids(second))
            self.assertEqual(len(second.result.titles), second.result.total_pages)

    def test_settings_change_renders_everything(self) -> None:
        first = self.render(PARTIAL_DOC)
        second = self.render(PARTIAL_DOC, first, zoom=150)
        self.assertEqual(second.result.reused_fragments, 0)
        self.assertTrue(all(d.scale == 1.5 for page in second.pages for d in page.diagrams))

    def test_previous_normal_render_is_not_reused(self) -> None:
        normal = self.render(PARTIAL_DOC.replace("' pagerender.partial\n", ""))
        self.assertFalse(normal.partial)
        partial = self.render(PARTIAL_DOC, normal)
        self.assertEqual(partial.result.reused_fragments, 0)

    def test_missing_images_rendered_from_reused_diagrams(self) -> None:
        first = self.render(PARTIAL_DOC, page=0)
        self.assertEqual([image.index for image in first.result.images], [0])
        second = self.render(PARTIAL_DOC, first, page=-1)
        self.assertEqual(second.result.reused_fragments, 3)
        self.assertEqual([image.reused for image in second.result.images], [True, False, False])
        self.assertEqual(set(second.pages[1].images), {0})

    def test_only_changed_fragments_are_parsed(self) -> None:
        engine = RecordingEngine()
        first = render_document(RenderRequest(PARTIAL_DOC), engine=engine)
        engine.parsed.clear()
        render_document(RenderRequest(PARTIAL_DOC.replace("C\n", "D\n")), first, engine=engine)
        self.assertEqual(engine.parsed, ["D\n@enduml"])


class CancellationTests(unittest.TestCase):
    def test_cancelled_before_first_block(self) -> None:
        renderer = DocumentRenderer()
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(RenderingCancelled):
            renderer.render(RenderRequest("A", source_id="doc"), token)
        self.assertNotIn("doc", renderer.cache)
        self.assertEqual(len(renderer.cache), 0)

    def test_cancelled_between_blocks_keeps_previous_cache(self) -> None:
        token = CancellationToken()
        renderer = DocumentRenderer(engine=_CancellingEngine(token))
        previous = render_document(RenderRequest("old", source_id="doc"))
        renderer.cache.put("doc", previous)
        with self.assertRaises(RenderingCancelled):
            renderer.render(RenderRequest("A\nB", source_id="doc"), token)
        self.assertIs(renderer.cache.get("doc"), previous)

    def test_cancellation_is_not_an_io_or_parse_error(self) -> None:
        self.assertFalse(issubclass(RenderingCancelled, (OSError, ValueError)))


class IncludeContextLifecycleTests(unittest.TestCase):
    def test_context_closed_after_success_and_failure(self) -> None:
        engine = RecordingEngine()
        render_document(RenderRequest("A"), engine=engine)
        with self.assertRaises(DiagramParseError):
            render_document(RenderRequest("@startuml\n@startuml"), engine=engine)
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(RenderingCancelled):
            render_document(RenderRequest("A"), engine=engine, token=token)
        self.assertEqual(len(engine.contexts), 3)
        self.assertTrue(all(context.closed for context in engine.contexts))

    def test_base_dir_reaches_engine(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / "part.puml").write_text("Included")
            result = render_document(RenderRequest("!include part.puml", base_dir=Path(td))).result
            self.assertEqual(result.total_pages, 1)
            with self.assertRaises(OSError):
                render_document(RenderRequest("!include part.puml"))


class DocumentRendererTests(unittest.TestCase):
    def test_cache_is_per_source_and_last_render_wins(self) -> None:
        renderer = DocumentRenderer(cache=RenderCache())
        first = renderer.render(RenderRequest(PARTIAL_DOC, source_id="a"))
        second = renderer.render(RenderRequest(PARTIAL_DOC, source_id="a"))
        other = renderer.render(RenderRequest(PARTIAL_DOC, source_id="b"))
        self.assertEqual(first.reused_fragments, 0)
        self.assertEqual(second.reused_fragments, 3)
        self.assertEqual(other.reused_fragments, 0)
        self.assertEqual(len(renderer.cache), 2)
        self.assertIs(renderer.cache.get("a").result, second)

        self.assertTrue(renderer.invalidate("a"))
        self.assertFalse(renderer.invalidate("a"))
        third = renderer.render(RenderRequest(PARTIAL_DOC, source_id="a"))
        self.assertEqual(third.reused_fragments, 0)

    def test_failed_render_keeps_previous_item(self) -> None:
        renderer = DocumentRenderer()
        renderer.render(RenderRequest("A", source_id="doc"))
        previous = renderer.cache.get("doc")
        with self.assertRaises(DiagramParseError):
            renderer.render(RenderRequest("@startuml\n@startuml", source_id="doc"))
        self.assertIs(renderer.cache.get("doc"), previous)


class OutputTests(unittest.TestCase):
    def test_render_and_save_names_further_pages(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "out.png"
            written = render_and_save(RenderRequest("A\nnewpage\nB\nnewpage\nC"), target)
            self.assertEqual([p.name for p in written], ["out.png", "out-2.png", "out-3.png"])
            self.assertTrue(all(p.exists() for p in written))

    def test_outline(self) -> None:
        total, titles = outline("A\nnewpage T\nB")
        self.assertEqual(total, 2)
        self.assertEqual(titles, Titles((None, "T")))


if __name__ == "__main__":
    unittest.main()
