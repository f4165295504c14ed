"""Render orchestration with page splitting, diagram reuse and an in-memory render cache.

A document is split into pages on newpage markers. Documents whose first page contains
:data:`PARTIAL_RENDER_MARKER` are rendered page by page, and pages whose text did not
change since the previous render reuse the diagrams computed back then. Every other
document is parsed and rendered as a whole.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from itertools import chain
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from .engine import (
    BlockState,
    Diagram,
    DiagramEngine,
    DiagramKind,
    IncludeContext,
    SupportsDiagram,
    TextDiagramEngine,
    include_context,
)
from .imaging import ImageFormat, fit_to_width
from .pages import PageFragment, split_pages

PARTIAL_RENDER_MARKER = "pagerender.partial"
ALL_PAGES = -1

NORMAL = "normal"
PARTIAL = "partial"

MIN_SCALE = 1.0
MAX_SCALE = 2.0


class RenderingCancelled(Exception):
    """Raised at a cancellation checkpoint once the render's token was cancelled."""


class CacheInconsistencyError(Exception):
    """Cached per-page state cannot be lined up with the new pages."""


class CancellationToken:
    """Cooperative cancellation flag, polled between blocks and page images."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RenderingCancelled("render cancelled")


@dataclass(frozen=True)
class RenderRequest:
    source: str
    base_dir: Optional[Path] = None
    page: int = ALL_PAGES
    zoom: int = 100
    format: ImageFormat = ImageFormat.PNG
    width: Optional[int] = None
    source_id: str = "<text>"

    def render_key(self) -> Tuple[Optional[Path], int, ImageFormat, Optional[int]]:
        """Settings that must match for previously built diagrams to be reused."""
        return self.base_dir, self.zoom, self.format, self.width


@dataclass(frozen=True)
class Titles:
    items: Tuple[Optional[str], ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Optional[str]]:
        return iter(self.items)

    def __getitem__(self, index: int) -> Optional[str]:
        return self.items[index]

    def get(self, index: int) -> Optional[str]:
        if 0 <= index < len(self.items):
            return self.items[index]
        return None


@dataclass(frozen=True)
class PageImage:
    index: int
    data: bytes
    title: Optional[str] = None
    reused: bool = False


@dataclass(frozen=True)
class RenderResult:
    strategy: str
    total_pages: int
    titles: Titles
    images: Tuple[PageImage, ...]
    elapsed_ms: float
    rendered_fragments: int = 0
    reused_fragments: int = 0

    def __post_init__(self) -> None:
        if len(self.titles) != self.total_pages:
            raise ValueError(f"{len(self.titles)} title(s) for {self.total_pages} page(s)")

    def image(self, page: int) -> Optional[PageImage]:
        for image in self.images:
            if image.index == page:
                return image
        return None


@dataclass(frozen=True)
class FragmentRender:
    """Diagrams, titles and encoded images computed for one page fragment."""

    fragment: PageFragment
    diagrams: Tuple[Diagram, ...]
    page_count: int
    titles: Tuple[Optional[str], ...]
    images: Mapping[int, bytes] = field(default_factory=dict)
    state: BlockState = BlockState()

    def matches(self, fragment: PageFragment, state: BlockState) -> bool:
        # the marker title is not part of the text but fills the first title slot
        return (
            self.fragment.text == fragment.text
            and self.fragment.title == fragment.title
            and self.state == state
        )


@dataclass(frozen=True)
class RenderCacheItem:
    request: RenderRequest
    result: RenderResult
    fragments: Tuple[PageFragment, ...]
    pages: Tuple[FragmentRender, ...] = ()
    partial: bool = False

    @property
    def source(self) -> str:
        return self.request.source


class RenderCache:
    """Last successful render per source identity."""

    def __init__(self) -> None:
        self._items: Dict[str, RenderCacheItem] = {}
        self._lock = threading.Lock()

    def get(self, source_id: str) -> Optional[RenderCacheItem]:
        with self._lock:
            return self._items.get(source_id)

    def put(self, source_id: str, item: RenderCacheItem) -> None:
        with self._lock:
            self._items[source_id] = item

    def invalidate(self, source_id: str) -> bool:
        with self._lock:
            return self._items.pop(source_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, source_id: object) -> bool:
        with self._lock:
            return source_id in self._items


def scale_factor(zoom: int) -> float:
    # Zoom below 100% never shrinks a diagram.
    return max(MIN_SCALE, min(zoom / 100.0, MAX_SCALE))


def apply_zoom(diagram: Diagram, zoom: int) -> None:
    """Give ``diagram`` (and the pages of a paged diagram) a scale unless one is already set."""
    factor = scale_factor(zoom)
    _set_scale_if_absent(diagram, factor)
    if diagram.kind is DiagramKind.PAGED:
        for page in diagram.payload.diagrams:
            _set_scale_if_absent(page, factor)


def _set_scale_if_absent(diagram: Diagram, factor: float) -> None:
    if diagram.scale is None:
        diagram.scale = factor


def extract_titles(diagrams: Iterable[Diagram]) -> Titles:
    """One title slot per page, in page order; missing titles are ``None``."""
    titles: List[Optional[str]] = []
    for diagram in diagrams:
        kind = diagram.kind
        if kind is DiagramKind.SEQUENCE:
            titles.append(_title(diagram.title))
            titles.extend(_title(event.title) for event in diagram.payload.newpages)
        elif kind is DiagramKind.PAGED:
            titles.extend(_title(page.title) for page in diagram.payload.diagrams)
        elif kind is DiagramKind.SIMPLE:
            titles.append(_title(diagram.title))
        elif kind is DiagramKind.ERROR:
            titles.append(_title(diagram.title))
        else:
            raise ValueError(f"unsupported diagram kind: {kind!r}")
    return Titles(tuple(titles))


def _title(text: Optional[str]) -> Optional[str]:
    return text if text else None


def collect_diagrams(
    blocks: Sequence[SupportsDiagram], zoom: int, token: Optional[CancellationToken] = None
) -> Tuple[List[Diagram], int, Titles]:
    """Build and zoom the diagram of every block; returns diagrams, page count and titles."""
    diagrams: List[Diagram] = []
    total_pages = 0
    for block in blocks:
        if token is not None:
            token.raise_if_cancelled()
        start = time.perf_counter()
        diagram = block.get_diagram()
        logger.debug(f"diagram built in {_elapsed_ms(start):.1f} ms ({diagram.kind.value})")

        start = time.perf_counter()
        apply_zoom(diagram, zoom)
        logger.debug(f"zoom applied in {_elapsed_ms(start):.1f} ms (scale {diagram.scale})")

        total_pages += diagram.page_count()
        diagrams.append(diagram)
    return diagrams, total_pages, extract_titles(diagrams)


def outline(
    source: str, base_dir: Optional[Path] = None, *, engine: Optional[DiagramEngine] = None
) -> Tuple[int, Titles]:
    """Page count and titles of ``source`` without producing any image."""
    engine = engine or TextDiagramEngine()
    with include_context(base_dir) as context:
        _, total_pages, titles = collect_diagrams(engine.parse(source, context), 100)
    return total_pages, titles


def select_strategy(fragments: Sequence[PageFragment]) -> str:
    # Plain substring test on the first page; a marker inside a comment counts too.
    if fragments and PARTIAL_RENDER_MARKER in fragments[0].text:
        return PARTIAL
    return NORMAL


class NormalRenderer:
    """Parses and renders the whole document; never reuses previous state."""

    def render(
        self,
        request: RenderRequest,
        fragments: Sequence[PageFragment],
        previous: Optional[RenderCacheItem],
        *,
        engine: DiagramEngine,
        context: IncludeContext,
        token: CancellationToken,
        started: Optional[float] = None,
    ) -> RenderCacheItem:
        started = started if started is not None else time.perf_counter()
        blocks = engine.parse(request.source, context)
        diagrams, total_pages, titles = collect_diagrams(blocks, request.zoom, token)
        if previous is not None and previous.result.total_pages != total_pages:
            logger.debug(f"page count changed from {previous.result.total_pages} to {total_pages}")

        images = []
        for page in _wanted_pages(request.page, total_pages):
            diagram, local = _locate(diagrams, page)
            data = _render_image(diagram, local, request, token)
            images.append(PageImage(page, data, titles.get(page)))

        result = RenderResult(
            NORMAL,
            total_pages,
            titles,
            tuple(images),
            _elapsed_ms(started),
            rendered_fragments=len(fragments),
        )
        logger.debug(f"normal render done in {result.elapsed_ms:.1f} ms ({total_pages} page(s))")
        return RenderCacheItem(request, result, tuple(fragments))


class PartialRenderer:
    """Renders page fragments one by one, reusing fragments unchanged since the last render.

    Fragments are compared by position. Cached state is only usable when the previous render
    was partial, had the same number of fragments and the same render settings; otherwise
    every fragment is rendered again.
    """

    def render(
        self,
        request: RenderRequest,
        fragments: Sequence[PageFragment],
        previous: Optional[RenderCacheItem],
        *,
        engine: DiagramEngine,
        context: IncludeContext,
        token: CancellationToken,
        started: Optional[float] = None,
    ) -> RenderCacheItem:
        started = started if started is not None else time.perf_counter()
        try:
            cached = self._reusable_pages(request, fragments, previous)
        except CacheInconsistencyError as exc:
            logger.debug(f"cached pages dropped, rendering all fragments: {exc}")
            cached = ()

        states = engine.fragment_states([fragment.text for fragment in fragments], context)
        parts: List[FragmentRender] = []
        reused = 0
        for position, (fragment, state) in enumerate(zip(fragments, states)):
            if cached and cached[position].matches(fragment, state):
                parts.append(replace(cached[position], fragment=fragment))
                reused += 1
                logger.debug(f"fragment {position} unchanged, reusing {cached[position].page_count} page(s)")
            else:
                parts.append(self._render_fragment(fragment, state, request, engine, context, token))

        total_pages = sum(part.page_count for part in parts)
        titles = Titles(tuple(chain.from_iterable(part.titles for part in parts)))
        wanted = set(_wanted_pages(request.page, total_pages))

        images: List[PageImage] = []
        pages: List[FragmentRender] = []
        offset = 0
        for part in parts:
            part_images = dict(part.images)
            for local in range(part.page_count):
                if offset + local not in wanted:
                    continue
                data = part_images.get(local)
                from_cache = data is not None
                if data is None:
                    diagram, diagram_page = _locate(part.diagrams, local)
                    data = _render_image(diagram, diagram_page, request, token)
                    part_images[local] = data
                images.append(PageImage(offset + local, data, part.titles[local], from_cache))
            pages.append(replace(part, images=part_images))
            offset += part.page_count

        result = RenderResult(
            PARTIAL,
            total_pages,
            titles,
            tuple(images),
            _elapsed_ms(started),
            rendered_fragments=len(parts) - reused,
            reused_fragments=reused,
        )
        logger.debug(
            f"partial render done in {result.elapsed_ms:.1f} ms "
            f"({reused} reused, {len(parts) - reused} rendered, {total_pages} page(s))"
        )
        return RenderCacheItem(request, result, tuple(fragments), tuple(pages), partial=True)

    @staticmethod
    def _reusable_pages(
        request: RenderRequest,
        fragments: Sequence[PageFragment],
        previous: Optional[RenderCacheItem],
    ) -> Tuple[FragmentRender, ...]:
        if previous is None:
            return ()
        if not previous.partial:
            raise CacheInconsistencyError("previous render was not partial")
        if len(previous.pages) != len(fragments):
            raise CacheInconsistencyError(
                f"fragment count changed from {len(previous.pages)} to {len(fragments)}"
            )
        if previous.request.render_key() != request.render_key():
            raise CacheInconsistencyError("render settings changed")
        return previous.pages

    @staticmethod
    def _render_fragment(
        fragment: PageFragment,
        state: BlockState,
        request: RenderRequest,
        engine: DiagramEngine,
        context: IncludeContext,
        token: CancellationToken,
    ) -> FragmentRender:
        blocks = engine.parse(fragment.text, context, state=state)
        diagrams, page_count, titles = collect_diagrams(blocks, request.zoom, token)
        slots = list(titles)
        # a fragment rendered on its own has lost the newpage line that titled it;
        # a newpage line outside any block titles nothing
        continued = state.in_block or not state.explicit
        if slots and slots[0] is None and continued:
            slots[0] = fragment.title
        return FragmentRender(fragment, tuple(diagrams), page_count, tuple(slots), state=state)


_NORMAL_RENDERER = NormalRenderer()
_PARTIAL_RENDERER = PartialRenderer()


def render_document(
    request: RenderRequest,
    previous: Optional[RenderCacheItem] = None,
    *,
    engine: Optional[DiagramEngine] = None,
    token: Optional[CancellationToken] = None,
) -> RenderCacheItem:
    """Render ``request`` and return the cache item describing the new state.

    Raises :class:`~pagerender.engine.DiagramParseError`, :class:`OSError` or
    :class:`RenderingCancelled`; nothing is returned for a failed render.
    """
    engine = engine or TextDiagramEngine()
    token = token or CancellationToken()
    with include_context(request.base_dir) as context:
        started = time.perf_counter()
        fragments = split_pages(request.source)
        logger.debug(f"split done in {_elapsed_ms(started):.1f} ms ({len(fragments)} fragment(s))")

        strategy = select_strategy(fragments)
        logger.debug(f"strategy: {strategy}")
        renderer = _PARTIAL_RENDERER if strategy == PARTIAL else _NORMAL_RENDERER
        return renderer.render(
            request, fragments, previous, engine=engine, context=context, token=token, started=started
        )


class DocumentRenderer:
    """Renders documents and keeps the last successful render of each one."""

    def __init__(self, engine: Optional[DiagramEngine] = None, cache: Optional[RenderCache] = None) -> None:
        self.engine = engine or TextDiagramEngine()
        self.cache = cache if cache is not None else RenderCache()

    def render(self, request: RenderRequest, token: Optional[CancellationToken] = None) -> RenderResult:
        previous = self.cache.get(request.source_id)
        logger.debug(f"cache {'hit' if previous is not None else 'miss'} for {request.source_id}")
        item = render_document(request, previous, engine=self.engine, token=token)
        self.cache.put(request.source_id, item)
        return item.result

    def invalidate(self, source_id: str) -> bool:
        return self.cache.invalidate(source_id)


def render_and_save(
    request: RenderRequest,
    output_path: Path,
    *,
    engine: Optional[DiagramEngine] = None,
    token: Optional[CancellationToken] = None,
) -> List[Path]:
    """Render ``request`` and write its images with :func:`save_images`."""
    item = render_document(request, None, engine=engine, token=token)
    return save_images(item.result.images, output_path)


def save_images(images: Sequence[PageImage], output_path: Path) -> List[Path]:
    """Write ``images`` to disk; pages after the first get a ``-<page>`` suffix."""
    output_path = Path(output_path)
    written: List[Path] = []
    for position, image in enumerate(images):
        path = output_path
        if position > 0:
            path = output_path.with_name(f"{output_path.stem}-{image.index + 1}{output_path.suffix}")
        path.write_bytes(image.data)
        written.append(path)
    return written


def _wanted_pages(page: int, total_pages: int) -> List[int]:
    if page == ALL_PAGES:
        return list(range(total_pages))
    if 0 <= page < total_pages:
        return [page]
    logger.warning(f"page {page} requested but the document has {total_pages} page(s)")
    return []


def _locate(diagrams: Sequence[Diagram], page: int) -> Tuple[Diagram, int]:
    for diagram in diagrams:
        count = diagram.page_count()
        if page < count:
            return diagram, page
        page -= count
    raise IndexError("page index beyond the rendered diagrams")


def _render_image(diagram: Diagram, page: int, request: RenderRequest, token: CancellationToken) -> bytes:
    token.raise_if_cancelled()
    start = time.perf_counter()
    data = diagram.render_page(page, request.format)
    if request.width:
        data = fit_to_width(data, request.width, request.format)
    logger.debug(f"page image rendered in {_elapsed_ms(start):.1f} ms ({len(data)} bytes)")
    return data


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
