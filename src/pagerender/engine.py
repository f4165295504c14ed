"""Reference diagram engine for the line-oriented pagerender language.

A document holds one or more ``@startuml`` / ``@enduml`` blocks (or a single implicit
block when no ``@startuml`` line is present). Inside a block:

* ``title Text`` names the current page,
* ``Alice -> Bob : label`` (or ``-->``) is a message and turns the block into a
  sequence diagram,
* ``newpage [Title]`` starts a new page,
* ``!include path`` inlines another file,
* ``'`` starts a comment line,
* any other non-empty line is drawn as a box.

Each block yields one :class:`Diagram`. Diagrams are laid out in abstract units and
drawn with Pillow (PNG/JPEG) or serialised as SVG, multiplied by ``Diagram.scale``.
"""
from __future__ import annotations

import io
import math
import re
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Protocol, Sequence, Tuple, Union

from loguru import logger
from PIL import Image, ImageDraw, ImageFont

from .imaging import SVG_NS, ImageFormat
from .pages import PageFragment, split_pages

START_RE = re.compile(r"^\s*@startuml\b", re.IGNORECASE)
END_RE = re.compile(r"^\s*@enduml\b", re.IGNORECASE)
TITLE_RE = re.compile(r"^\s*title\s+(.+?)\s*$", re.IGNORECASE)
INCLUDE_RE = re.compile(r"^\s*!include\s+(.+?)\s*$")
MESSAGE_RE = re.compile(r"^\s*([\w.]+)\s*(-{1,2}>)\s*([\w.]+)\s*(?::\s*(.*?))?\s*$")
ARROW_TOKEN = "->"

MAX_INCLUDE_DEPTH = 10

FONT_SIZE = 12.0
PAD = 10.0
TITLE_HEIGHT = 24.0
BOX_HEIGHT = 24.0
BOX_GAP = 8.0
BOX_MIN_WIDTH = 60.0
COLUMN_GAP = 30.0
ROW_HEIGHT = 28.0

INK = (33, 33, 33)
BOX_FILL = (254, 254, 206)
TITLE_INK = (0, 0, 0)
ERROR_INK = (200, 20, 20)
ERROR_FILL = (255, 235, 235)


class DiagramParseError(ValueError):
    """Raised when diagram source is structurally malformed."""

    def __init__(self, code: str, message: str, line: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.line = line

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        return f"{self.message} (line {self.line})"


class IncludeContext:
    """Resolves ``!include`` paths for one render.

    Contexts are handed to :meth:`TextDiagramEngine.parse` explicitly and closed when the
    render ends, so include state never outlives the render that created it.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else None
        self.included: List[Path] = []
        self.closed = False

    def resolve(self, name: str, relative_to: Optional[Path] = None) -> Path:
        if self.closed:
            raise RuntimeError("include context used after its render finished")
        resolved = Path(name).expanduser()
        if not resolved.is_absolute():
            base = relative_to or self.base_dir or Path.cwd()
            resolved = base / resolved
        try:
            return resolved.resolve()
        except OSError:
            return resolved.absolute()

    def read(self, path: Path) -> str:
        if not path.exists():
            raise FileNotFoundError(f"include file not found: {path}")
        text = path.read_text(encoding="utf-8")
        self.included.append(path)
        logger.debug(f"included {path} ({len(text)} chars)")
        return text

    def close(self) -> None:
        self.closed = True


@contextmanager
def include_context(base_dir: Optional[Path]) -> Iterator[IncludeContext]:
    context = IncludeContext(base_dir)
    try:
        yield context
    finally:
        context.close()


class DiagramKind(Enum):
    SEQUENCE = "sequence"
    PAGED = "paged"
    SIMPLE = "simple"
    ERROR = "error"


@dataclass
class Message:
    source: str
    target: str
    label: Optional[str] = None
    dashed: bool = False


@dataclass
class PageContent:
    title: Optional[str] = None
    boxes: List[str] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)


@dataclass
class Newpage:
    title: Optional[str]


@dataclass
class SequencePayload:
    pages: List[PageContent]
    newpages: List[Newpage]


@dataclass
class PagedPayload:
    diagrams: List["Diagram"]


@dataclass
class SimplePayload:
    page: PageContent


@dataclass
class ErrorPayload:
    message: str
    line: Optional[int] = None


Payload = Union[SequencePayload, PagedPayload, SimplePayload, ErrorPayload]


@dataclass(eq=False)
class Diagram:
    """One rendered unit; ``scale`` stays ``None`` until a zoom is applied."""

    kind: DiagramKind
    payload: Payload
    title: Optional[str] = None
    scale: Optional[float] = None

    def page_count(self) -> int:
        if self.kind is DiagramKind.PAGED:
            return sum(page.page_count() for page in self.payload.diagrams)
        if self.kind is DiagramKind.SEQUENCE:
            return 1 + len(self.payload.newpages)
        return 1

    def render_page(self, index: int, fmt: ImageFormat = ImageFormat.PNG) -> bytes:
        if not 0 <= index < self.page_count():
            raise IndexError(f"page {index} out of range for {self.page_count()} page(s)")
        if self.kind is DiagramKind.PAGED:
            for page in self.payload.diagrams:
                if index < page.page_count():
                    return page.render_page(index, fmt)
                index -= page.page_count()
        canvas = _layout(self, index)
        return canvas.encode(fmt, self.scale or 1.0)


@dataclass(frozen=True)
class BlockState:
    """Block structure around a page fragment that is parsed apart from its document.

    ``explicit`` tells whether the document uses ``@startuml`` blocks at all and
    ``in_block`` whether the fragment starts inside a block opened on an earlier page.
    """

    explicit: bool = False
    in_block: bool = False


class SupportsDiagram(Protocol):
    def get_diagram(self) -> Diagram: ...


class DiagramEngine(Protocol):
    def parse(
        self, text: str, context: IncludeContext, *, state: Optional[BlockState] = None
    ) -> Sequence[SupportsDiagram]: ...

    def fragment_states(self, texts: Sequence[str], context: IncludeContext) -> List[BlockState]: ...


class Block:
    """Source lines of one diagram; the diagram itself is built on first access."""

    def __init__(self, lines: List[str], line_numbers: List[int]) -> None:
        self.lines = lines
        self.line_numbers = line_numbers
        self._diagram: Optional[Diagram] = None

    def get_diagram(self) -> Diagram:
        if self._diagram is None:
            self._diagram = _build_diagram(self)
        return self._diagram


class TextDiagramEngine:
    def __init__(self, max_include_depth: int = MAX_INCLUDE_DEPTH) -> None:
        self.max_include_depth = max_include_depth

    def parse(
        self,
        text: str,
        context: Optional[IncludeContext] = None,
        *,
        state: Optional[BlockState] = None,
    ) -> List[Block]:
        """Split ``text`` into diagram blocks.

        Without ``state`` the text is a whole document. With it, the text is one page
        fragment: a fragment starting inside an open block keeps its lines up to the
        first ``@enduml`` as that block's continuation.
        """
        if context is None:
            context = IncludeContext()
        numbered = self._expand(text, context)
        if state is None:
            explicit = any(START_RE.match(line) for _, line in numbered)
        else:
            explicit = state.explicit
        if not explicit:
            # stray @enduml lines are blanked rather than dropped to keep line structure
            lines = ["" if END_RE.match(line) else line for _, line in numbered]
            return [Block(lines, [number for number, _ in numbered])]

        blocks: List[Block] = []
        current: Optional[List[Tuple[int, str]]] = None
        start_number = 0
        if state is not None and state.in_block:
            current = []
            start_number = numbered[0][0]
        for number, line in numbered:
            if START_RE.match(line):
                if current is not None:
                    raise DiagramParseError(
                        "E_PARSE_NESTED_BLOCK",
                        f"@startuml inside the block opened at line {start_number}",
                        number,
                    )
                current = []
                start_number = number
            elif END_RE.match(line):
                if current is not None:
                    blocks.append(_explicit_block(start_number, current, number))
                    current = None
            elif current is not None:
                current.append((number, line))
        if current is not None:
            blocks.append(_explicit_block(start_number, current, None))
        return blocks

    def fragment_states(self, texts: Sequence[str], context: Optional[IncludeContext] = None) -> List[BlockState]:
        """Block state at the start of each page fragment, in document order."""
        if context is None:
            context = IncludeContext()
        expanded = [[line for _, line in self._expand(text, context)] for text in texts]
        explicit = any(START_RE.match(line) for lines in expanded for line in lines)
        states: List[BlockState] = []
        in_block = False
        for lines in expanded:
            states.append(BlockState(explicit, in_block))
            for line in lines:
                if START_RE.match(line):
                    in_block = True
                elif END_RE.match(line):
                    in_block = False
        return states

    def _expand(self, text: str, context: IncludeContext) -> List[Tuple[int, str]]:
        numbered = list(enumerate(text.split("\n"), start=1))
        return self._expand_includes(numbered, context, include_stack=[], relative_to=None)

    def _expand_includes(
        self,
        numbered: List[Tuple[int, str]],
        context: IncludeContext,
        *,
        include_stack: List[Path],
        relative_to: Optional[Path],
    ) -> List[Tuple[int, str]]:
        expanded: List[Tuple[int, str]] = []
        for number, line in numbered:
            match = INCLUDE_RE.match(line)
            if not match:
                expanded.append((number, line))
                continue
            path = context.resolve(match.group(1).strip("\"'"), relative_to)
            if len(include_stack) >= self.max_include_depth:
                raise DiagramParseError(
                    "E_INCLUDE_DEPTH",
                    f"maximum include depth exceeded ({self.max_include_depth}) while resolving {path}",
                    number,
                )
            if path in include_stack:
                chain = " -> ".join(str(p) for p in include_stack + [path])
                raise DiagramParseError("E_INCLUDE_CYCLE", f"include cycle detected: {chain}", number)
            included = [(number, included_line) for included_line in context.read(path).split("\n")]
            expanded.extend(
                self._expand_includes(
                    included, context, include_stack=include_stack + [path], relative_to=path.parent
                )
            )
        return expanded


def _explicit_block(start_number: int, body: List[Tuple[int, str]], end_number: Optional[int]) -> Block:
    # The leading empty line stands in for @startuml (or for the newpage line in front of a
    # continued block) and the trailing one for @enduml, so
    # newpage markers are recognised exactly as they are in the whole document.
    lines = [""] + [line for _, line in body]
    numbers = [start_number] + [number for number, _ in body]
    if end_number is not None:
        lines.append("")
        numbers.append(end_number)
    return Block(lines, numbers)


def _build_diagram(block: Block) -> Diagram:
    body = "\n".join(block.lines)
    pages: List[Tuple[PageFragment, PageContent]] = []
    for fragment in split_pages(body):
        first_line = body.count("\n", 0, fragment.offset)
        content = PageContent()
        for offset, raw in enumerate(fragment.text.split("\n")):
            line = raw.strip()
            if not line or line.startswith("'"):
                continue
            title = TITLE_RE.match(line)
            if title:
                content.title = title.group(1)
                continue
            message = MESSAGE_RE.match(line)
            if message:
                content.messages.append(
                    Message(message.group(1), message.group(3), message.group(4) or None, message.group(2) == "-->")
                )
                continue
            if ARROW_TOKEN in line:
                number = block.line_numbers[min(first_line + offset, len(block.line_numbers) - 1)]
                titles = [c.title for _, c in pages] + [content.title]
                return Diagram(
                    DiagramKind.ERROR,
                    ErrorPayload(f"Syntax error: {line}", number),
                    title=next((t for t in titles if t), None),
                )
            content.boxes.append(line)
        pages.append((fragment, content))

    if any(content.messages for _, content in pages):
        first = pages[0][1]
        newpages = [Newpage(content.title or fragment.title) for fragment, content in pages[1:]]
        return Diagram(
            DiagramKind.SEQUENCE,
            SequencePayload([content for _, content in pages], newpages),
            title=first.title,
        )
    if len(pages) > 1:
        children = [
            Diagram(DiagramKind.SIMPLE, SimplePayload(content), title=content.title or fragment.title)
            for fragment, content in pages
        ]
        return Diagram(DiagramKind.PAGED, PagedPayload(children))
    content = pages[0][1]
    return Diagram(DiagramKind.SIMPLE, SimplePayload(content), title=content.title)


class _FontCache:
    """Caches Pillow fonts per pixel size."""

    CANDIDATES = ("DejaVuSans.ttf", "Arial.ttf", "LiberationSans-Regular.ttf", "Helvetica.ttc")

    def __init__(self) -> None:
        self._fonts: dict[int, ImageFont.ImageFont | ImageFont.FreeTypeFont] = {}

    def font(self, size: float) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
        key = max(1, int(round(size)))
        if key in self._fonts:
            return self._fonts[key]
        font = None
        for candidate in self.CANDIDATES:
            try:
                font = ImageFont.truetype(candidate, key)
                break
            except OSError:
                continue
        if font is None:
            font = ImageFont.load_default(size=key)
        self._fonts[key] = font
        return font

    def measure(self, text: str, size: float = FONT_SIZE) -> float:
        return float(self.font(size).getlength(text))


_FONTS = _FontCache()


@dataclass
class _Rect:
    x: float
    y: float
    w: float
    h: float
    fill: Tuple[int, int, int] = BOX_FILL
    outline: Tuple[int, int, int] = INK


@dataclass
class _Line:
    x1: float
    y1: float
    x2: float
    y2: float
    dashed: bool = False
    arrow: bool = False


@dataclass
class _Text:
    x: float
    y: float
    text: str
    fill: Tuple[int, int, int] = INK
    size: float = FONT_SIZE


@dataclass
class _Canvas:
    width: float
    height: float
    items: List[Union[_Rect, _Line, _Text]] = field(default_factory=list)

    def encode(self, fmt: ImageFormat, scale: float) -> bytes:
        if fmt.is_raster:
            return self._encode_raster(fmt, scale)
        return self._encode_svg(scale)

    def _encode_raster(self, fmt: ImageFormat, scale: float) -> bytes:
        size = (_px(self.width, scale), _px(self.height, scale))
        image = Image.new("RGB", size, "white")
        draw = ImageDraw.Draw(image)
        for item in self.items:
            if isinstance(item, _Rect):
                draw.rectangle(
                    [item.x * scale, item.y * scale, (item.x + item.w) * scale, (item.y + item.h) * scale],
                    fill=item.fill,
                    outline=item.outline,
                )
            elif isinstance(item, _Line):
                points = [(item.x1 * scale, item.y1 * scale), (item.x2 * scale, item.y2 * scale)]
                if item.dashed:
                    for segment in _dash_segments(points[0], points[1], 5 * scale):
                        draw.line(segment, fill=INK)
                else:
                    draw.line(points, fill=INK)
                if item.arrow:
                    draw.polygon(_arrow_head(points[0], points[1], 6 * scale), fill=INK)
            else:
                draw.text((item.x * scale, item.y * scale), item.text, fill=item.fill, font=_FONTS.font(item.size * scale))
        output = io.BytesIO()
        image.save(output, format=fmt.pil_format)
        return output.getvalue()

    def _encode_svg(self, scale: float) -> bytes:
        root = ET.Element(
            _q("svg"),
            {
                "width": str(_px(self.width, scale)),
                "height": str(_px(self.height, scale)),
                "viewBox": f"0 0 {_fmt(self.width)} {_fmt(self.height)}",
            },
        )
        for item in self.items:
            if isinstance(item, _Rect):
                ET.SubElement(
                    root,
                    _q("rect"),
                    {
                        "x": _fmt(item.x),
                        "y": _fmt(item.y),
                        "width": _fmt(item.w),
                        "height": _fmt(item.h),
                        "fill": _rgb(item.fill),
                        "stroke": _rgb(item.outline),
                    },
                )
            elif isinstance(item, _Line):
                attrs = {
                    "x1": _fmt(item.x1),
                    "y1": _fmt(item.y1),
                    "x2": _fmt(item.x2),
                    "y2": _fmt(item.y2),
                    "stroke": _rgb(INK),
                }
                if item.dashed:
                    attrs["stroke-dasharray"] = "5 5"
                ET.SubElement(root, _q("line"), attrs)
                if item.arrow:
                    head = _arrow_head((item.x1, item.y1), (item.x2, item.y2), 6)
                    points = " ".join(f"{_fmt(x)},{_fmt(y)}" for x, y in head)
                    ET.SubElement(root, _q("polygon"), {"points": points, "fill": _rgb(INK)})
            else:
                text = ET.SubElement(
                    root,
                    _q("text"),
                    {
                        "x": _fmt(item.x),
                        "y": _fmt(item.y),
                        "font-size": _fmt(item.size),
                        "font-family": "sans-serif",
                        "dominant-baseline": "hanging",
                        "fill": _rgb(item.fill),
                    },
                )
                text.text = item.text
        ET.indent(root, space="  ")
        return ET.tostring(root, encoding="utf-8")


def _layout(diagram: Diagram, index: int) -> _Canvas:
    if diagram.kind is DiagramKind.SEQUENCE:
        title = diagram.title if index == 0 else diagram.payload.newpages[index - 1].title
        return _layout_sequence(diagram.payload, index, title)
    if diagram.kind is DiagramKind.SIMPLE:
        return _layout_boxes(diagram.payload.page, diagram.title)
    if diagram.kind is DiagramKind.ERROR:
        return _layout_error(diagram.payload, diagram.title)
    raise ValueError(f"cannot lay out diagram kind {diagram.kind}")


def _layout_title(canvas: _Canvas, title: Optional[str], y: float) -> float:
    if not title:
        return y
    canvas.items.append(_Text(PAD, y + 4, title, TITLE_INK, FONT_SIZE + 2))
    canvas.width = max(canvas.width, _FONTS.measure(title, FONT_SIZE + 2) + 2 * PAD)
    return y + TITLE_HEIGHT


def _layout_boxes(page: PageContent, title: Optional[str]) -> _Canvas:
    canvas = _Canvas(BOX_MIN_WIDTH + 2 * PAD, 0.0)
    y = _layout_title(canvas, title, PAD)
    box_width = max([BOX_MIN_WIDTH] + [_FONTS.measure(label) + 16 for label in page.boxes])
    for label in page.boxes:
        canvas.items.append(_Rect(PAD, y, box_width, BOX_HEIGHT))
        canvas.items.append(_Text(PAD + 8, y + 5, label))
        y += BOX_HEIGHT + BOX_GAP
    canvas.width = max(canvas.width, box_width + 2 * PAD)
    canvas.height = max(y, PAD + BOX_HEIGHT) + PAD
    return canvas


def _layout_sequence(payload: SequencePayload, index: int, title: Optional[str]) -> _Canvas:
    participants: List[str] = []
    for page in payload.pages:
        for message in page.messages:
            for name in (message.source, message.target):
                if name not in participants:
                    participants.append(name)

    canvas = _Canvas(0.0, 0.0)
    top = _layout_title(canvas, title, PAD)
    centers = {}
    x = PAD
    for name in participants:
        width = max(BOX_MIN_WIDTH, _FONTS.measure(name) + 16)
        canvas.items.append(_Rect(x, top, width, BOX_HEIGHT))
        canvas.items.append(_Text(x + 8, top + 5, name))
        centers[name] = x + width / 2
        x += width + COLUMN_GAP

    messages = payload.pages[index].messages
    y = top + BOX_HEIGHT + ROW_HEIGHT
    for message in messages:
        start, end = centers[message.source], centers[message.target]
        if start == end:
            end = start + COLUMN_GAP / 2
            canvas.items.append(_Line(start, y - 8, end, y - 8, message.dashed))
            canvas.items.append(_Line(end, y - 8, end, y, message.dashed))
            canvas.items.append(_Line(end, y, start, y, message.dashed, arrow=True))
            x = max(x, end + COLUMN_GAP)
        else:
            canvas.items.append(_Line(start, y, end, y, message.dashed, arrow=True))
        if message.label:
            label_x = min(start, end) + 6
            canvas.items.append(_Text(label_x, y - 17, message.label))
            x = max(x, label_x + _FONTS.measure(message.label) + PAD)
        y += ROW_HEIGHT
    bottom = y - ROW_HEIGHT / 2
    for center in centers.values():
        canvas.items.insert(0, _Line(center, top + BOX_HEIGHT, center, bottom, dashed=True))

    canvas.width = max(canvas.width, x - COLUMN_GAP + PAD, BOX_MIN_WIDTH + 2 * PAD)
    canvas.height = bottom + PAD
    return canvas


def _layout_error(payload: ErrorPayload, title: Optional[str]) -> _Canvas:
    canvas = _Canvas(0.0, 0.0)
    y = _layout_title(canvas, title, PAD)
    lines = [payload.message]
    if payload.line is not None:
        lines.insert(0, f"Error line {payload.line}")
    width = max(_FONTS.measure(line) for line in lines) + 16
    height = len(lines) * 18 + 10
    canvas.items.append(_Rect(PAD, y, width, height, ERROR_FILL, ERROR_INK))
    for offset, line in enumerate(lines):
        canvas.items.append(_Text(PAD + 8, y + 5 + offset * 18, line, ERROR_INK))
    canvas.width = max(canvas.width, width + 2 * PAD)
    canvas.height = y + height + PAD
    return canvas


def _dash_segments(
    start: Tuple[float, float], end: Tuple[float, float], dash: float
) -> List[List[Tuple[float, float]]]:
    length = math.hypot(end[0] - start[0], end[1] - start[1])
    if length == 0 or dash <= 0:
        return []
    dx = (end[0] - start[0]) / length
    dy = (end[1] - start[1]) / length
    segments = []
    position = 0.0
    while position < length:
        stop = min(position + dash, length)
        segments.append(
            [(start[0] + dx * position, start[1] + dy * position), (start[0] + dx * stop, start[1] + dy * stop)]
        )
        position += 2 * dash
    return segments


def _arrow_head(
    start: Tuple[float, float], end: Tuple[float, float], size: float
) -> List[Tuple[float, float]]:
    angle = math.atan2(end[1] - start[1], end[0] - start[0])
    left = (end[0] - size * math.cos(angle - 0.4), end[1] - size * math.sin(angle - 0.4))
    right = (end[0] - size * math.cos(angle + 0.4), end[1] - size * math.sin(angle + 0.4))
    return [end, left, right]


def _px(units: float, scale: float) -> int:
    return max(1, int(math.ceil(units * scale - 1e-9)))


def _q(tag: str) -> str:
    return f"{{{SVG_NS}}}{tag}"


def _rgb(color: Tuple[int, int, int]) -> str:
    return "#%02x%02x%02x" % color


def _fmt(value: float) -> str:
    if math.isclose(value, round(value)):
        return str(int(round(value)))
    return f"{value:.3f}".rstrip("0").rstrip(".")
