"""Public API for pagerender."""
from loguru import logger

from .engine import BlockState, DiagramKind, DiagramParseError, IncludeContext, TextDiagramEngine, include_context
from .imaging import ImageFormat, fit_to_width
from .pages import PageFragment, split_pages
from .render import (
    ALL_PAGES,
    PARTIAL_RENDER_MARKER,
    CancellationToken,
    DocumentRenderer,
    RenderCache,
    RenderCacheItem,
    RenderingCancelled,
    RenderRequest,
    RenderResult,
    Titles,
    apply_zoom,
    extract_titles,
    outline,
    render_and_save,
    render_document,
    save_images,
    scale_factor,
)

logger.disable("pagerender")

__all__ = [
    "ALL_PAGES",
    "BlockState",
    "PARTIAL_RENDER_MARKER",
    "CancellationToken",
    "DiagramKind",
    "DiagramParseError",
    "DocumentRenderer",
    "ImageFormat",
    "IncludeContext",
    "PageFragment",
    "RenderCache",
    "RenderCacheItem",
    "RenderRequest",
    "RenderResult",
    "RenderingCancelled",
    "TextDiagramEngine",
    "Titles",
    "apply_zoom",
    "extract_titles",
    "fit_to_width",
    "include_context",
    "outline",
    "render_and_save",
    "render_document",
    "save_images",
    "scale_factor",
    "split_pages",
]
