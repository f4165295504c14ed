"""Output formats and width-based post-processing of rendered pages."""
from __future__ import annotations

import io
import math
import xml.etree.ElementTree as ET
from enum import Enum

from PIL import Image

SVG_NS = "http://www.w3.org/2000/svg"
ET.register_namespace("", SVG_NS)


class ImageFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"
    SVG = "svg"

    @property
    def extension(self) -> str:
        return ".jpg" if self is ImageFormat.JPEG else f".{self.value}"

    @property
    def is_raster(self) -> bool:
        return self is not ImageFormat.SVG

    @property
    def pil_format(self) -> str:
        return self.value.upper()


def fit_to_width(data: bytes, width: int, fmt: ImageFormat) -> bytes:
    """Scale an encoded image to ``width`` pixels, keeping its aspect ratio and format."""
    if width <= 0:
        raise ValueError(f"target width must be > 0, got {width}")
    if not fmt.is_raster:
        return _fit_svg_to_width(data, width)

    with Image.open(io.BytesIO(data)) as image:
        image.load()
        scale = width / image.width
        scaled_height = max(1, int(image.height * scale))
        resized = image.convert("RGB").resize((width, scaled_height), Image.Resampling.LANCZOS)
    output = io.BytesIO()
    resized.save(output, format=fmt.pil_format)
    return output.getvalue()


def _fit_svg_to_width(data: bytes, width: int) -> bytes:
    root = ET.fromstring(data)
    current_width = _parse_dimension(root.get("width"))
    current_height = _parse_dimension(root.get("height"))
    if not current_width or not current_height:
        raise ValueError("SVG output has no numeric width/height to scale")
    if root.get("viewBox") is None:
        root.set("viewBox", f"0 0 {_fmt(current_width)} {_fmt(current_height)}")
    scale = width / current_width
    root.set("width", str(width))
    root.set("height", str(max(1, int(current_height * scale))))
    return ET.tostring(root, encoding="utf-8", xml_declaration=False)


def _parse_dimension(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value.strip().removesuffix("px"))
    except ValueError:
        return None


def _fmt(value: float) -> str:
    if math.isclose(value, round(value)):
        return str(int(round(value)))
    return f"{value:.3f}".rstrip("0").rstrip(".")
