"""
In-memory stand-ins for the raster and PDF backends.

Rasters are tiny byte strings like b"img:100:200" so tests can check sizes
and draw calls without Pillow or PyMuPDF.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple


SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from page_composer.model import CropRect  # noqa: E402
from page_composer.resize import PageSize, Placement  # noqa: E402
from page_composer.utils import DecodeError, UserError  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_raster(width: int, height: int, tag: str = "") -> bytes:
    text = f"img:{width}:{height}"
    if tag:
        text = f"{text}:{tag}"
    return text.encode("ascii")


def raster_size(data: bytes) -> Tuple[int, int]:
    parts = data.decode("ascii").split(":")
    return int(parts[1]), int(parts[2])


def make_pdf(width: int, height: int, pages: int) -> bytes:
    return f"pdf:{width}:{height}:{pages}".encode("ascii")


def _parse_pdf(data: bytes) -> Tuple[int, int, int]:
    try:
        kind, width, height, pages = data.decode("ascii").split(":")
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"not a fake pdf: {data[:12]!r}") from exc
    if kind != "pdf":
        raise DecodeError(f"not a fake pdf: {data[:12]!r}")
    return int(width), int(height), int(pages)


class FakeDecoded:
    def __init__(self, width: int, height: int, pixels: Any) -> None:
        self.width = width
        self.height = height
        self.pixels = pixels


class FakeRasterCodec:
    """
    RasterCodec over b"img:W:H" payloads.

    Rasters containing b"slow" sleep for `slow_seconds` before decoding;
    anything that is not an img payload raises DecodeError.
    """

    def __init__(self, slow_seconds: float = 0.0) -> None:
        self.slow_seconds = slow_seconds
        self.decoded: List[bytes] = []

    def _parse(self, data: bytes) -> Tuple[int, int]:
        try:
            parts = data.decode("ascii").split(":")
            if parts[0] != "img":
                raise ValueError(parts[0])
            return int(parts[1]), int(parts[2])
        except (UnicodeDecodeError, ValueError, IndexError) as exc:
            raise DecodeError(f"Cannot decode image data: {exc}") from exc

    async def decode(self, data: bytes) -> FakeDecoded:
        if b"slow" in data:
            await asyncio.sleep(self.slow_seconds)
        width, height = self._parse(data)
        self.decoded.append(data)
        return FakeDecoded(width, height, data)

    async def fit_within(self, data: bytes, max_dimension: int) -> Tuple[bytes, int, int]:
        if b"slow" in data:
            await asyncio.sleep(self.slow_seconds)
        width, height = self._parse(data)
        if max(width, height) <= max_dimension:
            return data, width, height
        scale = max_dimension / max(width, height)
        width, height = max(1, round(width * scale)), max(1, round(height * scale))
        return make_raster(width, height, "fit"), width, height

    def new_surface(self, width: int, height: int) -> Dict[str, Any]:
        return {"size": (width, height), "draws": []}

    def draw(
        self,
        surface: Dict[str, Any],
        pixels: Any,
        src_rect: CropRect,
        dst_rect: CropRect,
        rotation: int,
    ) -> None:
        surface["draws"].append(
            {"pixels": pixels, "src": src_rect, "dst": dst_rect, "rotation": rotation}
        )

    def encode(self, surface: Dict[str, Any], fmt: str) -> bytes:
        if fmt != "png":
            raise UserError("Only PNG output is supported for now.")
        width, height = surface["size"]
        tag = "blank"
        if surface["draws"]:
            last = surface["draws"][-1]
            tag = f"r{last['rotation']}y{last['src'].y}"
        return make_raster(width, height, tag)


class FakeDocument:
    def __init__(self, width: int, height: int, pages: int) -> None:
        self.width = width
        self.height = height
        self.page_count = pages
        self.closed = False

    def get_page(self, index: int) -> Tuple[int, int, int]:
        if not 0 <= index < self.page_count:
            raise IndexError(index)
        return (self.width, self.height, index)

    def close(self) -> None:
        self.closed = True


class FakeDocumentCodec:
    def __init__(self) -> None:
        self.opened: List[FakeDocument] = []

    def open(self, data: bytes) -> FakeDocument:
        width, height, pages = _parse_pdf(data)
        if pages <= 0:
            raise DecodeError("PDF has no pages.")
        document = FakeDocument(width, height, pages)
        self.opened.append(document)
        return document

    async def rasterize(self, page: Tuple[int, int, int], scale: float) -> FakeDecoded:
        width, height, _ = page
        width, height = round(width * scale), round(height * scale)
        return FakeDecoded(width, height, {"size": (width, height), "draws": []})


class FakeDocumentBuilder:
    def __init__(self) -> None:
        self.pages: List[Dict[str, Any]] = []
        self.closed = False

    def add_page(self, width: float, height: float) -> Dict[str, Any]:
        page = {"size": (width, height), "images": []}
        self.pages.append(page)
        return page

    def embed_raster(self, data: bytes) -> bytes:
        return data

    def draw_image(self, page: Dict[str, Any], handle: bytes, rect: CropRect) -> None:
        page["images"].append((handle, rect))

    def import_pages(self, data: bytes) -> int:
        width, height, pages = _parse_pdf(data)
        for _ in range(pages):
            self.add_page(width, height)
        return pages

    def save(self) -> bytes:
        if not self.pages:
            raise UserError("Cannot save a PDF with no pages.")
        return f"fakepdf:{len(self.pages)}".encode("ascii")

    def close(self) -> None:
        self.closed = True


class BuilderFactory:
    """Callable builder factory that remembers what it built."""

    def __init__(self) -> None:
        self.builders: List[FakeDocumentBuilder] = []

    def __call__(self) -> FakeDocumentBuilder:
        builder = FakeDocumentBuilder()
        self.builders.append(builder)
        return builder

    @property
    def last(self) -> FakeDocumentBuilder:
        return self.builders[-1]


def make_sized_pdf(*sizes: PageSize) -> bytes:
    return ("sized:" + ";".join(f"{w:g}x{h:g}" for w, h in sizes)).encode("ascii")


class FakeDocumentReshaper:
    """
    DocumentReshaper over fake PDFs.

    Reshaped output is b"sized:WxH;..." so tests can read page sizes back.
    Setting `slow_seconds` makes every reshape sleep first.
    """

    def __init__(self, slow_seconds: float = 0.0) -> None:
        self.slow_seconds = slow_seconds
        self.calls: List[List[Optional[Placement]]] = []

    def page_sizes(self, data: bytes) -> List[PageSize]:
        if data.startswith(b"sized:"):
            entries = data.decode("ascii")[len("sized:"):].split(";")
            return [tuple(float(part) for part in entry.split("x")) for entry in entries]
        width, height, pages = _parse_pdf(data)
        return [(float(width), float(height))] * pages

    async def reshape(self, data: bytes, placements: Sequence[Optional[Placement]]) -> bytes:
        if self.slow_seconds:
            await asyncio.sleep(self.slow_seconds)
        sizes = self.page_sizes(data)
        if len(sizes) != len(placements):
            raise UserError("placement count mismatch")
        self.calls.append(list(placements))
        return make_sized_pdf(
            *[placement.size if placement is not None else size for size, placement in zip(sizes, placements)]
        )
