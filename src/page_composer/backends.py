"""
Raster and PDF backends.

Why this module exists:
- The engine only talks to the small interfaces below, so tests can swap in
  fakes and the pipelines never import Pillow or PyMuPDF directly.
- The shipped implementations keep all Pillow and PyMuPDF calls in one place.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import io
import threading
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from .model import CropRect
from .resize import PageSize, Placement
from .utils import DecodeError, UserError


@dataclass(frozen=True)
class DecodedRaster:
    width: int
    height: int
    pixels: Any


class RasterCodec(Protocol):
    async def decode(self, data: bytes) -> DecodedRaster: ...

    async def fit_within(self, data: bytes, max_dimension: int) -> Tuple[bytes, int, int]: ...

    def new_surface(self, width: int, height: int) -> Any: ...

    def draw(
        self,
        surface: Any,
        pixels: Any,
        src_rect: CropRect,
        dst_rect: CropRect,
        rotation: int,
    ) -> None: ...

    def encode(self, surface: Any, fmt: str) -> bytes: ...


class OpenedDocument(Protocol):
    page_count: int

    def get_page(self, index: int) -> Any: ...

    def close(self) -> None: ...


class DocumentCodec(Protocol):
    def open(self, data: bytes) -> OpenedDocument: ...

    async def rasterize(self, page: Any, scale: float) -> DecodedRaster: ...


class DocumentReshaper(Protocol):
    def page_sizes(self, data: bytes) -> List[PageSize]: ...

    async def reshape(self, data: bytes, placements: Sequence[Optional[Placement]]) -> bytes: ...


class DocumentBuilder(Protocol):
    def add_page(self, width: float, height: float) -> Any: ...

    def embed_raster(self, data: bytes) -> Any: ...

    def draw_image(self, page: Any, handle: Any, rect: CropRect) -> None: ...

    def import_pages(self, data: bytes) -> int: ...

    def save(self) -> bytes: ...

    def close(self) -> None: ...


def _open_pdf(data: bytes) -> fitz.Document:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:  # PyMuPDF raises several unrelated types here
        raise DecodeError(f"Cannot open PDF data: {exc}") from exc
    if doc.needs_pass:
        doc.close()
        raise DecodeError("PDF is password protected.")
    return doc


def _encode_format(fmt: str) -> str:
    if fmt.lower() != "png":
        raise UserError("Only PNG output is supported for now.")
    return "PNG"


class PillowRasterCodec:
    """RasterCodec on Pillow images."""

    def _open(self, data: bytes) -> Image.Image:
        try:
            with Image.open(io.BytesIO(data)) as opened:
                # Copy so the pixel data outlives the buffer-backed file.
                image = opened.copy()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            raise DecodeError(f"Cannot decode image data: {exc}") from exc
        if image.width <= 0 or image.height <= 0:
            raise DecodeError("Image has no pixels.")
        return image

    async def decode(self, data: bytes) -> DecodedRaster:
        image = await asyncio.to_thread(self._open, data)
        return DecodedRaster(width=image.width, height=image.height, pixels=image)

    async def fit_within(self, data: bytes, max_dimension: int) -> Tuple[bytes, int, int]:
        """
        Downscale so neither side exceeds max_dimension.

        Small images keep their original bytes untouched.
        """

        return await asyncio.to_thread(self._fit_within, data, max_dimension)

    def _fit_within(self, data: bytes, max_dimension: int) -> Tuple[bytes, int, int]:
        image = self._open(data)
        width, height = image.size
        if max(width, height) <= max_dimension:
            return data, width, height

        scale = max_dimension / max(width, height)
        size = (max(1, round(width * scale)), max(1, round(height * scale)))
        resized = image.resize(size, Image.Resampling.LANCZOS)
        return self.encode(resized, "png"), size[0], size[1]

    def new_surface(self, width: int, height: int) -> Image.Image:
        return Image.new("RGBA", (width, height), (0, 0, 0, 0))

    def draw(
        self,
        surface: Image.Image,
        pixels: Image.Image,
        src_rect: CropRect,
        dst_rect: CropRect,
        rotation: int,
    ) -> None:
        """
        Draw src_rect of pixels into dst_rect of surface.

        Rotation is clockwise about the center of dst_rect; the rotated
        content keeps the dst_rect size, so quarter turns of non-square
        regions are clipped exactly like a canvas rotate-then-draw.
        """

        region = pixels.crop(src_rect.box())
        if region.size != (dst_rect.width, dst_rect.height):
            region = region.resize((dst_rect.width, dst_rect.height), Image.Resampling.LANCZOS)
        region = region.convert("RGBA")
        if rotation:
            # Pillow rotates counter-clockwise; use negative for clockwise.
            region = region.rotate(-rotation, resample=Image.Resampling.BICUBIC, expand=False)
        surface.alpha_composite(region, dest=(dst_rect.x, dst_rect.y))

    def encode(self, surface: Image.Image, fmt: str) -> bytes:
        buffer = io.BytesIO()
        surface.save(buffer, format=_encode_format(fmt))
        return buffer.getvalue()


@dataclass(frozen=True)
class FitzPageRef:
    """A page of an open document; loaded when it is rendered."""

    doc: fitz.Document
    index: int


class FitzDocument:
    """An opened PDF; pages are loaded on demand."""

    def __init__(self, doc: fitz.Document, lock: threading.Lock) -> None:
        self._doc = doc
        self._lock = lock
        self.page_count = int(doc.page_count)

    def get_page(self, index: int) -> FitzPageRef:
        return FitzPageRef(self._doc, index)

    def close(self) -> None:
        # Waits for a render that outlived its deadline.
        with self._lock:
            self._doc.close()

    def __enter__(self) -> "FitzDocument":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FitzDocumentCodec:
    """
    DocumentCodec on PyMuPDF.

    Rendering runs in a worker thread. A render that times out keeps running
    there, so every document call on this codec holds one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def open(self, data: bytes) -> FitzDocument:
        doc = _open_pdf(data)
        if doc.page_count <= 0:
            doc.close()
            raise DecodeError("PDF has no pages.")
        return FitzDocument(doc, self._lock)

    async def rasterize(self, page: FitzPageRef, scale: float) -> DecodedRaster:
        return await asyncio.to_thread(self._render, page, scale)

    def _render(self, page: FitzPageRef, scale: float) -> DecodedRaster:
        with self._lock:
            try:
                loaded = page.doc.load_page(page.index)
                pixmap = loaded.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            except Exception as exc:
                raise DecodeError(f"Cannot render PDF page {page.index + 1}: {exc}") from exc
        image = Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)
        return DecodedRaster(width=image.width, height=image.height, pixels=image)


@dataclass
class RasterHandle:
    """An image waiting to be placed; the first placement embeds it."""

    data: bytes
    xref: int = 0


class FitzDocumentBuilder:
    """DocumentBuilder writing a new PDF with PyMuPDF."""

    def __init__(self) -> None:
        self._doc = fitz.open()

    @property
    def page_count(self) -> int:
        return int(self._doc.page_count)

    def add_page(self, width: float, height: float) -> fitz.Page:
        return self._doc.new_page(width=width, height=height)

    def embed_raster(self, data: bytes) -> RasterHandle:
        return RasterHandle(data=data)

    def draw_image(self, page: fitz.Page, handle: RasterHandle, rect: CropRect) -> None:
        target = fitz.Rect(rect.x, rect.y, rect.right, rect.bottom)
        if handle.xref:
            page.insert_image(target, xref=handle.xref)
        else:
            handle.xref = page.insert_image(target, stream=handle.data)

    def import_pages(self, data: bytes) -> int:
        """Append every page of another PDF; returns how many were added."""

        with _open_pdf(data) as source:
            count = int(source.page_count)
            self._doc.insert_pdf(source)
        return count

    def save(self) -> bytes:
        if self._doc.page_count == 0:
            raise UserError("Cannot save a PDF with no pages.")
        return self._doc.tobytes(garbage=4, deflate=True)

    def close(self) -> None:
        self._doc.close()


class FitzDocumentReshaper:
    """DocumentReshaper on PyMuPDF: placed pages are redrawn, the rest copied."""

    def page_sizes(self, data: bytes) -> List[PageSize]:
        with _open_pdf(data) as doc:
            return [(page.rect.width, page.rect.height) for page in doc]

    async def reshape(self, data: bytes, placements: Sequence[Optional[Placement]]) -> bytes:
        return await asyncio.to_thread(self._reshape, data, placements)

    def _reshape(self, data: bytes, placements: Sequence[Optional[Placement]]) -> bytes:
        with _open_pdf(data) as source:
            if len(placements) != source.page_count:
                raise UserError(
                    f"Got {len(placements)} placement(s) for {source.page_count} page(s)."
                )
            target = fitz.open()
            try:
                for index, placement in enumerate(placements):
                    if placement is None:
                        target.insert_pdf(source, from_page=index, to_page=index)
                        continue
                    page = target.new_page(width=placement.page_width, height=placement.page_height)
                    if not source[index].get_contents():
                        # Nothing to draw; the blank page keeps its new size.
                        continue
                    rect = fitz.Rect(placement.x0, placement.y0, placement.x1, placement.y1)
                    page.show_pdf_page(rect, source, index)
                return target.tobytes(garbage=4, deflate=True)
            finally:
                target.close()
