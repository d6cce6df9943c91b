"""
Render a page's final raster.

The output surface is the size of the page crop; the crop region of the
source raster is drawn into it with the page rotation applied about the
surface center, then encoded losslessly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .model import CropRect, Page
from .utils import DecodeError

if TYPE_CHECKING:
    from .backends import RasterCodec


@dataclass(frozen=True)
class ComposedRaster:
    page_id: str
    data: bytes
    width: int
    height: int


async def compose_page(page: Page, codec: RasterCodec, output_format: str = "png") -> ComposedRaster:
    """Decode, crop, rotate and encode one page."""

    crop = page.crop
    surface = codec.new_surface(crop.width, crop.height)

    try:
        decoded = await codec.decode(page.raster)
    except DecodeError as exc:
        raise DecodeError(f"Page {page.name}: {exc}") from exc

    if (decoded.width, decoded.height) != (page.raster_width, page.raster_height):
        # The raster was re-encoded at another size; map the crop across.
        scale_x = decoded.width / page.raster_width
        scale_y = decoded.height / page.raster_height
        source_rect = CropRect(
            round(crop.x * scale_x),
            round(crop.y * scale_y),
            max(1, round(crop.width * scale_x)),
            max(1, round(crop.height * scale_y)),
        )
    else:
        source_rect = crop

    def render() -> bytes:
        codec.draw(
            surface,
            decoded.pixels,
            source_rect,
            CropRect.full(crop.width, crop.height),
            page.rotation,
        )
        return codec.encode(surface, output_format)

    return ComposedRaster(
        page_id=page.id,
        data=await asyncio.to_thread(render),
        width=crop.width,
        height=crop.height,
    )
