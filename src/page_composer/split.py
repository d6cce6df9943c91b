"""
Split pages into horizontal bands along user-drawn lines.

Why this module exists:
- Isolates the band geometry from sessions, history and rendering.
- Works purely on page metadata: segments share their parent's raster and
  differ only in bounds/crop, so no pixels are touched here.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from .model import CropRect, Page, Point, Polyline, renumber, sort_pages
from .utils import UserError, new_id


MIN_BAND_HEIGHT_PX = 5
SPLIT_ORDER_EPSILON = 0.001


class SplitOutcome(Enum):
    SPLIT = "split"
    NO_LINES = "no-lines"
    NO_SEGMENTS_PRODUCED = "no-segments-produced"


@dataclass(frozen=True)
class SplitResult:
    pages: Tuple[Page, ...]
    outcome: SplitOutcome

    @property
    def changed(self) -> bool:
        return self.outcome is SplitOutcome.SPLIT


@dataclass(frozen=True)
class SurfaceTransform:
    """
    Scale from a drawing surface to the raster it displays.

    Computed once from (display_size, source_size) so split geometry never
    depends on a live widget.
    """

    scale_x: float = 1.0
    scale_y: float = 1.0

    @classmethod
    def between(
        cls, display_size: Tuple[float, float], source_size: Tuple[float, float]
    ) -> "SurfaceTransform":
        display_w, display_h = display_size
        source_w, source_h = source_size
        if display_w <= 0 or display_h <= 0:
            raise UserError("Display surface size must be positive.")
        if source_w <= 0 or source_h <= 0:
            raise UserError("Source raster size must be positive.")
        return cls(scale_x=source_w / display_w, scale_y=source_h / display_h)

    def apply(self, point: Point) -> Point:
        x, y = point
        return (x * self.scale_x, y * self.scale_y)

    def apply_line(self, line: Iterable[Point]) -> Polyline:
        return tuple(self.apply(point) for point in line)


IDENTITY = SurfaceTransform()


def _mean_y(line: Polyline) -> float:
    return sum(y for _, y in line) / len(line)


def compute_bands(
    lines: Sequence[Polyline],
    top: int,
    bottom: int,
    min_band_height: int = MIN_BAND_HEIGHT_PX,
) -> List[Tuple[int, int]]:
    """
    Return (top, bottom) pixel bands between the lines, top to bottom.

    Each line closes the band above it at its lowest Y and opens the next
    band at its highest Y, so a slanted or wavy line costs its own height.
    Bands thinner than min_band_height are dropped.
    """

    ordered = sorted((line for line in lines if line), key=_mean_y)
    candidates: List[Tuple[int, int]] = []
    boundary = top
    for line in ordered:
        ys = [y for _, y in line]
        line_top = min(bottom, max(top, int(round(min(ys)))))
        line_bottom = min(bottom, max(top, int(round(max(ys)))))
        candidates.append((boundary, line_top))
        boundary = max(boundary, line_bottom)
    candidates.append((boundary, bottom))

    return [(start, end) for start, end in candidates if end - start >= min_band_height]


def _order_epsilon(segment_count: int) -> float:
    """Keep every sibling strictly below the next integer order."""

    return min(SPLIT_ORDER_EPSILON, 1.0 / (segment_count + 1))


def split_page(
    page: Page,
    lines: Optional[Sequence[Sequence[Point]]] = None,
    transform: SurfaceTransform = IDENTITY,
    min_band_height: int = MIN_BAND_HEIGHT_PX,
) -> SplitResult:
    """
    Divide a page into full-width bands along its split lines.

    `lines` default to the page's pending split lines, already in raster
    space; lines drawn on a scaled preview are passed with the matching
    transform.
    """

    if lines is None:
        raster_lines: List[Polyline] = list(page.split_lines)
    else:
        raster_lines = [transform.apply_line(line) for line in lines]
    raster_lines = [line for line in raster_lines if line]

    if not raster_lines:
        return SplitResult(pages=(page,), outcome=SplitOutcome.NO_LINES)
    if page.is_segment:
        raise UserError(f"Page {page.name} is a split segment and cannot be split again.")

    bounds = page.bounds
    bands = compute_bands(raster_lines, bounds.y, bounds.bottom, min_band_height)
    if not bands:
        return SplitResult(pages=(page,), outcome=SplitOutcome.NO_SEGMENTS_PRODUCED)

    epsilon = _order_epsilon(len(bands))
    segments: List[Page] = []
    for index, (band_top, band_bottom) in enumerate(bands):
        band = CropRect(bounds.x, band_top, bounds.width, band_bottom - band_top)
        segments.append(
            replace(
                page,
                id=new_id("page"),
                bounds=band,
                crop=band,
                rotation=0,
                order=page.order + index * epsilon,
                split_lines=(),
                parent_page_id=page.id,
                split_index=index,
                is_original=True,
            )
        )
    return SplitResult(pages=tuple(segments), outcome=SplitOutcome.SPLIT)


def apply_split_to_pages(
    pages: Sequence[Page], min_band_height: int = MIN_BAND_HEIGHT_PX
) -> Tuple[Tuple[Page, ...], List[SplitResult]]:
    """
    Split every page with pending lines, then re-sort and renumber.

    Returns the new page tuple plus one result per input page so callers can
    tell "nothing requested" from "nothing produced".
    """

    results = [split_page(page, min_band_height=min_band_height) for page in pages]
    combined: List[Page] = []
    for result in results:
        combined.extend(result.pages)
    return renumber(sort_pages(combined)), results
