"""
Page and session data model.

Why this module exists:
- Pages are immutable values, so history entries and job snapshots can hold
  them without defensive copies.
- Every edit goes through a small function here that returns a new Page and
  keeps the invariants (rotation in quarter turns, crop inside bounds, split
  lines only on unsplit pages).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Sequence, Tuple

from .history import HistoryManager
from .utils import UserError, new_id, normalize_rotation


Point = Tuple[float, float]
Polyline = Tuple[Point, ...]
BBox = Tuple[int, int, int, int]


@dataclass(frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full(cls, width: int, height: int) -> "CropRect":
        return cls(0, 0, width, height)

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def right(self) -> int:
        return self.x + self.width

    def box(self) -> BBox:
        """Return (left, top, right, bottom) for Pillow-style cropping."""

        return (self.x, self.y, self.right, self.bottom)

    def clamp_to(self, bounds: "CropRect") -> "CropRect":
        """Intersect with bounds; raise if nothing is left."""

        left = max(self.x, bounds.x)
        top = max(self.y, bounds.y)
        right = min(self.right, bounds.right)
        bottom = min(self.bottom, bounds.bottom)
        if right <= left or bottom <= top:
            raise UserError(f"Crop {self.box()} lies outside page bounds {bounds.box()}.")
        return CropRect(left, top, right - left, bottom - top)


@dataclass(frozen=True)
class Page:
    """
    A document page under edit.

    `raster` is shared (never copied) between a page, its split segments,
    history entries and job snapshots.
    """

    id: str
    name: str
    raster: bytes
    raster_width: int
    raster_height: int
    bounds: CropRect
    crop: CropRect
    order: float = 0.0
    rotation: int = 0
    split_lines: Tuple[Polyline, ...] = ()
    parent_page_id: Optional[str] = None
    split_index: Optional[int] = None
    original_raster: Optional[bytes] = None
    original_size: Optional[Tuple[int, int]] = None
    is_original: bool = True

    def __post_init__(self) -> None:
        if self.rotation not in (0, 90, 180, 270):
            raise UserError(f"Page rotation must be 0, 90, 180 or 270, got {self.rotation}.")
        if self.split_lines and self.parent_page_id is not None:
            raise UserError("Split segments cannot carry split lines.")

    @property
    def is_segment(self) -> bool:
        return self.parent_page_id is not None

    @property
    def width(self) -> int:
        return self.crop.width

    @property
    def height(self) -> int:
        return self.crop.height


def make_page(
    name: str,
    raster: bytes,
    width: int,
    height: int,
    order: float,
    page_id: str | None = None,
) -> Page:
    """Build a fresh, unsplit page covering the whole raster."""

    if width <= 0 or height <= 0:
        raise UserError(f"Page {name} has an empty raster ({width}x{height}).")
    full = CropRect.full(width, height)
    return Page(
        id=page_id or new_id("page"),
        name=name,
        raster=raster,
        raster_width=width,
        raster_height=height,
        bounds=full,
        crop=full,
        order=float(order),
        original_raster=raster,
        original_size=(width, height),
    )


def rotate_page(page: Page, direction: str) -> Page:
    """Rotate a quarter turn; "right" is clockwise."""

    if direction == "right":
        delta = 90
    elif direction == "left":
        delta = -90
    else:
        raise UserError("Rotation direction must be 'left' or 'right'.")
    return replace(page, rotation=normalize_rotation(page.rotation + delta), is_original=False)


def set_rotation(page: Page, degrees: int) -> Page:
    rotation = normalize_rotation(degrees)
    if rotation == page.rotation:
        return page
    return replace(page, rotation=rotation, is_original=False)


def set_crop(page: Page, crop: CropRect) -> Page:
    """Adjust the output crop; it never leaves the page bounds."""

    return replace(page, crop=crop.clamp_to(page.bounds), is_original=False)


def add_split_line(page: Page, line: Sequence[Point]) -> Page:
    """Append a polyline (already in raster space) to the pending split lines."""

    if page.is_segment:
        raise UserError(f"Page {page.name} is a split segment and cannot be split again.")
    points: Polyline = tuple((float(x), float(y)) for x, y in line)
    if not points:
        raise UserError("A split line needs at least one point.")
    return replace(page, split_lines=page.split_lines + (points,))


def clear_split_lines(page: Page) -> Page:
    if not page.split_lines:
        return page
    return replace(page, split_lines=())


def replace_raster(page: Page, raster: bytes, width: int, height: int) -> Page:
    """
    Swap in edited pixels (filters, retouching) of the same page.

    The pre-edit raster stays available through `original_raster`.
    """

    if page.is_segment:
        raise UserError(f"Page {page.name} is a split segment; edit its source page instead.")
    if width <= 0 or height <= 0:
        raise UserError(f"Edited raster for {page.name} is empty ({width}x{height}).")
    full = CropRect.full(width, height)
    has_backup = page.original_raster is not None
    return replace(
        page,
        raster=raster,
        raster_width=width,
        raster_height=height,
        bounds=full,
        crop=full,
        split_lines=(),
        original_raster=page.original_raster if has_backup else page.raster,
        original_size=page.original_size if has_backup else (page.raster_width, page.raster_height),
        is_original=False,
    )


def reset_to_original(page: Page) -> Page:
    """
    Drop rotation, crop and raster edits.

    Segments keep their band: resetting one only clears its rotation and crop.
    """

    if page.is_original:
        return page
    restore_raster = (
        not page.is_segment
        and page.original_raster is not None
        and page.original_raster is not page.raster
        and page.original_size is not None
    )
    if not restore_raster:
        return replace(page, crop=page.bounds, rotation=0, is_original=True)

    width, height = page.original_size
    full = CropRect.full(width, height)
    return replace(
        page,
        raster=page.original_raster,
        raster_width=width,
        raster_height=height,
        bounds=full,
        crop=full,
        rotation=0,
        is_original=True,
    )


def sort_pages(pages: Sequence[Page]) -> Tuple[Page, ...]:
    """Stable sort by order key."""

    return tuple(sorted(pages, key=lambda page: page.order))


def renumber(pages: Sequence[Page]) -> Tuple[Page, ...]:
    """Reassign integer order keys 0..N-1 following the current sequence."""

    return tuple(
        page if page.order == float(index) else replace(page, order=float(index))
        for index, page in enumerate(pages)
    )


@dataclass
class Session:
    """An isolated editing workspace ("tab") and its committed page list."""

    id: str
    name: str
    created_at: float
    modified_at: float
    pages: Tuple[Page, ...] = ()
    history: HistoryManager = field(default_factory=HistoryManager, repr=False)

    def metadata(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "page_count": len(self.pages),
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }
