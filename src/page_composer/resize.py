"""
Plan page-geometry edits for a finished PDF.

Steps work on whole PDF pages rather than rasters:
- a margin step shifts page content by a margin toward one edge, keeping the
  page size (content pushed past the far edge is clipped);
- portrait turns landscape pages into `portrait_aspect` tall pages with the
  content scaled to the width and centered vertically;
- landscape widens portrait pages into squares with the content centered;
- reset goes back to the document as it was loaded.

Each step targets one page or every page. Planning is pure arithmetic on page
sizes; a `DocumentReshaper` backend applies the placements.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import List, Optional, Sequence, Tuple

from .utils import UserError


PageSize = Tuple[float, float]


class Direction(Enum):
    TOP = "top"
    RIGHT = "right"
    BOTTOM = "bottom"
    LEFT = "left"


class ResizeKind(Enum):
    MARGIN = "margin"
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"
    RESET = "reset"


@dataclass(frozen=True)
class ResizeStep:
    kind: ResizeKind
    direction: Optional[Direction] = None
    margin: float = 0.0
    page: Optional[int] = None  # 1-based; None means every page

    def __post_init__(self) -> None:
        if (self.kind is ResizeKind.MARGIN) != (self.direction is not None):
            raise UserError("A margin step needs a direction; other steps take none.")

    @property
    def label(self) -> str:
        if self.kind is ResizeKind.MARGIN and self.direction is not None:
            text = f"{self.direction.value} margin {self.margin:g}"
        else:
            text = self.kind.value
        scope = "all pages" if self.page is None else f"page {self.page}"
        return f"{text} ({scope})"


@dataclass(frozen=True)
class Placement:
    """
    Where a source page lands on its new page.

    Coordinates are PDF points with the origin at the top-left; the target
    rectangle may reach past the page edges.
    """

    page_width: float
    page_height: float
    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def size(self) -> PageSize:
        return (self.page_width, self.page_height)


def margin_placement(size: PageSize, direction: Direction, margin: float) -> Optional[Placement]:
    width, height = size
    if margin == 0:
        return None
    dx, dy = {
        Direction.TOP: (0.0, margin),
        Direction.RIGHT: (-margin, 0.0),
        Direction.BOTTOM: (0.0, -margin),
        Direction.LEFT: (margin, 0.0),
    }[direction]
    return Placement(width, height, dx, dy, width + dx, height + dy)


def portrait_placement(size: PageSize, aspect: float = 1.5) -> Optional[Placement]:
    """Landscape or square pages become width h, height h * aspect."""

    width, height = size
    if width < height:
        return None
    new_height = height * aspect
    scale = height / width
    content_height = height * scale
    top = (new_height - content_height) / 2
    return Placement(height, new_height, 0.0, top, height, top + content_height)


def landscape_placement(size: PageSize) -> Optional[Placement]:
    """Portrait or square pages are widened to their height."""

    width, height = size
    if height < width:
        return None
    left = (height - width) / 2
    return Placement(height, height, left, 0.0, left + width, height)


def plan_step(
    sizes: Sequence[PageSize],
    step: ResizeStep,
    portrait_aspect: float = 1.5,
) -> List[Optional[Placement]]:
    """
    One entry per page: a Placement, or None when the page is left alone.

    Reset steps are not planned; the caller restores the loaded document.
    """

    if step.kind is ResizeKind.RESET:
        raise UserError("Reset is not a placement step.")
    if step.page is not None and not 1 <= step.page <= len(sizes):
        raise UserError(f"Page {step.page} is out of range. Document has {len(sizes)} pages.")

    placements: List[Optional[Placement]] = []
    for number, size in enumerate(sizes, start=1):
        if step.page is not None and number != step.page:
            placements.append(None)
        elif step.direction is not None:
            placements.append(margin_placement(size, step.direction, step.margin))
        elif step.kind is ResizeKind.PORTRAIT:
            placements.append(portrait_placement(size, portrait_aspect))
        else:
            placements.append(landscape_placement(size))
    return placements


def resized_sizes(
    sizes: Sequence[PageSize], placements: Sequence[Optional[Placement]]
) -> List[PageSize]:
    return [
        placement.size if placement is not None else size
        for size, placement in zip(sizes, placements)
    ]


def parse_resize_steps(spec: str, page: int | None = None) -> List[ResizeStep]:
    """
    Parse "top:20,left:10,portrait,reset" into steps, in order.

    `page` (1-based) scopes every step to one page; None means all pages.
    """

    compact = spec.replace(" ", "")
    if not compact:
        raise UserError("Resize steps are empty.")
    tokens = compact.split(",")
    if any(token == "" for token in tokens):
        raise UserError("Resize steps contain an empty token (check commas).")
    if page is not None and page < 1:
        raise UserError("Page numbers are 1-based and must be >= 1.")

    directions = {direction.value: direction for direction in Direction}
    steps: List[ResizeStep] = []
    for token in tokens:
        name, _, value = token.lower().partition(":")
        if name in directions:
            invalid = UserError(f"Invalid margin '{value}' in step '{token}'. Use EDGE:POINTS.")
            if not value.isascii():
                raise invalid
            try:
                margin = float(value)
            except ValueError:
                raise invalid from None
            if not math.isfinite(margin) or margin < 0:
                raise UserError(f"Margin must be a finite number >= 0, got '{value}'.")
            steps.append(ResizeStep(ResizeKind.MARGIN, directions[name], margin, page))
        elif name in ("portrait", "landscape", "reset") and not value:
            steps.append(ResizeStep(ResizeKind(name), page=page))
        else:
            raise UserError(
                f"Invalid resize step '{token}'. Use top|right|bottom|left:POINTS, "
                "portrait, landscape or reset."
            )
    return steps
