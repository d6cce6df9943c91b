"""
Shared utility helpers.

This module keeps the "sharp edges" (error types, validation and parsing) in
one place so the rest of the code can stay focused on pages, sessions and
jobs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple
from uuid import uuid4


class UserError(Exception):
    """Raised for user-facing problems that should show a clear message."""


class DecodeError(UserError):
    """Source bytes could not be decoded; the page or unit is skipped."""


class RenderTimeout(UserError):
    """A single unit exceeded its render deadline."""


class OversizeInput(UserError):
    """Input is larger than the size guard; skipped with a warning."""


class StorageQuotaExceeded(UserError):
    """The key-value store refused a write because it is full."""


class InvalidReorderSpecification(UserError):
    """A manual page order is not a permutation of the session's pages."""


class EmptySessionSetViolation(UserError):
    """Closing the session would leave no sessions at all."""


VALID_ROTATIONS = (0, 90, 180, 270)


def new_id(prefix: str) -> str:
    """Return a unique identifier like page_1f3a...."""

    return f"{prefix}_{uuid4().hex[:12]}"


def normalize_path(value: str) -> Path:
    """
    Convert user input to a Path.

    We do not resolve() here because we want to preserve relative paths in
    manifests and error messages.
    """

    return Path(value).expanduser()


def ensure_file_exists(path: Path, label: str) -> Path:
    """Validate that a path exists and is a file."""

    if not path.exists():
        raise UserError(f"{label} not found: {path}")
    if not path.is_file():
        raise UserError(f"{label} is not a file: {path}")
    return path


def ensure_dir(path: Path, dry_run: bool) -> None:
    """
    Create a directory if needed, unless this is a dry-run.

    Dry-run never touches the filesystem; real runs create output folders
    automatically.
    """

    if dry_run:
        return
    path.mkdir(parents=True, exist_ok=True)


def ensure_file_path(path: Path, label: str) -> None:
    """Ensure a path is a file path (not an existing directory)."""

    if path.exists() and path.is_dir():
        raise UserError(f"{label} is a directory, not a file: {path}")


def validate_positive_int(value: int, label: str) -> int:
    """Common validation for counts, sizes and thresholds."""

    if value <= 0:
        raise UserError(f"{label} must be a positive integer.")
    return value


def validate_degrees(degrees: int) -> int:
    """
    Ensure an explicit rotation is one of the quarter turns.

    Zero is accepted so configs can spell out "no rotation".
    """

    if degrees not in VALID_ROTATIONS:
        raise UserError("Degrees must be one of 0, 90, 180, 270 (clockwise).")
    return degrees


def normalize_rotation(degrees: int) -> int:
    """Fold any multiple of 90 into the 0..270 range."""

    if degrees % 90 != 0:
        raise UserError(f"Rotation must be a multiple of 90 degrees, got {degrees}.")
    return degrees % 360


def parse_rearrange_spec(spec: str, total_pages: int) -> List[int]:
    """
    Parse a manual page order like "3,1,2" into zero-based indices.

    The result must be a permutation of 1..total_pages: every page listed
    exactly once, nothing out of range, nothing missing.
    """

    raw = spec.strip()
    if not raw:
        raise InvalidReorderSpecification("Page order is empty.")

    tokens = [token.strip() for token in raw.split(",")]
    if any(token == "" for token in tokens):
        raise InvalidReorderSpecification(
            "Page order contains an empty token (check commas)."
        )

    order: List[int] = []
    seen = set()
    for token in tokens:
        if not (token.isascii() and token.isdigit()):
            raise InvalidReorderSpecification(
                f"Invalid page token '{token}'. Page numbers must be digits."
            )
        page_number = int(token)
        if page_number < 1 or page_number > total_pages:
            raise InvalidReorderSpecification(
                f"Page {page_number} is out of range. Session has {total_pages} pages."
            )
        if page_number in seen:
            raise InvalidReorderSpecification(f"Duplicate page {page_number} in order.")
        seen.add(page_number)
        order.append(page_number - 1)

    if len(order) != total_pages:
        raise InvalidReorderSpecification(
            f"Page order lists {len(order)} page(s); session has {total_pages}."
        )
    return order


def _split_pairs(spec: str, label: str) -> List[Tuple[str, str]]:
    """Split "a:b,c:d" into [("a", "b"), ("c", "d")]."""

    compact = spec.replace(" ", "")
    if not compact:
        raise UserError(f"{label} is empty.")
    tokens = compact.split(",")
    if any(token == "" for token in tokens):
        raise UserError(f"{label} contains an empty token (check commas).")

    pairs: List[Tuple[str, str]] = []
    for token in tokens:
        parts = token.split(":")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise UserError(f"Invalid {label.lower()} token '{token}'. Use PAGE:VALUE.")
        pairs.append((parts[0], parts[1]))
    return pairs


def _page_index(token: str, total_pages: int, label: str) -> int:
    if not (token.isascii() and token.isdigit()):
        raise UserError(f"Invalid page number '{token}' in {label.lower()}.")
    page_number = int(token)
    if page_number < 1:
        raise UserError("Page numbers are 1-based and must be >= 1.")
    if page_number > total_pages:
        raise UserError(
            f"Page {page_number} is out of range. Session has {total_pages} pages."
        )
    return page_number - 1


def parse_rotation_spec(spec: str, total_pages: int) -> Dict[int, int]:
    """
    Parse "1:90,3:270" into {page_index: degrees}.

    Listing the same page twice is rejected so mistakes are caught early.
    """

    rotations: Dict[int, int] = {}
    for page_token, degrees_token in _split_pairs(spec, "Rotation"):
        index = _page_index(page_token, total_pages, "Rotation")
        if not (degrees_token.isascii() and degrees_token.isdigit()):
            raise UserError(f"Invalid degrees '{degrees_token}' for page {index + 1}.")
        if index in rotations:
            raise UserError(f"Duplicate page {index + 1} in rotation.")
        rotations[index] = validate_degrees(int(degrees_token))
    return rotations


def parse_split_spec(spec: str, total_pages: int) -> Dict[int, List[int]]:
    """
    Parse "1:400,1:800,2:120" into {page_index: [y, ...]}.

    Y values are raster pixels from the top of the page; a page may appear
    more than once to receive several cut lines.
    """

    cuts: Dict[int, List[int]] = {}
    for page_token, y_token in _split_pairs(spec, "Split"):
        index = _page_index(page_token, total_pages, "Split")
        if not (y_token.isascii() and y_token.isdigit()):
            raise UserError(f"Invalid split y '{y_token}' for page {index + 1}.")
        cuts.setdefault(index, []).append(int(y_token))
    return cuts
