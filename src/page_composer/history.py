"""
Snapshot-based undo over a session's page list.

Entries are immutable tuples of pages. Pages are frozen values sharing their
raster bytes, so an entry costs one tuple per snapshot, not a pixel copy.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple


class HistoryManager:
    """
    A stack of page-list snapshots with a cursor.

    The cursor counts the entries that can still be undone: `snapshot`
    truncates anything above it and pushes, `undo` steps it back and hands
    out the entry it stepped over. There is no redo.
    """

    def __init__(self, limit: int | None = None) -> None:
        self._entries: List[Tuple[Any, ...]] = []
        self._cursor = 0
        self._limit = limit

    def snapshot(self, pages: Sequence[Any]) -> None:
        """Record the pre-mutation page list."""

        del self._entries[self._cursor:]
        self._entries.append(tuple(pages))
        if self._limit is not None and len(self._entries) > self._limit:
            del self._entries[: len(self._entries) - self._limit]
        self._cursor = len(self._entries)

    def undo(self) -> Optional[Tuple[Any, ...]]:
        """Step back one entry and return it; None when nothing is older."""

        if self._cursor == 0:
            return None
        self._cursor -= 1
        return self._entries[self._cursor]

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def clear(self) -> None:
        self._entries.clear()
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._entries)
