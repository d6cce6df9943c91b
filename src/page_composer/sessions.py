"""
Sessions ("tabs"), the live page list and the editing operations on it.

Why this module exists:
- Exactly one session is active; its pages live in a working copy that is
  flushed back into the session record on every switch.
- All page edits go through the manager so history snapshots, order keys
  and the persisted session index stay consistent.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
import time
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .config import EngineSettings
from .manifest import ManifestRecorder
from .model import (
    CropRect,
    Page,
    Point,
    Session,
    add_split_line,
    clear_split_lines,
    renumber,
    replace_raster,
    reset_to_original,
    rotate_page,
    set_crop,
    set_rotation,
)
from .split import IDENTITY, SplitOutcome, SplitResult, SurfaceTransform, apply_split_to_pages
from .storage import KeyValueStore
from .utils import (
    EmptySessionSetViolation,
    StorageQuotaExceeded,
    UserError,
    new_id,
    parse_rearrange_spec,
)


FLOATING_SIZE = (400.0, 500.0)


@dataclass(frozen=True)
class FloatingWindow:
    visible: bool
    position: Tuple[float, float]
    size: Tuple[float, float] = FLOATING_SIZE


@dataclass(frozen=True)
class EditorUIState:
    """
    Transient editor state of the active session.

    Never persisted and never patched field by field on a switch: the
    manager swaps in a fresh value.
    """

    selected: FrozenSet[str] = frozenset()
    floating: Mapping[str, FloatingWindow] = field(default_factory=dict)
    zoomed: FrozenSet[str] = frozenset()
    rearrange_mode: bool = False

    def without_page(self, page_id: str) -> "EditorUIState":
        floating = {key: value for key, value in self.floating.items() if key != page_id}
        return replace(
            self,
            selected=self.selected - {page_id},
            floating=floating,
            zoomed=self.zoomed - {page_id},
        )


def _toggle(values: FrozenSet[str], item: str) -> FrozenSet[str]:
    return values - {item} if item in values else values | {item}


class SessionManager:
    """Owns every session, the active pointer and the live page list."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        store: KeyValueStore | None = None,
        recorder: ManifestRecorder | None = None,
        clock: Callable[[], float] = time.time,
        instance_id: str | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.recorder = recorder or ManifestRecorder(command="session")
        self.instance_id = instance_id or new_id("instance")
        self._store = store
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._created = 0

        first = self._new_session(None)
        self._active_id = first.id
        self._pages: Tuple[Page, ...] = ()
        self.ui_state = EditorUIState()
        self._persist()

    # Sessions

    def _new_session(self, name: str | None) -> Session:
        self._created += 1
        now = self._clock()
        clean = (name or "").strip()
        session = Session(
            id=new_id("pdf_session"),
            name=clean or f"PDF Session {self._created}",
            created_at=now,
            modified_at=now,
        )
        self._sessions[session.id] = session
        return session

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise UserError(f"Unknown session: {session_id}")
        return session

    @property
    def active_id(self) -> str:
        return self._active_id

    @property
    def active_session(self) -> Session:
        return self._sessions[self._active_id]

    @property
    def pages(self) -> Tuple[Page, ...]:
        """The live page list of the active session, in display order."""

        return self._pages

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def session(self, session_id: str) -> Session:
        return self._require(session_id)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def session_pages(self, session_id: str) -> Tuple[Page, ...]:
        """Committed pages of a session; the live list for the active one."""

        session = self._require(session_id)
        if session_id == self._active_id:
            return self._pages
        return session.pages

    def _flush(self) -> None:
        session = self.active_session
        if session.pages is not self._pages:
            session.pages = self._pages
            session.modified_at = self._clock()

    def _activate(self, session: Session) -> None:
        self._active_id = session.id
        self._pages = session.pages
        self.ui_state = EditorUIState()

    def create_session(self, name: str | None = None) -> str:
        """Add an empty session and make it active."""

        self._flush()
        session = self._new_session(name)
        self._activate(session)
        self.recorder.log(f"Created session {session.name}", level="debug")
        self._persist()
        return session.id

    def switch_to(self, session_id: str) -> None:
        target = self._require(session_id)
        self._flush()
        self._activate(target)
        self.recorder.log(f"Switched to session {target.name}", level="debug")
        self._persist()

    def close(self, session_id: str) -> None:
        """
        Remove a session.

        The last session can never be closed; if the active one goes, the
        first remaining session takes over.
        """

        session = self._require(session_id)
        if len(self._sessions) == 1:
            raise EmptySessionSetViolation("Cannot close the last remaining session.")

        was_active = session_id == self._active_id
        if was_active:
            self._flush()
        del self._sessions[session_id]
        if was_active:
            self._activate(next(iter(self._sessions.values())))
        self.recorder.log(f"Closed session {session.name}", level="debug")
        self._persist()

    def rename(self, session_id: str, new_name: str) -> bool:
        """Rename in place; blank names are ignored."""

        session = self._require(session_id)
        clean = new_name.strip()
        if not clean:
            return False
        session.name = clean
        session.modified_at = self._clock()
        self._persist()
        return True

    # Page list

    def _commit(self, pages: Sequence[Page], snapshot: bool = False) -> None:
        if snapshot:
            self.active_session.history.snapshot(self._pages)
        self._pages = tuple(pages)
        self._persist()

    def _index_of(self, page_id: str) -> int:
        for index, page in enumerate(self._pages):
            if page.id == page_id:
                return index
        raise UserError(f"Unknown page: {page_id}")

    def page(self, page_id: str) -> Page:
        return self._pages[self._index_of(page_id)]

    def _update_page(self, page_id: str, edit: Callable[[Page], Page], snapshot: bool = False) -> Page:
        index = self._index_of(page_id)
        updated = edit(self._pages[index])
        if updated is not self._pages[index]:
            pages = list(self._pages)
            pages[index] = updated
            self._commit(pages, snapshot=snapshot)
        return updated

    def add_pages(self, session_id: str, pages: Sequence[Page]) -> int:
        """
        Append finished import/extract units to a session.

        The session may have been switched away from or closed while the job
        ran: closed sessions drop the pages with a warning.
        """

        if not pages:
            return 0
        session = self._sessions.get(session_id)
        if session is None:
            self.recorder.log(
                f"Session {session_id} was closed; dropped {len(pages)} page(s).",
                level="warning",
            )
            return 0

        existing = self.session_pages(session_id)
        base = int(max(page.order for page in existing)) + 1 if existing else 0
        added = tuple(
            replace(page, order=float(base + offset)) for offset, page in enumerate(pages)
        )
        if session_id == self._active_id:
            self._commit(self._pages + added)
        else:
            session.pages = session.pages + added
            session.modified_at = self._clock()
            self._persist()
        return len(added)

    def rotate_page(self, page_id: str, direction: str) -> Page:
        return self._update_page(page_id, lambda page: rotate_page(page, direction))

    def set_rotation(self, page_id: str, degrees: int) -> Page:
        return self._update_page(page_id, lambda page: set_rotation(page, degrees))

    def set_crop(self, page_id: str, crop: CropRect) -> Page:
        return self._update_page(page_id, lambda page: set_crop(page, crop))

    def add_split_line(
        self,
        page_id: str,
        points: Sequence[Point],
        display_size: Tuple[float, float] | None = None,
    ) -> Page:
        """
        Record a line drawn over the page preview.

        `display_size` is the preview's size; points are rescaled into raster
        space once, here, and stored that way.
        """

        def edit(page: Page) -> Page:
            transform = IDENTITY
            if display_size is not None:
                transform = SurfaceTransform.between(
                    display_size, (page.raster_width, page.raster_height)
                )
            return add_split_line(page, transform.apply_line(points))

        return self._update_page(page_id, edit)

    def clear_split_lines(self, page_id: str) -> Page:
        return self._update_page(page_id, clear_split_lines)

    def apply_split(self) -> List[SplitResult]:
        """Split every page with pending lines; one undo step for the lot."""

        if not any(page.split_lines for page in self._pages):
            return [SplitResult(pages=(page,), outcome=SplitOutcome.NO_LINES) for page in self._pages]

        pages, results = apply_split_to_pages(
            self._pages, min_band_height=self.settings.min_band_height_px
        )
        for result in results:
            if result.outcome is SplitOutcome.NO_SEGMENTS_PRODUCED:
                self.recorder.log(
                    f"Split lines on {result.pages[0].name} produced no usable segment; "
                    "page left unchanged.",
                    level="warning",
                )
        if any(result.changed for result in results):
            self._commit(pages, snapshot=True)
        return results

    def delete_page(self, page_id: str) -> None:
        index = self._index_of(page_id)
        pages = self._pages[:index] + self._pages[index + 1:]
        self._commit(pages, snapshot=True)
        self.ui_state = self.ui_state.without_page(page_id)

    def _swap(self, first: int, second: int) -> None:
        pages = list(self._pages)
        pages[first], pages[second] = pages[second], pages[first]
        self._commit(renumber(pages))

    def move_page_up(self, index: int) -> bool:
        if index <= 0 or index >= len(self._pages):
            return False
        self._swap(index, index - 1)
        return True

    def move_page_down(self, index: int) -> bool:
        if index < 0 or index >= len(self._pages) - 1:
            return False
        self._swap(index, index + 1)
        return True

    def apply_input_rearrange(self, text: str) -> None:
        """
        Reorder pages from a typed permutation like "3,1,2".

        Invalid input raises InvalidReorderSpecification before anything
        changes.
        """

        order = parse_rearrange_spec(text, len(self._pages))
        self._commit(renumber([self._pages[index] for index in order]), snapshot=True)

    def reset_to_original(self, page_id: str) -> Page:
        return self._update_page(page_id, reset_to_original, snapshot=True)

    def replace_raster(self, page_id: str, raster: bytes, width: int, height: int) -> Page:
        return self._update_page(
            page_id,
            lambda page: replace_raster(page, raster, width, height),
            snapshot=True,
        )

    def undo(self) -> bool:
        """Restore the page list saved before the last snapshotted edit."""

        entry = self.active_session.history.undo()
        if entry is None:
            return False
        self._pages = tuple(entry)
        self._persist()
        return True

    # Transient UI state

    def toggle_selection(self, page_id: str) -> None:
        self._index_of(page_id)
        self.ui_state = replace(self.ui_state, selected=_toggle(self.ui_state.selected, page_id))

    def toggle_zoom(self, page_id: str) -> None:
        self._index_of(page_id)
        self.ui_state = replace(self.ui_state, zoomed=_toggle(self.ui_state.zoomed, page_id))

    def toggle_floating(self, page_id: str) -> None:
        self._index_of(page_id)
        floating = dict(self.ui_state.floating)
        current = floating.get(page_id)
        if current is not None and current.visible:
            floating[page_id] = replace(current, visible=False)
        else:
            # Cascade new windows so they do not stack exactly.
            offset = 30.0 * sum(1 for window in floating.values() if window.visible)
            floating[page_id] = FloatingWindow(visible=True, position=(100.0 + offset, 100.0 + offset))
        self.ui_state = replace(self.ui_state, floating=floating)

    def set_rearrange_mode(self, enabled: bool) -> None:
        self.ui_state = replace(self.ui_state, rearrange_mode=bool(enabled))

    # Persistence

    @property
    def state_key(self) -> str:
        return f"{self.settings.state_key}/{self.instance_id}"

    def session_index(self) -> List[Dict[str, Any]]:
        """Session metadata; page counts of the active session come from the live list."""

        index = []
        for session in self._sessions.values():
            meta = session.metadata()
            if session.id == self._active_id:
                meta["page_count"] = len(self._pages)
            index.append(meta)
        return index

    def _persist(self) -> None:
        """
        Write the session index; pixel data is never persisted.

        A full store drops the record and the edit carries on.
        """

        if self._store is None:
            return
        record = {
            "instance_id": self.instance_id,
            "active_session_id": self._active_id,
            "saved_at": self._clock(),
            "sessions": self.session_index(),
        }
        data = json.dumps(record, ensure_ascii=True).encode("utf-8")
        try:
            self._store.set(self.state_key, data)
        except StorageQuotaExceeded as exc:
            self.recorder.log(f"Session index not persisted: {exc}", level="warning")
            self._store.remove(self.state_key)


def load_persisted_index(store: KeyValueStore, key: str) -> Optional[Dict[str, Any]]:
    """Read back a session index written by SessionManager, if any."""

    raw = store.get(key)
    if raw is None:
        return None
    try:
        loaded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise UserError(f"Persisted session index {key} is corrupt: {exc}") from exc
    if not isinstance(loaded, dict) or not isinstance(loaded.get("sessions"), list):
        raise UserError(f"Persisted session index {key} has an unexpected shape.")
    return loaded
