"""
Manifest recording and logging.

Why this exists:
- Every job keeps a timeline of log lines and per-unit actions that can be
  written out as a JSON manifest.
- Logging goes through one place so messages are consistent and captured.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import sys
from typing import Any, Dict, List, TextIO

from . import __version__
from .utils import ensure_dir


TOOL_NAME = "page-composer"
LEVELS = ("debug", "info", "warning", "error")


def _iso_now() -> str:
    """Return an ISO-8601 timestamp in UTC."""

    return datetime.now(timezone.utc).isoformat()


def _should_print(verbosity: str, level: str) -> bool:
    if verbosity == "quiet":
        return level == "error"
    if verbosity == "verbose":
        return True
    return level in {"info", "warning", "error"}


@dataclass
class ManifestRecorder:
    """
    Collect logs and unit actions, then write a single manifest JSON file.

    One recorder belongs to each job; the session manager and the CLI keep
    their own for events outside any job.
    """

    command: str
    context: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    verbosity: str = "normal"
    tool_version: str = __version__
    console_stream: TextIO = field(default_factory=lambda: sys.stderr)
    started_at: str = field(default_factory=_iso_now)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)

    def log(self, message: str, level: str = "info") -> None:
        """Record a log message and also print it to the console."""

        if level not in LEVELS:
            level = "info"
        entry = {"timestamp": _iso_now(), "level": level, "message": message}
        self.logs.append(entry)

        if _should_print(self.verbosity, level):
            rendered = f"[{level}] {message}" if self.verbosity == "verbose" else message
            print(rendered, file=self.console_stream)

    def add_action(self, action: str, status: str, **details: Any) -> None:
        """
        Add an action record.

        Example action types: import_image, extract_page, export_page,
        merge_document, job.
        """

        entry: Dict[str, Any] = {
            "timestamp": _iso_now(),
            "action": action,
            "status": status,
        }
        entry.update(details)
        self.actions.append(entry)

    def action_counts(self) -> Dict[str, int]:
        """Count actions by status (written, failed, skipped, etc.)."""

        counts: Dict[str, int] = {}
        for action in self.actions:
            status = action.get("status", "unknown")
            counts[status] = counts.get(status, 0) + 1
        return counts

    def messages(self, level: str) -> List[str]:
        return [entry["message"] for entry in self.logs if entry["level"] == level]

    def build_manifest(self, summary: Dict[str, Any]) -> Dict[str, Any]:
        """Assemble the final manifest structure."""

        return {
            "tool": TOOL_NAME,
            "version": self.tool_version,
            "command": self.command,
            "started_at": self.started_at,
            "ended_at": _iso_now(),
            "context": self.context,
            "outputs": self.outputs,
            "summary": summary,
            "action_counts": self.action_counts(),
            "actions": self.actions,
            "logs": self.logs,
        }

    def write_manifest(self, path: Path, summary: Dict[str, Any]) -> None:
        """
        Write the manifest JSON, unless this is a dry-run.

        The manifest is itself an output, so dry-run avoids writing it.
        """

        if self.dry_run:
            self.log(f"[dry-run] Would write manifest to {path}")
            return

        ensure_dir(path.parent, dry_run=False)
        manifest = self.build_manifest(summary)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(manifest, handle, indent=2, ensure_ascii=True)
