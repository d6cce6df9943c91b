"""
Batch front end: compose input files into one PDF, merge PDFs, or resize
the pages of a PDF.

Why this module exists:
- Keeps the session/job orchestration separate from CLI parsing.
- Gives each command run one manifest that records every job it dispatched.
"""

from __future__ import annotations

from itertools import groupby
from pathlib import Path
from typing import Any, Dict, List, Sequence

from .backends import (
    FitzDocumentBuilder,
    FitzDocumentCodec,
    FitzDocumentReshaper,
    PillowRasterCodec,
)
from .config import EngineSettings
from .jobs import JobQueue
from .manifest import ManifestRecorder
from .pipelines import (
    PipelineResult,
    SourceFile,
    export_session,
    extract_pages,
    import_images,
    merge_documents,
    resize_document,
)
from .resize import parse_resize_steps
from .sessions import SessionManager
from .storage import DirectoryStore
from .utils import (
    UserError,
    ensure_dir,
    ensure_file_exists,
    ensure_file_path,
    parse_rotation_spec,
    parse_split_spec,
)


def _is_pdf(path: Path) -> bool:
    return path.suffix.lower() == ".pdf"


def _record_job(recorder: ManifestRecorder, result: PipelineResult) -> None:
    job = result.job
    details: Dict[str, Any] = {"job_id": job.id, "kind": job.kind.value, "message": job.message}
    if job.summary is not None:
        details.update(job.summary.as_dict())
    recorder.add_action("job", job.status.value, **details)


def _check_output(out_pdf: Path, overwrite: bool) -> None:
    ensure_file_path(out_pdf, "Output PDF")
    if out_pdf.exists() and not overwrite:
        raise UserError(f"Output file exists: {out_pdf} (use --overwrite to replace it).")


def _write_pdf(recorder: ManifestRecorder, out_pdf: Path, pdf: bytes) -> None:
    ensure_dir(out_pdf.parent, dry_run=False)
    try:
        out_pdf.write_bytes(pdf)
    except OSError as exc:
        raise UserError(f"Failed to write {out_pdf}: {exc}") from exc
    recorder.log(f"Wrote {out_pdf}")


async def compose_document(
    inputs: Sequence[Path],
    out_pdf: Path,
    settings: EngineSettings,
    rotations_spec: str | None,
    split_spec: str | None,
    order_spec: str | None,
    overwrite: bool,
    dry_run: bool,
    manifest_path: Path,
    command_string: str,
    options: Dict[str, object],
    state_dir: Path | None = None,
) -> None:
    """
    Load images and PDF pages, apply edits, export one PDF.

    Page numbers in the rotation and split specs refer to the loaded pages
    in input order, before `order_spec` rearranges them.
    """

    recorder = ManifestRecorder(
        command=command_string,
        context={"options": options, "inputs": [str(path) for path in inputs]},
        outputs={"pdf": str(out_pdf), "manifest": str(manifest_path)},
        dry_run=dry_run,
        verbosity=str(options.get("verbosity", "normal")),
    )
    summary: Dict[str, object] = {"inputs": len(inputs), "pages_loaded": 0, "pages_exported": 0}
    error_message: str | None = None

    try:
        for path in inputs:
            ensure_file_exists(path, "Input file")
        _check_output(out_pdf, overwrite)

        store = None
        if state_dir is not None and not dry_run:
            store = DirectoryStore(state_dir, quota_bytes=settings.storage_quota_bytes)
        manager = SessionManager(settings, store=store, recorder=recorder)
        manager.rename(manager.active_id, out_pdf.stem)
        if store is not None:
            recorder.outputs["session_index"] = manager.state_key
        queue = JobQueue(
            grace_period=settings.job_grace_period_s,
            verbosity=recorder.verbosity,
            console_stream=recorder.console_stream,
        )
        raster_codec = PillowRasterCodec()
        document_codec = FitzDocumentCodec()

        # Consecutive files of one type share a job; input order is kept.
        for pdf_run, group in groupby(inputs, key=_is_pdf):
            sources = [SourceFile.from_path(path) for path in group]
            if pdf_run:
                result = await extract_pages(
                    manager, queue, sources, document_codec, raster_codec, settings
                )
            else:
                result = await import_images(manager, queue, sources, raster_codec, settings)
            _record_job(recorder, result)
            recorder.log(result.job.message)

        pages = manager.pages
        summary["pages_loaded"] = len(pages)
        if not pages:
            raise UserError("No pages could be loaded from the inputs.")

        if rotations_spec:
            for index, degrees in parse_rotation_spec(rotations_spec, len(pages)).items():
                manager.set_rotation(pages[index].id, degrees)
        if split_spec:
            for index, cuts in parse_split_spec(split_spec, len(pages)).items():
                page = manager.page(pages[index].id)
                for y in cuts:
                    manager.add_split_line(page.id, [(0.0, float(y)), (float(page.raster_width), float(y))])
        if order_spec:
            manager.apply_input_rearrange(order_spec)

        if dry_run:
            recorder.log(f"[dry-run] Would export {len(manager.pages)} page(s) to {out_pdf}")
            recorder.add_action("export", "dry-run", output=str(out_pdf))
            return

        result = await export_session(
            manager, queue, raster_codec, FitzDocumentBuilder, settings
        )
        _record_job(recorder, result)
        if result.pdf is None:
            raise UserError(result.job.message)
        summary["pages_exported"] = result.job.summary.succeeded if result.job.summary else 0
        _write_pdf(recorder, out_pdf, result.pdf)
        recorder.log(result.job.message)
    except UserError as exc:
        error_message = str(exc)
        recorder.log(error_message, level="error")
        raise
    finally:
        summary["status"] = "error" if error_message else "ok"
        if error_message is not None:
            summary["error"] = error_message
        recorder.write_manifest(manifest_path, summary)


async def merge_pdfs(
    pdfs: Sequence[Path],
    out_pdf: Path,
    settings: EngineSettings,
    overwrite: bool,
    dry_run: bool,
    manifest_path: Path,
    command_string: str,
    options: Dict[str, object],
) -> None:
    """Concatenate PDFs in the given order."""

    recorder = ManifestRecorder(
        command=command_string,
        context={"options": options, "inputs": [str(path) for path in pdfs]},
        outputs={"pdf": str(out_pdf), "manifest": str(manifest_path)},
        dry_run=dry_run,
        verbosity=str(options.get("verbosity", "normal")),
    )
    summary: Dict[str, object] = {"inputs": len(pdfs)}
    error_message: str | None = None

    try:
        if len(pdfs) < 2:
            raise UserError("merge needs at least two PDFs.")
        for path in pdfs:
            ensure_file_exists(path, "PDF")
        _check_output(out_pdf, overwrite)

        if dry_run:
            for path in pdfs:
                recorder.add_action("merge", "dry-run", unit=path.name)
            recorder.log(f"[dry-run] Would merge {len(pdfs)} PDF(s) into {out_pdf}")
            return

        manager = SessionManager(settings, recorder=recorder)
        queue = JobQueue(
            grace_period=settings.job_grace_period_s,
            verbosity=recorder.verbosity,
            console_stream=recorder.console_stream,
        )
        sources: List[SourceFile] = [SourceFile.from_path(path) for path in pdfs]
        result = await merge_documents(manager, queue, sources, FitzDocumentBuilder, settings)
        _record_job(recorder, result)
        if result.pdf is None:
            raise UserError(result.job.message)
        summary["merged"] = result.job.summary.succeeded if result.job.summary else 0
        _write_pdf(recorder, out_pdf, result.pdf)
        recorder.log(result.job.message)
    except UserError as exc:
        error_message = str(exc)
        recorder.log(error_message, level="error")
        raise
    finally:
        summary["status"] = "error" if error_message else "ok"
        if error_message is not None:
            summary["error"] = error_message
        recorder.write_manifest(manifest_path, summary)


async def resize_pdf(
    pdf: Path,
    out_pdf: Path,
    settings: EngineSettings,
    steps_spec: str,
    page: int | None,
    overwrite: bool,
    dry_run: bool,
    manifest_path: Path,
    command_string: str,
    options: Dict[str, object],
) -> None:
    """Apply margin, orientation and reset steps to one PDF."""

    recorder = ManifestRecorder(
        command=command_string,
        context={"options": options, "inputs": [str(pdf)]},
        outputs={"pdf": str(out_pdf), "manifest": str(manifest_path)},
        dry_run=dry_run,
        verbosity=str(options.get("verbosity", "normal")),
    )
    summary: Dict[str, object] = {"inputs": 1}
    error_message: str | None = None

    try:
        steps = parse_resize_steps(steps_spec, page)
        summary["steps"] = len(steps)
        ensure_file_exists(pdf, "PDF")
        _check_output(out_pdf, overwrite)

        if dry_run:
            for step in steps:
                recorder.add_action("resize", "dry-run", unit=step.label)
            recorder.log(f"[dry-run] Would apply {len(steps)} resize step(s) to {pdf.name}")
            return

        manager = SessionManager(settings, recorder=recorder)
        queue = JobQueue(
            grace_period=settings.job_grace_period_s,
            verbosity=recorder.verbosity,
            console_stream=recorder.console_stream,
        )
        result = await resize_document(
            manager,
            queue,
            SourceFile.from_path(pdf),
            FitzDocumentReshaper(),
            steps,
            settings,
        )
        _record_job(recorder, result)
        if result.pdf is None:
            raise UserError(result.job.message)
        summary["applied"] = result.job.summary.succeeded if result.job.summary else 0
        _write_pdf(recorder, out_pdf, result.pdf)
        recorder.log(result.job.message)
    except UserError as exc:
        error_message = str(exc)
        recorder.log(error_message, level="error")
        raise
    finally:
        summary["status"] = "error" if error_message else "ok"
        if error_message is not None:
            summary["error"] = error_message
        recorder.write_manifest(manifest_path, summary)
