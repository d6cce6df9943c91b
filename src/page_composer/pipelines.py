"""
Import, extract, export, merge and resize jobs.

Why this module exists:
- Each pipeline dispatches one job, feeds its units through `run_units`
  and completes the job from the tally, so partial failure behaves the same
  everywhere.
- Pipelines only see the codec interfaces; the CLI and tests decide which
  implementations to pass in.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

from .compositor import ComposedRaster, compose_page
from .config import EngineSettings
from .jobs import Job, JobKind, JobQueue, JobStatus, UnitBatch, finish_job, run_units
from .model import CropRect, Page, make_page
from .resize import ResizeKind, ResizeStep, plan_step, resized_sizes
from .sessions import SessionManager
from .split import apply_split_to_pages
from .utils import DecodeError, OversizeInput, UserError, ensure_file_exists

if TYPE_CHECKING:
    from .backends import (
        DocumentBuilder,
        DocumentCodec,
        DocumentReshaper,
        OpenedDocument,
        RasterCodec,
    )


BuilderFactory = Callable[[], "DocumentBuilder"]


@dataclass(frozen=True)
class SourceFile:
    """Raw input bytes plus the name pages are labelled with."""

    name: str
    data: bytes

    @classmethod
    def from_path(cls, path: Path) -> "SourceFile":
        ensure_file_exists(path, "Input file")
        try:
            return cls(name=path.name, data=path.read_bytes())
        except OSError as exc:
            raise UserError(f"Failed to read {path}: {exc}") from exc


@dataclass(frozen=True)
class PipelineResult:
    job: Job
    pages: Tuple[Page, ...] = ()
    pdf: Optional[bytes] = None
    rasters: Tuple[ComposedRaster, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.job.status is JobStatus.COMPLETED


@dataclass(frozen=True)
class _PageUnit:
    source: SourceFile
    document: OpenedDocument
    index: int

    @property
    def name(self) -> str:
        return f"Page-{self.index + 1} {self.source.name}"


def _guard_size(source: SourceFile, settings: EngineSettings) -> None:
    if len(source.data) > settings.max_input_bytes:
        limit_mb = settings.max_input_bytes / (1024 * 1024)
        raise OversizeInput(f"{source.name} is larger than {limit_mb:g} MB.")


async def import_images(
    manager: SessionManager,
    queue: JobQueue,
    sources: Sequence[SourceFile],
    codec: RasterCodec,
    settings: EngineSettings | None = None,
) -> PipelineResult:
    """
    Turn image files into pages of the active session.

    Pages land in the session that was active at dispatch, even if the user
    switches away while the job runs.
    """

    settings = settings or manager.settings
    session = manager.active_session
    job_id = queue.dispatch(JobKind.IMPORT, session.id, len(sources), session.name)

    async def worker(source: SourceFile) -> Page:
        _guard_size(source, settings)
        data, width, height = await codec.fit_within(source.data, settings.max_dimension)
        return make_page(source.name, data, width, height, order=0)

    batch = await run_units(
        queue,
        job_id,
        sources,
        worker,
        describe=lambda source: source.name,
        action="import",
        unit_timeout=settings.unit_timeout_s,
    )
    manager.add_pages(session.id, batch.results)
    job = finish_job(queue, job_id, batch, "Imported", "image(s)")
    return PipelineResult(job=job, pages=tuple(batch.results))


async def extract_pages(
    manager: SessionManager,
    queue: JobQueue,
    sources: Sequence[SourceFile],
    document_codec: DocumentCodec,
    raster_codec: RasterCodec,
    settings: EngineSettings | None = None,
) -> PipelineResult:
    """
    Rasterize every page of the given PDFs into the active session.

    A PDF that cannot be opened counts as one failed unit; its siblings
    still go through.
    """

    settings = settings or manager.settings
    session = manager.active_session
    job_id = queue.dispatch(JobKind.EXTRACT, session.id, len(sources), session.name)
    job = queue.require(job_id)

    batch: UnitBatch[Page] = UnitBatch()
    documents: List[OpenedDocument] = []
    units: List[_PageUnit] = []
    try:
        for source in sources:
            try:
                _guard_size(source, settings)
                document = document_codec.open(source.data)
            except OversizeInput as exc:
                batch.attempted += 1
                batch.skipped += 1
                job.recorder.log(f"Skipped {source.name}: {exc}", level="warning")
                job.recorder.add_action("extract", "skipped", unit=source.name, reason=str(exc))
                continue
            except DecodeError as exc:
                batch.attempted += 1
                batch.failed += 1
                message = f"{source.name} failed: {exc}"
                queue.note_failure(job_id, message)
                job.recorder.log(message, level="error")
                job.recorder.add_action("extract", "failed", unit=source.name, error=str(exc))
                continue
            documents.append(document)
            units.extend(_PageUnit(source, document, index) for index in range(document.page_count))

        queue.set_total(job_id, len(units))

        async def worker(unit: _PageUnit) -> Page:
            raster = await document_codec.rasterize(
                unit.document.get_page(unit.index), settings.rasterize_scale
            )
            data = await asyncio.to_thread(raster_codec.encode, raster.pixels, settings.output_format)
            return make_page(unit.name, data, raster.width, raster.height, order=0)

        await run_units(
            queue,
            job_id,
            units,
            worker,
            describe=lambda unit: unit.name,
            action="extract",
            unit_timeout=settings.unit_timeout_s,
            batch=batch,
        )
    finally:
        for document in documents:
            document.close()

    manager.add_pages(session.id, batch.results)
    job = finish_job(queue, job_id, batch, "Extracted", "page(s)")
    return PipelineResult(job=job, pages=tuple(batch.results))


async def export_session(
    manager: SessionManager,
    queue: JobQueue,
    codec: RasterCodec,
    builder_factory: BuilderFactory,
    settings: EngineSettings | None = None,
    session_id: str | None = None,
) -> PipelineResult:
    """
    Compose a session's pages into one PDF.

    The page list is captured once at dispatch; pending split lines are
    applied to that capture only, so the session itself keeps them.
    """

    settings = settings or manager.settings
    session = manager.session(session_id or manager.active_id)
    snapshot = manager.session_pages(session.id)
    pages, _ = apply_split_to_pages(snapshot, min_band_height=settings.min_band_height_px)
    job_id = queue.dispatch(JobKind.EXPORT, session.id, len(pages), session.name)

    batch = await run_units(
        queue,
        job_id,
        pages,
        lambda page: compose_page(page, codec, settings.output_format),
        describe=lambda page: page.name,
        action="export",
        unit_timeout=settings.unit_timeout_s,
    )
    if batch.succeeded == 0:
        job = finish_job(queue, job_id, batch, "Exported", "page(s)")
        return PipelineResult(job=job, pages=pages)

    rasters = tuple(batch.results)

    queue.update_progress(job_id, len(pages), "Finalizing PDF...")
    try:
        pdf = _build_pdf(builder_factory, rasters)
    except UserError as exc:
        job = queue.complete(job_id, JobStatus.FAILED, f"Export failed: {exc}")
        return PipelineResult(job=job, pages=pages, rasters=rasters)

    job = finish_job(queue, job_id, batch, "Exported", "page(s)")
    return PipelineResult(job=job, pages=pages, pdf=pdf, rasters=rasters)


def _build_pdf(builder_factory: BuilderFactory, rasters: Sequence[ComposedRaster]) -> bytes:
    builder = builder_factory()
    try:
        for raster in rasters:
            # One PDF point per raster pixel.
            pdf_page = builder.add_page(raster.width, raster.height)
            handle = builder.embed_raster(raster.data)
            builder.draw_image(pdf_page, handle, CropRect.full(raster.width, raster.height))
        return builder.save()
    finally:
        builder.close()


async def merge_documents(
    manager: SessionManager,
    queue: JobQueue,
    sources: Sequence[SourceFile],
    builder_factory: BuilderFactory,
    settings: EngineSettings | None = None,
) -> PipelineResult:
    """Concatenate whole PDFs, in the given order, into a new document."""

    settings = settings or manager.settings
    session = manager.active_session
    job_id = queue.dispatch(JobKind.MERGE, session.id, len(sources), session.name)
    builder = builder_factory()
    try:
        async def worker(source: SourceFile) -> int:
            _guard_size(source, settings)
            return builder.import_pages(source.data)

        batch = await run_units(
            queue,
            job_id,
            sources,
            worker,
            describe=lambda source: source.name,
            action="merge",
            unit_timeout=settings.unit_timeout_s,
        )
        pdf = None
        if batch.succeeded:
            queue.update_progress(job_id, len(sources), "Finalizing PDF...")
            try:
                pdf = builder.save()
            except UserError as exc:
                job = queue.complete(job_id, JobStatus.FAILED, f"Merge failed: {exc}")
                return PipelineResult(job=job)
    finally:
        builder.close()

    job = finish_job(queue, job_id, batch, "Merged", "file(s)")
    return PipelineResult(job=job, pdf=pdf)


async def resize_document(
    manager: SessionManager,
    queue: JobQueue,
    source: SourceFile,
    reshaper: DocumentReshaper,
    steps: Sequence[ResizeStep],
    settings: EngineSettings | None = None,
) -> PipelineResult:
    """
    Apply resize steps to one PDF, in order.

    Every step is a unit: a failed step leaves the document as the previous
    step left it, and a reset step returns to the PDF as it was loaded.
    """

    settings = settings or manager.settings
    session = manager.active_session
    job_id = queue.dispatch(JobKind.RESIZE, session.id, len(steps), session.name)
    try:
        _guard_size(source, settings)
        loaded_sizes = reshaper.page_sizes(source.data)
    except UserError as exc:
        job = queue.complete(job_id, JobStatus.FAILED, f"Resize failed: {source.name}: {exc}")
        return PipelineResult(job=job)

    current = source.data
    sizes = list(loaded_sizes)

    async def worker(step: ResizeStep) -> ResizeStep:
        nonlocal current, sizes
        if step.kind is ResizeKind.RESET:
            current, sizes = source.data, list(loaded_sizes)
            return step
        placements = plan_step(sizes, step, settings.portrait_aspect)
        if any(placement is not None for placement in placements):
            current = await reshaper.reshape(current, placements)
            sizes = resized_sizes(sizes, placements)
        return step

    batch = await run_units(
        queue,
        job_id,
        steps,
        worker,
        describe=lambda step: step.label,
        action="resize",
        unit_timeout=settings.unit_timeout_s,
    )
    job = finish_job(queue, job_id, batch, "Applied", "resize step(s)")
    return PipelineResult(job=job, pdf=current if batch.succeeded else None)
