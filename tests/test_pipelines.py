"""
Pipeline tests on fake codecs: import, extract, export and merge jobs,
including partial failure and dispatch-time snapshots.
"""

from __future__ import annotations

import asyncio
import io
import unittest

from helpers_codecs import (
    BuilderFactory,
    FakeClock,
    FakeDocumentCodec,
    FakeDocumentReshaper,
    FakeRasterCodec,
    make_pdf,
    make_raster,
    make_sized_pdf,
    raster_size,
)

from page_composer.config import EngineSettings
from page_composer.jobs import JobQueue, JobStatus
from page_composer.manifest import ManifestRecorder
from page_composer.pipelines import (
    SourceFile,
    export_session,
    extract_pages,
    import_images,
    merge_documents,
    resize_document,
)
from page_composer.resize import parse_resize_steps
from page_composer.sessions import SessionManager
from page_composer.utils import DecodeError


class PipelineTestCase(unittest.IsolatedAsyncioTestCase):
    settings = EngineSettings()

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.console = io.StringIO()
        self.manager = SessionManager(
            self.settings,
            recorder=ManifestRecorder(command="test", console_stream=self.console),
            clock=self.clock,
        )
        self.queue = JobQueue(clock=self.clock, console_stream=self.console)
        self.codec = FakeRasterCodec(slow_seconds=0.05)
        self.builders = BuilderFactory()

    async def _load(self, *names: str, width: int = 100, height: int = 200) -> None:
        sources = [SourceFile(name, make_raster(width, height)) for name in names]
        result = await import_images(self.manager, self.queue, sources, self.codec, self.settings)
        self.assertTrue(result.succeeded)


class ImportTests(PipelineTestCase):
    settings = EngineSettings.from_mapping({"max_input_bytes": 64, "max_dimension": 1500})

    async def test_partial_import(self) -> None:
        sources = [
            SourceFile("a.png", make_raster(100, 200)),
            SourceFile("huge.png", make_raster(100, 200, "x" * 100)),
            SourceFile("bad.png", b"not an image"),
            SourceFile("wide.png", make_raster(3000, 1000)),
        ]
        result = await import_images(self.manager, self.queue, sources, self.codec, self.settings)

        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Imported 2/4 image(s) (1 failed, 1 skipped)")
        self.assertEqual([page.name for page in self.manager.pages], ["a.png", "wide.png"])
        wide = self.manager.pages[1]
        self.assertEqual((wide.raster_width, wide.raster_height), (1500, 500))

    async def test_nothing_imported_fails(self) -> None:
        result = await import_images(
            self.manager, self.queue, [SourceFile("bad.png", b"???")], self.codec, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertEqual(self.manager.pages, ())

    async def test_pages_land_in_dispatching_session(self) -> None:
        origin = self.manager.active_id
        sources = [SourceFile("a.png", make_raster(10, 10, "slow")), SourceFile("b.png", make_raster(10, 10))]
        task = asyncio.create_task(
            import_images(self.manager, self.queue, sources, self.codec, self.settings)
        )
        await asyncio.sleep(0)
        self.assertTrue(self.queue.is_session_processing(origin))
        self.manager.create_session()
        await task

        self.assertEqual(self.manager.pages, ())
        self.assertEqual(len(self.manager.session_pages(origin)), 2)
        self.assertFalse(self.queue.is_session_processing(origin))


class ExtractTests(PipelineTestCase):
    async def test_extracts_every_page_at_scale(self) -> None:
        documents = FakeDocumentCodec()
        sources = [SourceFile("book.pdf", make_pdf(100, 200, 3)), SourceFile("bad.pdf", b"junk")]
        result = await extract_pages(
            self.manager, self.queue, sources, documents, self.codec, self.settings
        )

        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Extracted 3/4 page(s) (1 failed)")
        self.assertEqual(
            [page.name for page in self.manager.pages],
            ["Page-1 book.pdf", "Page-2 book.pdf", "Page-3 book.pdf"],
        )
        first = self.manager.pages[0]
        self.assertEqual((first.raster_width, first.raster_height), (150, 300))
        self.assertEqual(raster_size(first.raster), (150, 300))
        self.assertTrue(all(document.closed for document in documents.opened))


class ExportTests(PipelineTestCase):
    async def test_split_and_rotation_example(self) -> None:
        await self._load("A", "B", "C")
        self.manager.apply_input_rearrange("3,1,2")
        self.assertEqual([page.name for page in self.manager.pages], ["C", "A", "B"])

        page1, page2 = self.manager.pages[0], self.manager.pages[1]
        self.manager.add_split_line(page1.id, [(0, 100), (100, 100)])
        self.manager.rotate_page(page2.id, "right")
        self.manager.delete_page(self.manager.pages[2].id)

        result = await export_session(
            self.manager, self.queue, self.codec, self.builders, self.settings
        )

        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Exported 3/3 page(s)")
        self.assertEqual(result.pdf, b"fakepdf:3")
        self.assertEqual(
            [(raster.width, raster.height) for raster in result.rasters],
            [(100, 100), (100, 100), (100, 200)],
        )
        self.assertEqual(
            [(page.parent_page_id, page.split_index) for page in result.pages],
            [(page1.id, 0), (page1.id, 1), (None, None)],
        )
        builder = self.builders.last
        self.assertTrue(builder.closed)
        self.assertEqual([page["size"] for page in builder.pages], [(100, 100), (100, 100), (100, 200)])
        self.assertEqual(
            [page["images"][0][0] for page in builder.pages],
            [
                make_raster(100, 100, "r0y0"),
                make_raster(100, 100, "r0y100"),
                make_raster(100, 200, "r90y0"),
            ],
        )
        # The session keeps its pending split lines.
        self.assertEqual(len(self.manager.pages), 2)
        self.assertEqual(len(self.manager.pages[0].split_lines), 1)

    async def test_one_bad_page_does_not_sink_export(self) -> None:
        await self._load("A", "B")
        broken = self.manager.pages[0]
        self.manager.replace_raster(broken.id, b"broken", 100, 200)

        result = await export_session(
            self.manager, self.queue, self.codec, self.builders, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Exported 1/2 page(s) (1 failed)")
        self.assertEqual(len(self.builders.last.pages), 1)
        self.assertEqual([raster.page_id for raster in result.rasters], [self.manager.pages[1].id])
        self.assertEqual(result.rasters[0].data, make_raster(100, 200, "r0y0"))

    async def test_all_pages_failing_fails_job(self) -> None:
        await self._load("A")
        self.manager.replace_raster(self.manager.pages[0].id, b"broken", 100, 200)
        result = await export_session(
            self.manager, self.queue, self.codec, self.builders, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertIsNone(result.pdf)
        self.assertEqual(self.builders.builders, [])

    async def test_empty_session_fails(self) -> None:
        result = await export_session(
            self.manager, self.queue, self.codec, self.builders, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertEqual(result.job.message, "Exported 0/0 page(s)")

    async def test_pages_are_captured_at_dispatch(self) -> None:
        await self._load("A", "B")
        self.manager.replace_raster(self.manager.pages[0].id, make_raster(100, 200, "slow"), 100, 200)
        task = asyncio.create_task(
            export_session(self.manager, self.queue, self.codec, self.builders, self.settings)
        )
        await asyncio.sleep(0)
        self.assertIn("Processing", self.queue.global_status_message())
        self.manager.delete_page(self.manager.pages[1].id)

        result = await task
        self.assertEqual(result.job.message, "Exported 2/2 page(s)")
        self.assertEqual(len(self.builders.last.pages), 2)

    async def test_finished_job_expires_after_grace_period(self) -> None:
        await self._load("A")
        result = await export_session(
            self.manager, self.queue, self.codec, self.builders, self.settings
        )
        self.assertIn(result.job.id, [job.id for job in self.queue.jobs()])
        self.clock.advance(self.settings.job_grace_period_s)
        self.assertEqual(self.queue.jobs(), [])


class ExportTimeoutTests(PipelineTestCase):
    settings = EngineSettings.from_mapping({"unit_timeout_s": 0.01})

    async def test_slow_page_times_out(self) -> None:
        self.codec = FakeRasterCodec(slow_seconds=1.0)
        await self._load("A")
        self.manager.replace_raster(self.manager.pages[0].id, make_raster(100, 200, "slow"), 100, 200)
        result = await export_session(
            self.manager, self.queue, self.codec, self.builders, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertIn("did not finish", result.job.errors[0])


class MergeTests(PipelineTestCase):
    async def test_merge_concatenates_and_tolerates_bad_input(self) -> None:
        sources = [
            SourceFile("a.pdf", make_pdf(100, 100, 2)),
            SourceFile("bad.pdf", b"junk"),
            SourceFile("b.pdf", make_pdf(200, 100, 3)),
        ]
        result = await merge_documents(
            self.manager, self.queue, sources, self.builders, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Merged 2/3 file(s) (1 failed)")
        self.assertEqual(result.pdf, b"fakepdf:5")
        self.assertTrue(self.builders.last.closed)

    async def test_merge_with_nothing_usable_fails(self) -> None:
        result = await merge_documents(
            self.manager, self.queue, [SourceFile("bad.pdf", b"junk")], self.builders, self.settings
        )
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertIsNone(result.pdf)


class FailingOnceReshaper(FakeDocumentReshaper):
    def __init__(self, fail_on_call: int) -> None:
        super().__init__()
        self.fail_on_call = fail_on_call
        self.seen = 0

    async def reshape(self, data, placements):
        self.seen += 1
        if self.seen == self.fail_on_call:
            raise DecodeError("broken page stream")
        return await super().reshape(data, placements)


class ResizeTests(PipelineTestCase):
    async def _resize(self, data: bytes, spec: str, page: int | None = None, reshaper=None):
        self.reshaper = reshaper or FakeDocumentReshaper()
        return await resize_document(
            self.manager,
            self.queue,
            SourceFile("doc.pdf", data),
            self.reshaper,
            parse_resize_steps(spec, page),
            self.settings,
        )

    async def test_steps_apply_in_order(self) -> None:
        result = await self._resize(make_sized_pdf((200, 100), (100, 200)), "top:10,portrait,landscape")
        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Applied 3/3 resize step(s)")
        # portrait: 200x100 -> 100x150; landscape then widens both portrait pages.
        self.assertEqual(result.pdf, make_sized_pdf((150, 150), (200, 200)))
        self.assertEqual(len(self.reshaper.calls), 3)

    async def test_single_page_scope(self) -> None:
        result = await self._resize(make_sized_pdf((200, 100), (300, 100)), "portrait", page=2)
        self.assertEqual(result.pdf, make_sized_pdf((200, 100), (100, 150)))
        self.assertIsNone(self.reshaper.calls[0][0])

    async def test_reset_returns_to_loaded_document(self) -> None:
        original = make_pdf(100, 200, 2)
        result = await self._resize(original, "landscape,reset,bottom:5")
        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.pdf, make_sized_pdf((100, 200), (100, 200)))
        self.assertEqual(len(self.reshaper.calls), 2)

    async def test_steps_that_change_nothing_skip_the_backend(self) -> None:
        original = make_sized_pdf((100, 200))
        result = await self._resize(original, "portrait")
        self.assertEqual(result.pdf, original)
        self.assertEqual(self.reshaper.calls, [])

    async def test_failed_step_keeps_previous_result(self) -> None:
        reshaper = FailingOnceReshaper(fail_on_call=2)
        result = await self._resize(make_sized_pdf((100, 200)), "landscape,top:5,portrait", reshaper=reshaper)
        self.assertEqual(result.job.status, JobStatus.COMPLETED)
        self.assertEqual(result.job.message, "Applied 2/3 resize step(s) (1 failed)")
        # The square page from step one goes on to portrait.
        self.assertEqual(result.pdf, make_sized_pdf((200, 300)))
        self.assertIn("top margin 5 (all pages) failed", result.job.errors[0])

    async def test_out_of_range_page_fails_job(self) -> None:
        result = await self._resize(make_sized_pdf((100, 200)), "landscape", page=3)
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertIsNone(result.pdf)
        self.assertIn("out of range", result.job.errors[0])

    async def test_unreadable_pdf_fails_job(self) -> None:
        result = await self._resize(b"junk", "portrait")
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertTrue(result.job.message.startswith("Resize failed: doc.pdf"))
        self.assertFalse(self.queue.is_session_processing(self.manager.active_id))


class ResizeTimeoutTests(PipelineTestCase):
    settings = EngineSettings.from_mapping({"unit_timeout_s": 0.01})

    async def test_slow_step_times_out_and_is_dropped(self) -> None:
        original = make_sized_pdf((100, 200))
        result = await resize_document(
            self.manager,
            self.queue,
            SourceFile("doc.pdf", original),
            FakeDocumentReshaper(slow_seconds=1.0),
            parse_resize_steps("landscape"),
            self.settings,
        )
        self.assertEqual(result.job.status, JobStatus.FAILED)
        self.assertIn("did not finish", result.job.errors[0])


if __name__ == "__main__":
    unittest.main()
