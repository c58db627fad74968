"""Tests for the import pipeline state machine."""

import asyncio
import os

from conftest import POST_URL, make_post
from recipe_importer.errors import (
    GeminiExtractionError,
    GeminiUploadError,
    InstagramScrapeError,
    MediaDownloadError,
)
from recipe_importer.importer import CANCELLED_MESSAGE
from recipe_importer.models import ImportStatus
from recipe_importer.orchestrator import build_media_filename, proportional_progress


def run(pipeline, import_id):
    return asyncio.run(pipeline.orchestrator.process(import_id))


def queued(pipeline):
    return pipeline.import_store.create(POST_URL, metadata={"shortCode": "C0ffee123"})


class TestHelpers:

    def test_build_media_filename(self):
        assert build_media_filename("C0ffee123", 0, "https://cdn.example.com/a/b.mp4?x=1") == "C0ffee123_1.mp4"
        assert build_media_filename("C0ffee123", 2, "https://cdn.example.com/a/b") == "C0ffee123_3"

    def test_proportional_progress(self):
        assert proportional_progress(20, 50, 1, 2) == 35
        assert proportional_progress(20, 50, 2, 2) == 50
        assert proportional_progress(50, 70, 0, 0) == 70


class TestHappyPath:

    def test_reaches_ready_with_recipe(self, pipeline):
        record = queued(pipeline)

        final = run(pipeline, record.id)

        assert final.status == ImportStatus.READY
        assert final.stage == ImportStatus.READY
        assert final.progress == 100
        assert final.error is None
        recipe = pipeline.recipe_store.get(final.recipe_id)
        assert recipe.recipe_data.title == "Tomato Spaghetti"
        assert recipe.import_id == record.id
        assert recipe.gemini_file_uris == final.metadata["geminiFileUris"]
        assert final.metadata["shortCode"] == "C0ffee123"
        assert final.metadata["mediaCount"] == 1
        assert "scrapingStartedAt" in final.metadata
        assert "extractingStartedAt" in final.metadata

    def test_progress_checkpoints_never_decrease(self, pipeline):
        pipeline.scraper.results = [make_post(media_count=2)]
        record = queued(pipeline)

        run(pipeline, record.id)

        progress = [p for _, p in pipeline.import_store.history]
        assert progress == [15, 20, 35, 50, 50, 60, 70, 75, 95, 100]
        statuses = [s for s, _ in pipeline.import_store.history]
        assert list(dict.fromkeys(statuses)) == [
            ImportStatus.SCRAPING,
            ImportStatus.DOWNLOADING_MEDIA,
            ImportStatus.UPLOADING_MEDIA,
            ImportStatus.EXTRACTING,
            ImportStatus.READY,
        ]

    def test_extraction_receives_post_context(self, pipeline):
        pipeline.scraper.results = [make_post(media_count=2)]
        run(pipeline, queued(pipeline).id)

        params = pipeline.gemini.extract_calls[0]
        assert params.caption.startswith("Tomato spaghetti")
        assert params.owner_username == "pastachef"
        assert params.media_mime_type == "video/mp4"
        assert len(params.extra_files) == 1

    def test_downloaded_media_is_removed(self, pipeline):
        run(pipeline, queued(pipeline).id)
        assert pipeline.downloader.paths
        assert not any(os.path.exists(path) for path in pipeline.downloader.paths)

    def test_skips_records_that_are_not_queued(self, pipeline):
        record = queued(pipeline)
        pipeline.import_store.update(record.id, status=ImportStatus.SCRAPING, stage=ImportStatus.SCRAPING)

        result = run(pipeline, record.id)

        assert result.status == ImportStatus.SCRAPING
        assert pipeline.scraper.calls == []

    def test_missing_record(self, pipeline):
        assert run(pipeline, "missing") is None


class TestFailures:

    def test_scrape_failure_is_not_retried_when_permanent(self, pipeline):
        pipeline.scraper.results = [InstagramScrapeError("NOT_FOUND", "Instagram post C0ffee123 was not found")]
        record = queued(pipeline)

        final = run(pipeline, record.id)

        assert final.status == ImportStatus.FAILED
        assert final.stage == ImportStatus.FAILED
        assert final.error == "Instagram post C0ffee123 was not found"
        assert final.progress == 15
        assert final.metadata["failedStage"] == "scraping"
        assert final.metadata["errorCode"] == "NOT_FOUND"
        assert len(pipeline.scraper.calls) == 1
        assert pipeline.downloader.calls == []

    def test_transient_scrape_failure_is_retried(self, pipeline):
        pipeline.scraper.results = [
            InstagramScrapeError("TRANSIENT_ERROR", "connection reset"),
            make_post(),
        ]

        final = run(pipeline, queued(pipeline).id)

        assert final.status == ImportStatus.READY
        assert len(pipeline.scraper.calls) == 2

    def test_retries_are_bounded(self, pipeline):
        pipeline.scraper.results = [InstagramScrapeError("RATE_LIMITED", "Instagram rate limit exceeded")]

        final = run(pipeline, queued(pipeline).id)

        assert final.status == ImportStatus.FAILED
        assert len(pipeline.scraper.calls) == 3

    def test_download_failure_removes_earlier_downloads(self, pipeline):
        pipeline.scraper.results = [make_post(media_count=2)]
        pipeline.downloader.errors[1] = MediaDownloadError("FILE_TOO_LARGE", "Media file exceeds maximum size")

        final = run(pipeline, queued(pipeline).id)

        assert final.status == ImportStatus.FAILED
        assert final.metadata["failedStage"] == "downloading_media"
        assert final.progress == 35
        assert len(pipeline.downloader.paths) == 1
        assert not os.path.exists(pipeline.downloader.paths[0])
        assert pipeline.gemini.uploads == []

    def test_upload_failure(self, pipeline):
        pipeline.gemini.upload_error = GeminiUploadError("FAILED_PROCESSING", "Gemini failed to process file")

        final = run(pipeline, queued(pipeline).id)

        assert final.status == ImportStatus.FAILED
        assert final.metadata["failedStage"] == "uploading_media"
        assert final.error == "Gemini failed to process file"
        assert not os.path.exists(pipeline.downloader.paths[0])

    def test_validation_failure(self, pipeline):
        pipeline.gemini.extract_error = GeminiExtractionError(
            "VALIDATION_FAILED", "Recipe validation failed: steps: At least one step is required")

        final = run(pipeline, queued(pipeline).id)

        assert final.status == ImportStatus.FAILED
        assert final.metadata["failedStage"] == "extracting"
        assert final.error.startswith("Recipe validation failed")
        assert final.recipe_id is None
        assert pipeline.recipe_store.list() == []
        assert len(pipeline.gemini.extract_calls) == 1

    def test_unexpected_error_is_recorded(self, pipeline):
        pipeline.scraper.results = [RuntimeError("boom")]

        final = run(pipeline, queued(pipeline).id)

        assert final.status == ImportStatus.FAILED
        assert final.error == "boom"
        assert len(pipeline.scraper.calls) == 1


class TestCancellation:

    def test_cancel_during_extraction_is_not_overwritten(self, pipeline):
        record = queued(pipeline)
        pipeline.gemini.before_extract = lambda: pipeline.importer.cancel_import(record.id)

        final = run(pipeline, record.id)

        assert final.status == ImportStatus.FAILED
        assert final.error == CANCELLED_MESSAGE
        assert final.progress == 0
        assert final.recipe_id is None
        assert pipeline.recipe_store.list() == []
        assert not any(os.path.exists(path) for path in pipeline.downloader.paths)

    def test_cancel_during_download_stops_the_run(self, pipeline):
        record = queued(pipeline)
        pipeline.downloader.before_download = lambda index: pipeline.importer.cancel_import(record.id)

        final = run(pipeline, record.id)

        assert final.status == ImportStatus.FAILED
        assert final.error == CANCELLED_MESSAGE
        assert pipeline.gemini.uploads == []
        assert not any(os.path.exists(path) for path in pipeline.downloader.paths)

    def test_stale_run_does_not_write(self, pipeline):
        record = queued(pipeline)

        def take_over(index):
            pipeline.import_store.update(record.id, status=ImportStatus.EXTRACTING, stage=ImportStatus.EXTRACTING)

        pipeline.downloader.before_download = take_over

        final = run(pipeline, record.id)

        assert final.status == ImportStatus.EXTRACTING
        assert final.error is None
        assert "failedStage" not in final.metadata

    def test_success_after_cancel_is_discarded(self, pipeline):
        record = queued(pipeline)
        create = pipeline.recipe_store.create

        def create_then_cancel(document):
            created = create(document)
            pipeline.importer.cancel_import(record.id)
            return created

        pipeline.recipe_store.create = create_then_cancel

        final = run(pipeline, record.id)

        assert final.status == ImportStatus.FAILED
        assert final.error == CANCELLED_MESSAGE
        assert final.progress == 0
        assert final.recipe_id is None
        assert pipeline.recipe_store.list() == []
