# orchestrator.py
#
# Description:
# This module drives a single import through its stages:
# scraping -> downloading_media -> uploading_media -> extracting -> ready.
# Every status change is a conditional write against the status that must
# precede it, so a run whose record was cancelled or taken over stops
# without writing anything further. Downloaded media is always released.

import asyncio
import logging
import os
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import config
from .errors import GeminiUploadError, InstagramScrapeError, MediaDownloadError, RecipeImportError
from .gemini_client import GeminiService
from .instagram_fetcher import InstagramScraper
from .media_downloader import cleanup_media, download_media, extract_extension
from .models import (
    ACTIVE_STATUSES,
    DownloadResult,
    ExtractRecipeParams,
    GeminiFileRef,
    ImportRecord,
    ImportStatus,
    RecipeDocument,
    ScrapedPost,
    utc_now,
)
from .stores import ImportStore, RecipeStore
from .utils import to_error_message

logger = logging.getLogger(__name__)

PROGRESS_SCRAPING = 15
PROGRESS_DOWNLOAD_START = 20
PROGRESS_DOWNLOAD_END = 50
PROGRESS_UPLOAD_END = 70
PROGRESS_EXTRACTING = 75
PROGRESS_VALIDATED = 95
PROGRESS_READY = 100


class _StaleRun(Exception):
    """The record was cancelled, finished or advanced by someone else."""


def build_media_filename(short_code: str, index: int, url: str) -> str:
    return f"{short_code}_{index + 1}{extract_extension(url) or ''}"


def resolve_file_uri(file: Any) -> str:
    uri = getattr(file, "uri", None)
    if not uri:
        raise GeminiUploadError("UPLOAD_FAILED", "Gemini did not return a file URI")
    return uri


def proportional_progress(start: int, end: int, done: int, total: int) -> int:
    if total <= 0:
        return end
    return start + (end - start) * done // total


def _started_at_key(status: ImportStatus) -> str:
    head, *rest = status.value.split("_")
    return head + "".join(part.title() for part in rest) + "StartedAt"


class ImportOrchestrator:
    """
    Runs the import pipeline for one record at a time.

    The collaborators are blocking (requests, instaloader, google-genai) and are
    run in worker threads so several imports can progress concurrently.
    """

    def __init__(
        self,
        import_store: ImportStore,
        recipe_store: RecipeStore,
        scraper: InstagramScraper,
        gemini: GeminiService,
        download: Callable[..., DownloadResult] = download_media,
        cleanup: Callable[[Optional[str]], None] = cleanup_media,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        max_media_assets: Optional[int] = None,
    ):
        self.import_store = import_store
        self.recipe_store = recipe_store
        self.scraper = scraper
        self.gemini = gemini
        self.download = download
        self.cleanup = cleanup
        self.max_attempts = max(1, max_attempts or config.MAX_STAGE_ATTEMPTS)
        self.retry_base_delay = config.STAGE_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self.retry_max_delay = config.STAGE_RETRY_MAX_DELAY if retry_max_delay is None else retry_max_delay
        self.max_media_assets = max_media_assets or config.MAX_MEDIA_ASSETS

    async def process(self, import_id: str) -> Optional[ImportRecord]:
        """
        Processes a queued import to completion.

        Returns:
            The final record, the untouched record if it was not queued, or None
            if it does not exist. Pipeline errors are written onto the record.
        """
        record = self.import_store.get(import_id)
        if record is None:
            logger.warning(f"[import {import_id}] Record not found; nothing to process")
            return None
        if record.status != ImportStatus.QUEUED:
            logger.info(f"[import {import_id}] Already {record.status.value}; skipping")
            return record

        metadata: Dict[str, Any] = dict(record.metadata)
        downloads: List[DownloadResult] = []
        stage = ImportStatus.QUEUED

        try:
            stage = ImportStatus.SCRAPING
            self._transition(import_id, stage, ImportStatus.QUEUED, PROGRESS_SCRAPING, metadata)
            post: ScrapedPost = await self._run_with_retries(
                import_id, stage, "scrape", self.scraper.fetch, record.input_url)
            media = post.media[:self.max_media_assets]
            if not media:
                raise InstagramScrapeError(
                    "NO_MEDIA", f"No suitable media asset found on Instagram post {record.input_url}")
            metadata.update({
                "shortCode": post.short_code,
                "ownerUsername": post.owner_username,
                "mediaCount": len(media),
            })
            logger.info(f"[import {import_id}] Scraped post {post.short_code} with {len(media)} media asset(s)")

            stage = ImportStatus.DOWNLOADING_MEDIA
            self._transition(import_id, stage, ImportStatus.SCRAPING, PROGRESS_DOWNLOAD_START, metadata)
            for index, asset in enumerate(media):
                result = await self._run_with_retries(
                    import_id, stage, "download", self.download,
                    asset.url, build_media_filename(post.short_code, index, asset.url))
                downloads.append(result)
                self._advance(import_id, stage, proportional_progress(
                    PROGRESS_DOWNLOAD_START, PROGRESS_DOWNLOAD_END, index + 1, len(media)))

            stage = ImportStatus.UPLOADING_MEDIA
            self._transition(import_id, stage, ImportStatus.DOWNLOADING_MEDIA, PROGRESS_DOWNLOAD_END, metadata)
            files: List[GeminiFileRef] = []
            for index, download in enumerate(downloads):
                uploaded = await self._run_with_retries(
                    import_id, stage, "upload", self.gemini.upload_to_gemini,
                    download.file_path, download.mime_type, display_name=os.path.basename(download.file_path))
                files.append(GeminiFileRef(uri=resolve_file_uri(uploaded), mime_type=download.mime_type))
                self._advance(import_id, stage, proportional_progress(
                    PROGRESS_DOWNLOAD_END, PROGRESS_UPLOAD_END, index + 1, len(downloads)))
            metadata["geminiFileUris"] = [file.uri for file in files]

            stage = ImportStatus.EXTRACTING
            self._transition(import_id, stage, ImportStatus.UPLOADING_MEDIA, PROGRESS_EXTRACTING, metadata)
            params = ExtractRecipeParams(
                gemini_file_uri=files[0].uri,
                media_mime_type=files[0].mime_type,
                caption=post.caption,
                hashtags=post.hashtags,
                owner_username=post.owner_username,
                extra_files=files[1:],
            )
            # The client already makes several attempts per call.
            extraction = await self._run_with_retries(
                import_id, stage, "extract", self.gemini.extract_recipe, params, attempts=1)
            metadata["confidence"] = extraction.confidence
            metadata["validationWarnings"] = [f"{issue.path}: {issue.message}" for issue in extraction.issues]
            self._advance(import_id, stage, PROGRESS_VALIDATED, metadata=metadata)

            document = RecipeDocument(
                id=uuid.uuid4().hex,
                import_id=import_id,
                input_url=record.input_url,
                short_code=post.short_code,
                caption=post.caption,
                hashtags=post.hashtags,
                owner_username=post.owner_username,
                gemini_file_uris=[file.uri for file in files],
                recipe_data=extraction.recipe,
            )
            self.recipe_store.create(document)

            metadata["completedAt"] = utc_now().isoformat()
            finished = self.import_store.update_if(
                import_id, {ImportStatus.EXTRACTING},
                status=ImportStatus.READY, stage=ImportStatus.READY, progress=PROGRESS_READY,
                recipe_id=document.id, error=None, metadata=metadata,
            )
            if finished is None:
                self.recipe_store.delete(document.id)
                logger.warning(
                    f"[import {import_id}] ⚠️ Discarding extracted recipe '{extraction.recipe.title}'; "
                    "the import was cancelled or changed while extracting")
                return self.import_store.get(import_id)

            logger.info(f"[import {import_id}] ✅ Ready: '{extraction.recipe.title}' (recipe {document.id})")
            return finished

        except _StaleRun:
            logger.info(f"[import {import_id}] Record changed outside this run during {stage.value}; stopping")
            return self.import_store.get(import_id)
        except Exception as e:
            return self._fail(import_id, stage, e, metadata)
        finally:
            await self._release(import_id, downloads)

    def _transition(self, import_id: str, status: ImportStatus, previous: ImportStatus,
                    progress: int, metadata: Dict[str, Any]):
        metadata[_started_at_key(status)] = utc_now().isoformat()
        updated = self.import_store.update_if(
            import_id, {previous}, status=status, stage=status, progress=progress, metadata=metadata)
        if updated is None:
            raise _StaleRun()
        logger.debug(f"[import {import_id}] {previous.value} -> {status.value} ({progress}%)")

    def _advance(self, import_id: str, status: ImportStatus, progress: int,
                 metadata: Optional[Dict[str, Any]] = None):
        fields: Dict[str, Any] = {"progress": progress}
        if metadata is not None:
            fields["metadata"] = metadata
        if self.import_store.update_if(import_id, {status}, **fields) is None:
            raise _StaleRun()

    def _ensure_current(self, import_id: str, status: ImportStatus):
        record = self.import_store.get(import_id)
        if record is None or record.status != status:
            raise _StaleRun()

    async def _run_with_retries(self, import_id: str, status: ImportStatus, label: str,
                                func: Callable, *args, attempts: Optional[int] = None, **kwargs):
        """
        Runs a blocking collaborator call in a worker thread. Retryable errors are
        retried with exponential backoff; the record is checked before each retry.
        """
        attempts = attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except RecipeImportError as e:
                if not e.retryable or attempt >= attempts:
                    raise
                delay = min(self.retry_base_delay * 2 ** (attempt - 1), self.retry_max_delay)
                logger.warning(
                    f"[import {import_id}] {label} attempt {attempt}/{attempts} failed ({e.code}): {e}. "
                    f"Retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                self._ensure_current(import_id, status)

    def _fail(self, import_id: str, stage: ImportStatus, error: BaseException,
              metadata: Dict[str, Any]) -> Optional[ImportRecord]:
        message = to_error_message(error)
        metadata = {**metadata, "failedStage": stage.value}
        if isinstance(error, RecipeImportError):
            metadata["errorCode"] = error.code

        failed = self.import_store.update_if(
            import_id, ACTIVE_STATUSES,
            status=ImportStatus.FAILED, stage=ImportStatus.FAILED, error=message, metadata=metadata,
        )
        if failed is None:
            logger.info(f"[import {import_id}] Error after the record left {stage.value} was dropped: {message}")
            return self.import_store.get(import_id)

        if isinstance(error, RecipeImportError):
            logger.error(f"[import {import_id}] ❌ Failed during {stage.value} ({error.code}): {message}")
        else:
            logger.exception(f"[import {import_id}] ❌ Unexpected error during {stage.value}: {message}")
        return failed

    async def _release(self, import_id: str, downloads: Iterable[DownloadResult]):
        for download in downloads:
            try:
                await asyncio.to_thread(self.cleanup, download.file_path)
            except MediaDownloadError as e:
                logger.warning(f"[import {import_id}] Could not remove {download.file_path}: {e}")
