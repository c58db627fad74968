# importer.py
#
# Description:
# This module is the submission surface of the importer. It creates import
# records, runs each import as a supervised background task and exposes
# cancel, retry and status queries. A submission returns as soon as the
# queued record exists; callers poll the record for progress.

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .errors import ImportConflictError, ImportNotFoundError, InvalidImportUrlError
from .instagram_fetcher import extract_shortcode
from .models import ACTIVE_STATUSES, ImportRecord, ImportStatus, utc_now
from .orchestrator import ImportOrchestrator
from .utils import to_error_message

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Import cancelled by user"
INTERRUPTED_MESSAGE = "Import task was interrupted"

CANCELLABLE_STATUSES = frozenset({
    ImportStatus.QUEUED,
    ImportStatus.SCRAPING,
    ImportStatus.DOWNLOADING_MEDIA,
    ImportStatus.UPLOADING_MEDIA,
    ImportStatus.EXTRACTING,
})


class RecipeImporter:
    """
    Owns the background tasks of one process. At most one task runs per import id.
    """

    def __init__(self, orchestrator: ImportOrchestrator):
        self.orchestrator = orchestrator
        self.import_store = orchestrator.import_store
        self.recipe_store = orchestrator.recipe_store
        self._tasks: Dict[str, asyncio.Task] = {}

    async def submit_import(self, url: str) -> ImportRecord:
        """
        Validates the URL, creates a queued record and starts processing it.

        Raises:
            InvalidImportUrlError: if the URL is blank or not an Instagram post.
            ImportConflictError: if the URL already has a recipe or an active import.
        """
        return self._submit(url)

    def _submit(self, url: Optional[str], metadata: Optional[dict] = None) -> ImportRecord:
        url = (url or "").strip()
        if not url:
            raise InvalidImportUrlError("An Instagram post URL is required")
        shortcode = extract_shortcode(url)
        if not shortcode:
            raise InvalidImportUrlError(f"Not an Instagram post URL: {url}")

        recipe = self.recipe_store.find_by_url(url)
        if recipe is not None:
            raise ImportConflictError(f"A recipe for {url} already exists", recipe_id=recipe.id)

        active = self.import_store.list(status=ACTIVE_STATUSES, input_url=url, limit=1)
        if active:
            raise ImportConflictError(
                f"An import for {url} is already {active[0].status.value}",
                status=active[0].status.value, import_id=active[0].id)

        record = self.import_store.create(url, metadata={"shortCode": shortcode, **(metadata or {})})
        logger.info(f"[import {record.id}] Queued {url}")
        self.dispatch(record.id)
        return record

    def dispatch(self, import_id: str) -> asyncio.Task:
        """Starts the background task for an import unless one is already running."""
        existing = self._tasks.get(import_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._supervise(import_id), name=f"import-{import_id}")
        self._tasks[import_id] = task

        def _forget(done: asyncio.Task):
            if self._tasks.get(import_id) is done:
                del self._tasks[import_id]

        task.add_done_callback(_forget)
        return task

    async def _supervise(self, import_id: str) -> Optional[ImportRecord]:
        try:
            return await self.orchestrator.process(import_id)
        except asyncio.CancelledError:
            logger.warning(f"[import {import_id}] Background task was interrupted")
            self._mark_failed(import_id, INTERRUPTED_MESSAGE)
            raise
        except Exception as e:
            logger.exception(f"[import {import_id}] Background task failed")
            self._mark_failed(import_id, to_error_message(e))
            return self.import_store.get(import_id)

    def _mark_failed(self, import_id: str, message: str):
        self.import_store.update_if(
            import_id, ACTIVE_STATUSES,
            status=ImportStatus.FAILED, stage=ImportStatus.FAILED, error=message,
        )

    def cancel_import(self, import_id: str, permanent: bool = False) -> Optional[ImportRecord]:
        """
        Cancels an in-flight import, or deletes its record when `permanent` is set.

        Cancellation is cooperative: a running task notices it at its next
        checkpoint and stops without writing.

        Returns:
            The cancelled record, or None after a permanent delete.
        """
        record = self.import_store.get(import_id)
        if record is None:
            raise ImportNotFoundError(import_id)

        if permanent:
            self.import_store.delete(import_id)
            logger.info(f"[import {import_id}] Deleted")
            return None

        cancelled = self.import_store.update_if(
            import_id, CANCELLABLE_STATUSES,
            status=ImportStatus.FAILED, stage=ImportStatus.FAILED, progress=0, error=CANCELLED_MESSAGE,
        )
        if cancelled is None:
            current = self.import_store.get(import_id)
            if current is None:
                raise ImportNotFoundError(import_id)
            raise ImportConflictError(
                f"Import is already {current.status.value} and can no longer be cancelled",
                status=current.status.value, import_id=import_id, recipe_id=current.recipe_id)

        logger.info(f"[import {import_id}] Cancelled while {record.status.value}")
        return cancelled

    async def retry_import(self, import_id: str) -> ImportRecord:
        """Starts a new import for the URL of a failed import."""
        record = self.get_import(import_id)
        if record.status != ImportStatus.FAILED:
            raise ImportConflictError(
                f"Only failed imports can be retried; import is {record.status.value}",
                status=record.status.value, import_id=import_id)
        return self._submit(record.input_url, metadata={"retryOf": import_id, "retriedAt": utc_now().isoformat()})

    def get_import(self, import_id: str) -> ImportRecord:
        record = self.import_store.get(import_id)
        if record is None:
            raise ImportNotFoundError(import_id)
        return record

    def list_imports(self, status: Optional[Iterable[ImportStatus]] = None, active: bool = False,
                     limit: Optional[int] = None) -> List[ImportRecord]:
        if active:
            status = ACTIVE_STATUSES
        return self.import_store.list(status=status, limit=limit)

    async def wait_for(self, import_id: str, timeout: Optional[float] = None) -> ImportRecord:
        """Waits for the background task of an import, then returns the record."""
        task = self._tasks.get(import_id)
        if task is not None:
            await asyncio.wait([task], timeout=timeout)
        return self.get_import(import_id)

    async def drain(self):
        """Waits until every background task of this importer has finished."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
