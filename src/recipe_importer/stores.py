# stores.py
#
# Description:
# This module holds the import record store and the recipe document store.
# Both keep their documents in memory behind a lock; when a path is given
# every write is also saved to a JSON file (and re-read before each
# operation) so a second process, e.g. the CLI, sees the same state. A file
# lock beside the JSON file makes each read-modify-write atomic across
# processes.

import logging
import os
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from filelock import FileLock
from pydantic import BaseModel

from .errors import ImportNotFoundError
from .models import ImportRecord, ImportStatus, RecipeDocument, utc_now
from .utils import load_json, save_json

logger = logging.getLogger(__name__)

DocumentT = TypeVar("DocumentT", bound=BaseModel)

FILE_LOCK_TIMEOUT_SECONDS = 30


class _DocumentCollection(Generic[DocumentT]):
    model: Type[DocumentT]

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._documents: Dict[str, DocumentT] = {}
        self._lock = threading.RLock()
        self._file_lock = None
        if path:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._file_lock = FileLock(f"{path}.lock", timeout=FILE_LOCK_TIMEOUT_SECONDS)
        with self._locked():
            self._load()

    @contextmanager
    def _locked(self):
        """Holds the in-process lock and, for file backed stores, the inter-process file lock."""
        with self._lock:
            if self._file_lock is None:
                yield
            else:
                with self._file_lock:
                    yield

    def _load(self):
        if not self.path:
            return
        data = load_json(self.path)
        self._documents = {key: self.model.model_validate(value) for key, value in data.items()}

    def _persist(self):
        if not self.path:
            return
        save_json({key: doc.model_dump(mode="json") for key, doc in self._documents.items()}, self.path)

    def _replace(self, document: DocumentT, fields: Dict[str, Any]) -> DocumentT:
        return self.model.model_validate({**document.model_dump(), **fields})

    def get(self, document_id: str) -> Optional[DocumentT]:
        with self._locked():
            self._load()
            document = self._documents.get(document_id)
            return document.model_copy(deep=True) if document else None

    def delete(self, document_id: str):
        """Deletes a document. Deleting a missing document is a no-op."""
        with self._locked():
            self._load()
            if self._documents.pop(document_id, None) is not None:
                self._persist()


class ImportStore(_DocumentCollection[ImportRecord]):
    """Stores ImportRecords. Each call is one atomic read or write."""

    model = ImportRecord

    def create(self, input_url: str, metadata: Optional[Dict[str, Any]] = None) -> ImportRecord:
        with self._locked():
            self._load()
            record = ImportRecord(id=uuid.uuid4().hex, input_url=input_url, metadata=dict(metadata or {}))
            self._documents[record.id] = record
            self._persist()
            return record.model_copy(deep=True)

    def update(self, import_id: str, **fields) -> ImportRecord:
        with self._locked():
            self._load()
            record = self._documents.get(import_id)
            if record is None:
                raise ImportNotFoundError(import_id)
            updated = self._replace(record, {**fields, "updated_at": utc_now()})
            self._documents[import_id] = updated
            self._persist()
            return updated.model_copy(deep=True)

    def update_if(self, import_id: str, allowed_statuses: Iterable[ImportStatus], **fields) -> Optional[ImportRecord]:
        """
        Applies the update only while the record's status is one of `allowed_statuses`.

        Returns:
            The updated record, or None if the record is missing or in another status.
        """
        allowed = {ImportStatus(status) for status in allowed_statuses}
        with self._locked():
            self._load()
            record = self._documents.get(import_id)
            if record is None or record.status not in allowed:
                return None
            updated = self._replace(record, {**fields, "updated_at": utc_now()})
            self._documents[import_id] = updated
            self._persist()
            return updated.model_copy(deep=True)

    def list(self, status: Optional[Iterable[ImportStatus]] = None, input_url: Optional[str] = None,
             limit: Optional[int] = None) -> List[ImportRecord]:
        """Lists records, newest first, optionally filtered by status and input URL."""
        statuses = {ImportStatus(s) for s in status} if status is not None else None
        with self._locked():
            self._load()
            records = [
                record for record in self._documents.values()
                if (statuses is None or record.status in statuses)
                and (input_url is None or record.input_url == input_url)
            ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        if limit is not None:
            records = records[:limit]
        return [record.model_copy(deep=True) for record in records]


class RecipeStore(_DocumentCollection[RecipeDocument]):
    """Stores the recipe documents created by successful imports."""

    model = RecipeDocument

    def create(self, document: RecipeDocument) -> RecipeDocument:
        with self._locked():
            self._load()
            if document.id in self._documents:
                raise ValueError(f"Recipe {document.id} already exists")
            self._documents[document.id] = document.model_copy(deep=True)
            self._persist()
            return document.model_copy(deep=True)

    def update(self, recipe_id: str, **fields) -> RecipeDocument:
        with self._locked():
            self._load()
            document = self._documents.get(recipe_id)
            if document is None:
                raise LookupError(f"Recipe {recipe_id} not found")
            updated = self._replace(document, fields)
            self._documents[recipe_id] = updated
            self._persist()
            return updated.model_copy(deep=True)

    def find_by_url(self, input_url: str) -> Optional[RecipeDocument]:
        with self._locked():
            self._load()
            for document in self._documents.values():
                if document.input_url == input_url:
                    return document.model_copy(deep=True)
        return None

    def list(self) -> List[RecipeDocument]:
        with self._locked():
            self._load()
            documents = [doc.model_copy(deep=True) for doc in self._documents.values()]
        documents.sort(key=lambda doc: doc.created_at, reverse=True)
        return documents
