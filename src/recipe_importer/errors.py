# errors.py
#
# Description:
# Exception types raised by the importer. Every pipeline error carries a
# machine readable `code` and a `retryable` flag that the orchestrator uses
# to decide whether a failed stage is worth another attempt.

from typing import List, Optional


class RecipeImportError(Exception):
    """Base class for all importer errors."""

    non_retryable_codes: frozenset = frozenset()

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.code not in self.non_retryable_codes

    def __str__(self) -> str:
        return self.message


class MediaDownloadError(RecipeImportError):
    """INVALID_URL, UNSUPPORTED_PROTOCOL, NETWORK_ERROR, UNSUPPORTED_MEDIA_TYPE,
    FILE_TOO_LARGE, DOWNLOAD_FAILED or WRITE_FAILED."""

    non_retryable_codes = frozenset({
        "INVALID_URL", "UNSUPPORTED_PROTOCOL", "UNSUPPORTED_MEDIA_TYPE", "FILE_TOO_LARGE",
    })


class GeminiUploadError(RecipeImportError):
    """MISSING_API_KEY, UPLOAD_FAILED, FAILED_PROCESSING or TIMEOUT."""

    non_retryable_codes = frozenset({"MISSING_API_KEY", "FAILED_PROCESSING", "TIMEOUT"})


class GeminiExtractionError(RecipeImportError):
    """GENERATION_FAILED, INVALID_JSON, NO_RECIPE, AMBIGUOUS_RECIPE or VALIDATION_FAILED."""

    def __init__(self, code: str, message: str, issues: Optional[List] = None):
        super().__init__(code, message)
        self.issues = issues or []


class InstagramScrapeError(RecipeImportError):
    """INVALID_URL, LOGIN_REQUIRED, PRIVATE_POST, NOT_FOUND, RATE_LIMITED, NO_MEDIA or TRANSIENT_ERROR."""

    non_retryable_codes = frozenset({"INVALID_URL", "LOGIN_REQUIRED", "PRIVATE_POST", "NOT_FOUND", "NO_MEDIA"})


# --- Submission surface errors ---

class InvalidImportUrlError(ValueError):
    pass


class ImportNotFoundError(LookupError):
    def __init__(self, import_id: str):
        super().__init__(f"Import {import_id} not found")
        self.import_id = import_id


class ImportConflictError(RuntimeError):
    """The request conflicts with the current state of an import or recipe."""

    def __init__(self, message: str, status: Optional[str] = None,
                 import_id: Optional[str] = None, recipe_id: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.import_id = import_id
        self.recipe_id = recipe_id
