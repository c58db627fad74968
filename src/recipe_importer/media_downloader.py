# media_downloader.py
#
# Description:
# This module downloads post media (images and videos) into a managed
# temporary directory so it can be uploaded to Gemini. Downloads are bounded
# in size and wall-clock time, and partially written files never survive a
# failed download.

import logging
import mimetypes
import os
import re
import threading
import time
import uuid
from typing import Optional
from urllib.parse import urlparse

import requests

from . import config
from .errors import MediaDownloadError
from .models import DownloadResult, MediaType

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
CONNECT_TIMEOUT_SECONDS = 10.0

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "image/*,video/*;q=0.9,*/*;q=0.8",
}


def parse_media_url(raw_url: str) -> str:
    """Validates the URL and returns it stripped. Raises before any network call."""
    url = (raw_url or "").strip()
    try:
        parsed = urlparse(url)
    except ValueError:
        raise MediaDownloadError("INVALID_URL", f"Invalid media URL: {raw_url}")

    if not parsed.scheme:
        raise MediaDownloadError("INVALID_URL", f"Invalid media URL: {raw_url}")
    if parsed.scheme.lower() not in ("http", "https"):
        raise MediaDownloadError("UNSUPPORTED_PROTOCOL", f"Unsupported protocol {parsed.scheme}:")
    if not parsed.netloc:
        raise MediaDownloadError("INVALID_URL", f"Invalid media URL: {raw_url}")
    return url


def extract_extension(url: str) -> Optional[str]:
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    ext = os.path.splitext(path)[1].lower()
    return ext or None


def infer_from_mime(mime_type: Optional[str]) -> Optional[MediaType]:
    if not mime_type:
        return None
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("video/"):
        return "video"
    return None


def get_media_type(url: str, mime_type: Optional[str]) -> Optional[MediaType]:
    """
    Classifies the media. The content-type wins; the extension allowlist is only
    consulted when the content-type is absent or generic.
    """
    if mime_type and mime_type not in config.GENERIC_MIME_TYPES:
        return infer_from_mime(mime_type)

    extension = extract_extension(url)
    if extension in config.IMAGE_EXTENSIONS:
        return "image"
    if extension in config.VIDEO_EXTENSIONS:
        return "video"
    return None


def sanitize_filename(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]', '_', name)


def create_filename(preferred_name: Optional[str], url: str) -> str:
    """Creates a collision-resistant filename, keeping the preferred name readable."""
    unique = uuid.uuid4().hex
    if preferred_name:
        return f"{unique}_{sanitize_filename(preferred_name)}"
    return f"{unique}{extract_extension(url) or ''}"


def ensure_temp_dir(target_dir: Optional[str] = None) -> str:
    directory = os.path.abspath(target_dir or config.MEDIA_TMP_DIR)
    os.makedirs(directory, exist_ok=True)
    return directory


def _normalize_mime(header_value: Optional[str]) -> str:
    if not header_value:
        return ""
    return header_value.split(";", 1)[0].strip().lower()


def _declared_length(response: requests.Response) -> Optional[int]:
    header = response.headers.get("Content-Length")
    if not header:
        return None
    try:
        return int(header)
    except ValueError:
        return None


def _stream_to_file(response: requests.Response, file_path: str, max_bytes: int, deadline: float) -> int:
    bytes_read = 0
    with open(file_path, "wb") as f:
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise MediaDownloadError("NETWORK_ERROR", "Timed out while downloading media")
            if not chunk:
                continue
            bytes_read += len(chunk)
            if bytes_read > max_bytes:
                raise MediaDownloadError(
                    "FILE_TOO_LARGE", f"Media file exceeds maximum allowed size of {max_bytes} bytes")
            f.write(chunk)
    return bytes_read


class _DownloadWatchdog:
    """Closes the response once the wall-clock budget is spent, unblocking a stalled read."""

    def __init__(self, response: requests.Response, seconds: float):
        self.expired = threading.Event()
        self._response = response
        self._timer = threading.Timer(max(seconds, 0.0), self._expire)
        self._timer.daemon = True

    def _expire(self):
        self.expired.set()
        logger.debug("Media download exceeded its time budget; closing the connection")
        self._response.close()

    def __enter__(self):
        self._timer.start()
        return self

    def __exit__(self, *exc_info):
        self._timer.cancel()
        return False


def _safe_cleanup(file_path: str):
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial media file {file_path}: {e}")


def download_media(
    url: str,
    filename: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    max_bytes: Optional[int] = None,
    target_dir: Optional[str] = None,
) -> DownloadResult:
    """
    Downloads a remote image or video to the managed temp directory.

    Args:
        url: http(s) URL of the media.
        filename: Optional readable name; a unique prefix is always added.
        timeout_ms: Wall-clock bound for the whole download.
        max_bytes: Maximum accepted size.
        target_dir: Directory to write into, defaults to config.MEDIA_TMP_DIR.

    Returns:
        DownloadResult with the local path, the bytes on disk, mime and media type.
    """
    url = parse_media_url(url)
    timeout_seconds = (timeout_ms if timeout_ms is not None else config.MEDIA_DOWNLOAD_TIMEOUT_MS) / 1000
    max_bytes = max_bytes if max_bytes is not None else config.MAX_MEDIA_BYTES
    deadline = time.monotonic() + timeout_seconds

    try:
        response = requests.get(
            url,
            headers=HEADERS,
            stream=True,
            timeout=(min(CONNECT_TIMEOUT_SECONDS, timeout_seconds), timeout_seconds),
        )
    except requests.Timeout as e:
        raise MediaDownloadError("NETWORK_ERROR", "Timed out while downloading media") from e
    except requests.RequestException as e:
        raise MediaDownloadError("NETWORK_ERROR", f"Failed to download media: {e}") from e

    with response:
        if not response.ok:
            raise MediaDownloadError(
                "DOWNLOAD_FAILED", f"Failed to download media. HTTP {response.status_code}")

        mime_type = _normalize_mime(response.headers.get("Content-Type"))
        media_type = get_media_type(url, mime_type)
        if not media_type:
            raise MediaDownloadError("UNSUPPORTED_MEDIA_TYPE", f"Unsupported media type for url {url}")
        if not mime_type or mime_type in config.GENERIC_MIME_TYPES:
            guessed, _ = mimetypes.guess_type(urlparse(url).path)
            mime_type = guessed or "application/octet-stream"

        declared_length = _declared_length(response)
        if declared_length is not None and declared_length > max_bytes:
            raise MediaDownloadError(
                "FILE_TOO_LARGE", f"Media file exceeds maximum allowed size of {max_bytes} bytes")

        try:
            directory = ensure_temp_dir(target_dir)
        except OSError as e:
            raise MediaDownloadError("WRITE_FAILED", f"Could not create media directory: {e}") from e
        file_path = os.path.join(directory, create_filename(filename, url))

        watchdog = _DownloadWatchdog(response, deadline - time.monotonic())
        try:
            with watchdog:
                _stream_to_file(response, file_path, max_bytes, deadline)
        except MediaDownloadError:
            _safe_cleanup(file_path)
            raise
        except Exception as e:
            _safe_cleanup(file_path)
            # A read interrupted by the watchdog surfaces as whatever the closed socket raises.
            if watchdog.expired.is_set():
                raise MediaDownloadError("NETWORK_ERROR", "Timed out while downloading media") from e
            if isinstance(e, requests.RequestException):
                raise MediaDownloadError(
                    "NETWORK_ERROR", f"Connection lost while downloading media: {e}") from e
            if isinstance(e, OSError):
                raise MediaDownloadError("WRITE_FAILED", f"Failed to write media file: {e}") from e
            raise

        # A closed stream can also end quietly, leaving a truncated file.
        if watchdog.expired.is_set():
            _safe_cleanup(file_path)
            raise MediaDownloadError("NETWORK_ERROR", "Timed out while downloading media")

    size = os.path.getsize(file_path)
    logger.debug(f"Downloaded {media_type} ({size} bytes, {mime_type}) to {file_path}")
    return DownloadResult(file_path=file_path, size=size, mime_type=mime_type, media_type=media_type)


def cleanup_media(file_path: Optional[str]):
    """Deletes a downloaded file. A file that is already gone counts as cleaned up."""
    if not file_path:
        return
    try:
        os.remove(file_path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise MediaDownloadError("WRITE_FAILED", f"Failed to remove media file {file_path}: {e}") from e


def sweep_stale_media(max_age_seconds: Optional[int] = None, target_dir: Optional[str] = None) -> int:
    """
    Removes media files left behind by crashed runs.

    Returns:
        The number of files deleted.
    """
    max_age = max_age_seconds if max_age_seconds is not None else config.MEDIA_SWEEP_MAX_AGE_SECONDS
    directory = os.path.abspath(target_dir or config.MEDIA_TMP_DIR)
    cutoff = time.time() - max_age
    removed = 0

    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return 0

    for entry in entries:
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                os.remove(entry.path)
                removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not sweep stale media file {entry.path}: {e}")

    if removed:
        logger.info(f"Removed {removed} stale media file(s) from {directory}")
    return removed
