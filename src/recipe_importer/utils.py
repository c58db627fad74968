# utils.py
#
# Description:
# This module contains utility functions used across the importer,
# such as setting up logging and loading and saving JSON documents.

import json
import logging
import os
import tempfile
from datetime import datetime
from typing import Any, Dict

from . import config


class NoiseFilter(logging.Filter):
    """A filter to suppress common, noisy log messages from libraries."""

    def __init__(self, patterns_to_suppress):
        super().__init__()
        self.patterns = patterns_to_suppress

    def filter(self, record):
        message = record.getMessage()
        return not any(p in message for p in self.patterns)


def setup_logging(log_file: str | None = None):
    """Configures the logging for the application."""
    log_level = os.environ.get('LOG_LEVEL', config.LOG_LEVEL).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = log_file if log_file is not None else config.LOG_FILE
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='a', encoding='utf-8'))

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=handlers,
        force=True
    )

    patterns_to_silence = [
        "HTTP Request:", "JSON Query to graphql/query",
        "AFC is enabled", "AFC remote call", "Both GOOGLE_API_KEY and GEMINI_API_KEY are set"
    ]
    noise_filter = NoiseFilter(patterns_to_silence)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        handler.addFilter(noise_filter)

    logging.getLogger('instaloader').setLevel(logging.WARNING)
    logging.getLogger('google.genai').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    if not config.GOOGLE_API_KEY:
        logging.info("GOOGLE_API_KEY is not set. Imports will fail at the upload stage.")


def load_json(path: str) -> Dict[str, Any]:
    """
    Loads a JSON document from disk, returning an empty dict if it is missing.

    A corrupt document is moved aside to `<path>.corrupt-<timestamp>` so the
    next save cannot overwrite the records it still holds.
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        backup_path = f"{path}.corrupt-{datetime.now().strftime('%Y%m%d%H%M%S%f')}"
        os.replace(path, backup_path)
        logging.error(f"Could not parse {path} ({e}). Moved it to {backup_path}; starting from an empty document.")
        return {}


def save_json(data: Dict[str, Any], path: str):
    """Saves a JSON document atomically (write to a uniquely named temp file, then rename)."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        'w', encoding='utf-8', dir=directory or '.',
        prefix=f"{os.path.basename(path)}.", suffix=".tmp", delete=False,
    ) as f:
        tmp_path = f.name
        try:
            json.dump(data, f, indent=4, ensure_ascii=False)
        except (TypeError, ValueError):
            f.close()
            os.remove(tmp_path)
            raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        os.remove(tmp_path)
        raise


def to_error_message(error: BaseException) -> str:
    """Returns a human readable message for an exception."""
    message = str(error).strip()
    return message or error.__class__.__name__
