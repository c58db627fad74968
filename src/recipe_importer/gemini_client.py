# gemini_client.py
#
# Description:
# This module handles all interactions with the Google Gemini API using the
# `google-genai` SDK: uploading media to the Files API, waiting until the
# uploaded file is usable, and requesting structured recipe extraction.

import json
import logging
import re
import time
import unicodedata
from typing import Any, List, Optional

from google import genai
from google.genai import errors, types

from . import config
from .errors import GeminiExtractionError, GeminiUploadError
from .models import ExtractionResult, ExtractRecipeParams, RecipeEnvelope
from .recipe_validator import validate_recipe_data

logger = logging.getLogger(__name__)

# Set specific Google Gemini loggers to WARNING level
logging.getLogger('google.genai').setLevel(logging.WARNING)

SPAM_KEYWORDS = [
    'kommentiere', 'comment', 'link in bio', 'follow for more',
    'sichere dir jetzt', 'kostenloses erstgespräch', 'save this post', 'share this',
]

EMOJI_PATTERN = re.compile(
    "["
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map symbols
    "\U0001F700-\U0001F77F"  # alchemical symbols
    "\U0001F780-\U0001F7FF"  # Geometric Shapes Extended
    "\U0001F800-\U0001F8FF"  # Supplemental Arrows-C
    "\U0001F900-\U0001F9FF"  # Supplemental Symbols and Pictographs
    "\U0001FA00-\U0001FA6F"  # Chess Symbols
    "\U0001FA70-\U0001FAFF"  # Symbols and Pictographs Extended-A
    "\U00002702-\U000027B0"
    "\U000024C2-\U0001F251"
    "]+",
    flags=re.UNICODE,
)


def preprocess_caption(caption: str) -> str:
    """
    Cleans and standardizes the Instagram caption text to improve LLM accuracy.
    Hashtags and mentions are removed here because they are sent separately.
    """
    cleaned_caption = unicodedata.normalize('NFKC', caption)
    cleaned_caption = EMOJI_PATTERN.sub(r'', cleaned_caption)
    cleaned_caption = re.sub(r'[@#]\w+', '', cleaned_caption)
    lines = cleaned_caption.split('\n')
    non_marketing_lines = []
    for line in lines:
        if not any(keyword in line.lower() for keyword in SPAM_KEYWORDS):
            non_marketing_lines.append(line)
    cleaned_caption = '\n'.join(non_marketing_lines)
    cleaned_caption = re.sub(r'^[•*–-]\s*', '- ', cleaned_caption, flags=re.MULTILINE)
    cleaned_caption = re.sub(r'\n\s*\n', '\n', cleaned_caption).strip()
    return cleaned_caption


def build_user_prompt(params: ExtractRecipeParams) -> str:
    parts: List[str] = []

    if params.caption:
        parts.append(f"--- SOURCE CAPTION ---\n{preprocess_caption(params.caption)}\n--- END SOURCE CAPTION ---")
    if params.hashtags:
        parts.append("HASHTAGS\n" + " ".join(f"#{tag.lstrip('#')}" for tag in params.hashtags))
    if params.owner_username:
        parts.append(f"AUTHOR\n@{params.owner_username}")

    media_count = 1 + len(params.extra_files)
    if media_count > 1:
        parts.append(f"MEDIA\n{media_count} media files are attached; use them only to infer missing "
                     "specifics (quantities, doneness, timings).")
    else:
        parts.append("MEDIA\nA media file is attached; use it only to infer missing specifics "
                     "(quantities, doneness, timings).")
    parts.append("Now extract the given recipe - if you are not able to determine specifics infer.")
    return "\n\n".join(parts)


def parse_response_json(raw_text: str) -> Any:
    """Parses the model output, tolerating a Markdown code fence around the JSON."""
    text = raw_text.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, flags=re.DOTALL)
    if fenced:
        text = fenced.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise GeminiExtractionError("INVALID_JSON", f"Gemini returned invalid JSON: {e}") from e


def select_recipe_candidate(payload: Any) -> dict:
    """
    Returns the single recipe contained in the response. A response with more than
    one distinct candidate is rejected instead of picking one of them.
    """
    if isinstance(payload, list):
        candidates = list(payload)
    elif isinstance(payload, dict):
        if "recipe" in payload or "recipes" in payload:
            candidates = [payload.get("recipe")]
            recipes = payload.get("recipes")
            if isinstance(recipes, list):
                candidates.extend(recipes)
            elif recipes:
                candidates.append(recipes)
        else:
            candidates = [payload]
    else:
        raise GeminiExtractionError("NO_RECIPE", "Gemini response is not a JSON object")

    distinct = {}
    for candidate in candidates:
        if not candidate:
            continue
        key = json.dumps(candidate, sort_keys=True, default=str)
        distinct.setdefault(key, candidate)

    if not distinct:
        raise GeminiExtractionError("NO_RECIPE", "Gemini could not find a recipe in this post")
    if len(distinct) > 1:
        raise GeminiExtractionError(
            "AMBIGUOUS_RECIPE", f"Gemini returned {len(distinct)} different recipe candidates for one post")

    candidate = next(iter(distinct.values()))
    if not isinstance(candidate, dict):
        raise GeminiExtractionError("NO_RECIPE", "Gemini returned a recipe that is not a JSON object")
    return candidate


def _state_name(state: Any) -> str:
    return str(getattr(state, "value", state) or "")


class GeminiService:
    """
    Client for the Gemini Files and generation APIs.

    One instance is created at process start and passed to the orchestrator.
    The underlying SDK client is created on first use; `reset()` drops it.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        upload_timeout_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
        max_output_tokens: Optional[int] = None,
        client: Optional[genai.Client] = None,
    ):
        self.api_key = config.GOOGLE_API_KEY if api_key is None else api_key
        self.model = model or config.GEMINI_RECIPE_MODEL
        self.temperature = config.GEMINI_TEMPERATURE if temperature is None else temperature
        self.upload_timeout_ms = upload_timeout_ms if upload_timeout_ms is not None else config.GEMINI_UPLOAD_TIMEOUT_MS
        self.poll_interval_ms = poll_interval_ms if poll_interval_ms is not None else config.GEMINI_POLL_INTERVAL_MS
        self.max_output_tokens = max_output_tokens or config.GEMINI_MAX_OUTPUT_TOKENS
        self._client = client

        if self.model.startswith("models/"):
            self.model = self.model.split('/', 1)[1]

    def reset(self):
        """Drops the cached SDK client (used for test isolation and key changes)."""
        self._client = None

    def get_client(self) -> genai.Client:
        if not self.api_key:
            raise GeminiUploadError("MISSING_API_KEY", "GOOGLE_API_KEY must be configured for Gemini access")
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def upload_to_gemini(
        self,
        file_path: str,
        mime_type: str,
        display_name: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
    ) -> types.File:
        """
        Uploads a local file to the Gemini Files API and waits until it is ACTIVE.

        Returns:
            The active file handle; its `uri` is what the generation request references.
        """
        client = self.get_client()

        try:
            uploaded = client.files.upload(
                file=file_path,
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except Exception as e:
            raise GeminiUploadError("UPLOAD_FAILED", f"Failed to upload media to Gemini: {e}") from e

        if not getattr(uploaded, "name", None):
            raise GeminiUploadError("UPLOAD_FAILED", "Gemini upload did not return a file name")

        logger.debug(f"Uploaded {file_path} to Gemini as {uploaded.name}")
        return self.wait_for_gemini_file(uploaded.name, timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms)

    def wait_for_gemini_file(
        self,
        file_name: str,
        timeout_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
    ) -> types.File:
        """
        Polls the file state at a fixed interval until it is ACTIVE.

        Raises GeminiUploadError with FAILED_PROCESSING if Gemini rejects the file
        and TIMEOUT if it is still processing when the bound elapses.
        """
        client = self.get_client()
        timeout_ms = timeout_ms if timeout_ms is not None else self.upload_timeout_ms
        interval = (poll_interval_ms if poll_interval_ms is not None else self.poll_interval_ms) / 1000
        deadline = time.monotonic() + timeout_ms / 1000

        while True:
            try:
                file = client.files.get(name=file_name)
            except Exception as e:
                raise GeminiUploadError("UPLOAD_FAILED", f"Failed to fetch Gemini file state: {e}") from e

            state = _state_name(file.state)
            if state == types.FileState.ACTIVE.value:
                return file
            if state == types.FileState.FAILED.value:
                error = getattr(file, "error", None)
                message = getattr(error, "message", None) or "Gemini failed to process file"
                raise GeminiUploadError("FAILED_PROCESSING", message)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GeminiUploadError(
                    "TIMEOUT", f"Timed out after {timeout_ms} ms while waiting for Gemini to process {file_name}")
            time.sleep(min(interval, remaining))

    def extract_recipe(self, params: ExtractRecipeParams, max_attempts: Optional[int] = None) -> ExtractionResult:
        """
        Requests structured recipe extraction for an uploaded file.

        Each attempt is an independent request. The last error is raised when
        every attempt fails.
        """
        client = self.get_client()
        attempts = max(1, max_attempts or config.MAX_EXTRACTION_ATTEMPTS)
        last_error: Optional[GeminiExtractionError] = None

        for attempt in range(1, attempts + 1):
            start_time = time.time()
            try:
                result = self._extract_once(client, params)
            except GeminiExtractionError as e:
                last_error = e
                logger.warning(f"Extraction attempt {attempt}/{attempts} with {self.model} failed ({e.code}): {e}")
                continue

            processing_time = time.time() - start_time
            logger.info(
                f"Successfully extracted with Gemini {self.model} in {processing_time:.2f}s: '{result.recipe.title}'")
            return result

        raise last_error

    def _extract_once(self, client: genai.Client, params: ExtractRecipeParams) -> ExtractionResult:
        parts = [
            types.Part.from_text(text=build_user_prompt(params)),
            types.Part.from_uri(file_uri=params.gemini_file_uri, mime_type=params.media_mime_type),
        ]
        for extra in params.extra_files:
            parts.append(types.Part.from_uri(file_uri=extra.uri, mime_type=extra.mime_type))

        generation_config = types.GenerateContentConfig(
            system_instruction=config.SYSTEM_PROMPT,
            temperature=self.temperature,
            response_mime_type="application/json",
            response_schema=RecipeEnvelope,
            max_output_tokens=self.max_output_tokens,
        )

        try:
            response = client.models.generate_content(
                model=self.model,
                contents=[types.Content(role="user", parts=parts)],
                config=generation_config,
            )
            raw_text = (response.text or "").strip()
        except errors.APIError as e:
            raise GeminiExtractionError("GENERATION_FAILED", f"Gemini API error: {e}") from e
        except Exception as e:
            raise GeminiExtractionError("GENERATION_FAILED", f"Gemini request failed: {e}") from e

        if not raw_text:
            raise GeminiExtractionError("GENERATION_FAILED", "Gemini returned an empty response")

        payload = parse_response_json(raw_text)
        candidate = select_recipe_candidate(payload)

        validation = validate_recipe_data(candidate)
        if not validation.valid:
            reasons = "; ".join(f"{issue.path}: {issue.message}" for issue in validation.errors)
            raise GeminiExtractionError(
                "VALIDATION_FAILED", f"Recipe validation failed: {reasons}", issues=validation.issues)

        return ExtractionResult(
            recipe=validation.recipe,
            confidence=validation.confidence,
            issues=validation.warnings,
            raw_text=raw_text,
        )
