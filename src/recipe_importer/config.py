# config.py
#
# Description:
# This file contains all the configuration settings for the importer.
# By keeping them in one place, it's easy to adjust paths, model names,
# size/time bounds and other parameters without changing the core logic.

import os
import tempfile


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return float(value)


# --- File Paths ---
IMPORTS_JSON_PATH = os.environ.get("IMPORTS_JSON_PATH", "output/imports.json")
RECIPES_JSON_PATH = os.environ.get("RECIPES_JSON_PATH", "output/recipes.json")

# --- Logging ---
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE", "importer.log")

# --- Instagram Settings ---
# Instagram login credentials
# Set these via environment variables for security
# How to set environment variables:
# Windows: set INSTAGRAM_USERNAME=your_username
# macOS/Linux: export INSTAGRAM_USERNAME=your_username
INSTAGRAM_USERNAME = os.environ.get("INSTAGRAM_USERNAME", "")
INSTAGRAM_PASSWORD = os.environ.get("INSTAGRAM_PASSWORD", "")  # Not needed if session is saved
INSTAGRAM_SESSION_DIR = os.environ.get("INSTAGRAM_SESSION_DIR", ".")

# --- Google Gemini API Settings ---
# IMPORTANT: Set your Google API key as an environment variable.
# macOS/Linux: export GOOGLE_API_KEY="your_api_key_here"
# Windows: set GOOGLE_API_KEY="your_api_key_here"
GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY", "")
GEMINI_RECIPE_MODEL = os.environ.get("GEMINI_RECIPE_MODEL", "gemini-2.5-flash")
GEMINI_TEMPERATURE = _env_float("GEMINI_TEMPERATURE", 0.2)
GEMINI_MAX_OUTPUT_TOKENS = _env_int("GEMINI_MAX_OUTPUT_TOKENS", 10000)
GEMINI_UPLOAD_TIMEOUT_MS = _env_int("GEMINI_UPLOAD_TIMEOUT_MS", 120_000)
GEMINI_POLL_INTERVAL_MS = _env_int("GEMINI_POLL_INTERVAL_MS", 5_000)
MAX_EXTRACTION_ATTEMPTS = _env_int("MAX_EXTRACTION_ATTEMPTS", 2)

# --- Media Settings ---
MEDIA_TMP_DIR = os.environ.get(
    "MEDIA_TMP_DIR",
    os.path.join(tempfile.gettempdir(), "instagram-recipe-extraction-media"),
)
MEDIA_DOWNLOAD_TIMEOUT_MS = _env_int("MEDIA_DOWNLOAD_TIMEOUT_MS", 30_000)
MAX_MEDIA_BYTES = _env_int("MAX_MEDIA_BYTES", 20 * 1024 * 1024)  # 20 MB, Gemini inline limit
MAX_MEDIA_ASSETS = _env_int("MAX_MEDIA_ASSETS", 4)
MEDIA_SWEEP_MAX_AGE_SECONDS = _env_int("MEDIA_SWEEP_MAX_AGE_SECONDS", 6 * 60 * 60)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".heic", ".heif"}
VIDEO_EXTENSIONS = {".mp4", ".mov", ".m4v", ".webm", ".avi", ".mpeg", ".mpg", ".mkv"}
GENERIC_MIME_TYPES = {"application/octet-stream", "binary/octet-stream"}

# --- Processing Settings ---
MAX_STAGE_ATTEMPTS = _env_int("MAX_STAGE_ATTEMPTS", 3)
STAGE_RETRY_BASE_DELAY = _env_float("STAGE_RETRY_BASE_DELAY", 1.0)
STAGE_RETRY_MAX_DELAY = 10.0

# --- LLM Prompts ---
SYSTEM_PROMPT = '''
You are a world-class culinary extractor. Your only function is to convert social media recipe posts
(caption, hashtags and an attached image or video) into structured JSON data. Follow these rules with
extreme precision.

**Output Format:**
- Respond with pure JSON (no Markdown) shaped as `{"recipe": { ... }}` where the recipe object follows
  the RecipeData schema described below.
- If the post contains MORE THAN ONE distinct recipe, do NOT pick one. Return every candidate in a
  `"recipes"` array instead of `"recipe"`.
- If no recipe can be extracted, return an empty JSON object `{}`.

**Priority of Sources:**
1. Caption - treat as authoritative.
2. Media (video/image) - use only to infer missing details, never contradict the caption.
3. Infer missing details conservatively; prefer `null` over guesswork.

**Field-by-Field Instructions:**

1.  **Title (`title`):** The recipe's title. If no clear title is given, create a concise, descriptive one.

2.  **Servings (`servings`):** `{"value": <number>, "note": <optional text>}` or `null` if not mentioned.

3.  **Times (`prep_time_min`, `cook_time_min`, `total_time_min`):** Whole minutes or `null`.

4.  **Ingredients (`ingredients`):**
    - Every ingredient gets a unique `id` (`ing_1`, `ing_2`, ...).
    - `name` contains only the ingredient name (e.g., "flour").
    - `quantity` is the numeric amount and `unit` the unit (WRONG: `name: "280g flour"`,
      CORRECT: `name: "flour", quantity: 280, unit: "g"`).
    - If unclear, set `quantity: null` and `unit: null`.
    - Use `section` for ingredient groups (e.g., "For the dressing"), `preparation` for cuts and
      states (e.g., "diced"), and `optional: true` for optional items.

5.  **Steps (`steps`):**
    - One object per step: `{"idx": 1, "text": "...", "used_ingredients": ["ing_1"]}`.
    - `idx` starts at 1 and follows the order of the instructions.
    - `used_ingredients` MUST only reference ids defined in `ingredients`.
    - Strip any leading numbers or bullet points from the step text.

6.  **Nutrition (`macros_per_serving`):** `calories`, `protein_g`, `fat_g`, `carbs_g` as numbers, or `null`.

7.  **Assumptions (`assumptions`):** List every value you estimated from context or media.

8.  **Confidence (`confidence`, 0..1):** Start at 1.0, then
    - -0.05 per missing ingredient quantity (max -0.30)
    - -0.05 if any step was inferred from media
    - -0.05 if total_time_min was inferred
    Clamp to [0,1] and round to 2 decimals.

Translate the recipe to English if needed.
'''
