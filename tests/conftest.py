"""
Pytest configuration and fixtures for the recipe importer tests.
"""

import io
import os
from types import SimpleNamespace

import pytest
import requests
from requests.structures import CaseInsensitiveDict

# Keep tests away from real credentials and the user's output directory
os.environ["GOOGLE_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""
os.environ["INSTAGRAM_USERNAME"] = ""

from recipe_importer.importer import RecipeImporter  # noqa: E402
from recipe_importer.models import DownloadResult, ExtractionResult, MediaAsset, ScrapedPost  # noqa: E402
from recipe_importer.orchestrator import ImportOrchestrator  # noqa: E402
from recipe_importer.recipe_validator import validate_recipe_data  # noqa: E402
from recipe_importer.stores import ImportStore, RecipeStore  # noqa: E402

POST_URL = "https://www.instagram.com/p/C0ffee123/"


def make_response(body: bytes = b"", status: int = 200, headers=None,
                  url: str = "https://cdn.example.com/media.jpg") -> requests.Response:
    """Builds a real requests.Response that streams `body`."""
    response = requests.Response()
    response.status_code = status
    response.reason = "OK" if status < 400 else "Error"
    response.headers = CaseInsensitiveDict(headers or {})
    response.raw = io.BytesIO(body)
    response.url = url
    return response


@pytest.fixture
def sample_recipe():
    """A raw recipe as Gemini returns it."""
    return {
        "title": "Tomato Spaghetti",
        "servings": {"value": 2},
        "total_time_min": 25,
        "difficulty": "easy",
        "confidence": 0.9,
        "ingredients": [
            {"id": "ing_1", "name": "spaghetti", "quantity": 200, "unit": "g"},
            {"id": "ing_2", "name": "cherry tomatoes", "quantity": 250, "unit": "g", "preparation": "halved"},
            {"id": "ing_3", "name": "olive oil", "quantity": 2, "unit": "tbsp"},
        ],
        "steps": [
            {"idx": 1, "text": "Boil the spaghetti in salted water.", "used_ingredients": ["ing_1"]},
            {"idx": 2, "text": "Fry the tomatoes in olive oil.", "used_ingredients": ["ing_2", "ing_3"]},
            {"idx": 3, "text": "Toss the pasta with the tomatoes.", "used_ingredients": ["ing_1", "ing_2"]},
        ],
    }


def make_post(media_count: int = 1, url: str = POST_URL) -> ScrapedPost:
    return ScrapedPost(
        id="3141592653",
        short_code="C0ffee123",
        url=url,
        caption="Tomato spaghetti 🍝\n200g spaghetti\n250g cherry tomatoes\n#pasta",
        hashtags=["pasta"],
        owner_username="pastachef",
        media=[
            MediaAsset(url=f"https://cdn.example.com/reel_{i}.mp4", media_type="video")
            for i in range(media_count)
        ],
    )


class FakeScraper:
    """Returns (or raises) the given results in order; the last one repeats."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeGemini:
    def __init__(self, extraction):
        self.extraction = extraction
        self.upload_error = None
        self.extract_error = None
        self.before_extract = None
        self.uploads = []
        self.extract_calls = []

    def upload_to_gemini(self, file_path, mime_type, display_name=None):
        if self.upload_error:
            raise self.upload_error
        self.uploads.append(file_path)
        number = len(self.uploads)
        return SimpleNamespace(
            name=f"files/upload-{number}",
            uri=f"https://generativelanguage.googleapis.com/v1beta/files/upload-{number}",
            mime_type=mime_type,
        )

    def extract_recipe(self, params):
        self.extract_calls.append(params)
        if self.before_extract:
            self.before_extract()
        if self.extract_error:
            raise self.extract_error
        return self.extraction


class FakeDownloader:
    """Writes a small file per call; `errors` maps a call index to an exception."""

    def __init__(self, directory):
        self.directory = directory
        self.calls = []
        self.paths = []
        self.errors = {}
        self.before_download = None

    def __call__(self, url, filename=None):
        index = len(self.calls)
        self.calls.append(url)
        if self.before_download:
            self.before_download(index)
        if index in self.errors:
            raise self.errors[index]
        path = os.path.join(self.directory, filename or f"media_{index}.mp4")
        with open(path, "wb") as f:
            f.write(b"media")
        self.paths.append(path)
        return DownloadResult(file_path=path, size=5, mime_type="video/mp4", media_type="video")


class RecordingImportStore(ImportStore):
    """Remembers every successful conditional write as (status, progress)."""

    def __init__(self, path=None):
        self.history = []
        super().__init__(path)

    def update_if(self, import_id, allowed_statuses, **fields):
        updated = super().update_if(import_id, allowed_statuses, **fields)
        if updated is not None:
            self.history.append((updated.status, updated.progress))
        return updated


@pytest.fixture
def media_dir(tmp_path):
    directory = tmp_path / "media"
    directory.mkdir()
    return directory


@pytest.fixture
def extraction(sample_recipe):
    validation = validate_recipe_data(sample_recipe)
    return ExtractionResult(recipe=validation.recipe, confidence=validation.confidence, issues=validation.warnings)


@pytest.fixture
def pipeline(media_dir, extraction):
    """A fully wired importer whose collaborators are in-process fakes."""
    import_store = RecordingImportStore()
    recipe_store = RecipeStore()
    scraper = FakeScraper(make_post())
    gemini = FakeGemini(extraction)
    downloader = FakeDownloader(str(media_dir))
    orchestrator = ImportOrchestrator(
        import_store, recipe_store, scraper, gemini,
        download=downloader, max_attempts=3, retry_base_delay=0, retry_max_delay=0,
    )
    return SimpleNamespace(
        import_store=import_store,
        recipe_store=recipe_store,
        scraper=scraper,
        gemini=gemini,
        downloader=downloader,
        orchestrator=orchestrator,
        importer=RecipeImporter(orchestrator),
        media_dir=media_dir,
    )
