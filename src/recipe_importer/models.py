# models.py
#
# Description:
# This module defines the Pydantic data models used throughout the importer.
# The recipe models describe the canonical, validated structure produced by
# the validator; the import models describe the status record a caller polls.

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

RECIPE_SCHEMA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# --- Recipe models ---

class Servings(BaseModel):
    """How many portions the recipe yields."""
    value: float = Field(..., description="Number of servings, e.g. 4.")
    note: Optional[str] = Field(None, description="Free text note, e.g. 'as a side'.")


class Macros(BaseModel):
    """Nutritional information per serving."""
    calories: Optional[float] = Field(None, description="Calories per serving in kcal.")
    protein_g: Optional[float] = Field(None, description="Protein per serving in g.")
    fat_g: Optional[float] = Field(None, description="Fat per serving in g.")
    carbs_g: Optional[float] = Field(None, description="Carbohydrates per serving in g.")


class Ingredient(BaseModel):
    """Represents a single ingredient, referenced by steps through its id."""
    id: str = Field(..., description="Unique id within the recipe, e.g. 'ing_1'.")
    name: str = Field(..., description="The name of the ingredient, e.g. 'Flour' or 'Tomatoes'.")
    quantity: Optional[Union[float, str]] = Field(None, description="Numeric amount, or free text like 'a pinch'.")
    unit: Optional[str] = Field(None, description="Unit of the quantity, e.g. 'g' or 'tbsp'.")
    preparation: Optional[str] = Field(None, description="Preparation notes, e.g. 'finely diced'.")
    section: Optional[str] = Field(None, description="Ingredient group, e.g. 'For the sauce'.")
    optional: bool = Field(False, description="Whether the ingredient can be left out.")
    chefs_note: Optional[str] = None


class Step(BaseModel):
    """A single preparation step."""
    idx: int = Field(..., ge=1, description="1-based position of the step.")
    text: str = Field(..., description="The instruction text.")
    used_ingredients: List[str] = Field(default_factory=list, description="Ids of the ingredients used in this step.")
    section: Optional[str] = None
    estimated_time_min: Optional[float] = Field(None, ge=0)
    chefs_note: Optional[str] = None


class RecipeData(BaseModel):
    """The main model representing a complete, structured recipe."""
    model_config = ConfigDict(extra="ignore")

    schema_version: int = Field(RECIPE_SCHEMA_VERSION, description="Version of this structure.")
    title: str = Field(..., description="A short, descriptive title for the dish.")
    servings: Optional[Servings] = None
    prep_time_min: Optional[float] = Field(None, ge=0)
    cook_time_min: Optional[float] = Field(None, ge=0)
    total_time_min: Optional[float] = Field(None, ge=0)
    difficulty: Optional[str] = None
    cuisine: Optional[str] = None
    macros_per_serving: Optional[Macros] = None
    confidence: Optional[float] = Field(None, ge=0, le=1)
    assumptions: Optional[List[str]] = None
    ingredients: List[Ingredient] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)


class RecipeEnvelope(BaseModel):
    """Response shape requested from Gemini. `recipes` is only set for ambiguous posts."""
    recipe: Optional[RecipeData] = None
    recipes: Optional[List[RecipeData]] = None


class RecipeDocument(BaseModel):
    """A persisted recipe created by a successful import."""
    id: str
    import_id: str
    input_url: str
    short_code: Optional[str] = None
    caption: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)
    owner_username: Optional[str] = None
    gemini_file_uris: List[str] = Field(default_factory=list)
    recipe_data: RecipeData
    created_at: datetime = Field(default_factory=utc_now)


# --- Validation models ---

class ValidationIssue(BaseModel):
    path: str
    message: str
    severity: Literal["warning", "error"]


class ValidationResult(BaseModel):
    valid: bool
    recipe: Optional[RecipeData] = None
    confidence: float = 0.0
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == "warning"]


# --- Media and scraping models ---

MediaType = Literal["image", "video"]


class MediaAsset(BaseModel):
    url: str
    media_type: MediaType


class ScrapedPost(BaseModel):
    """Metadata and media references of a single Instagram post."""
    id: str
    short_code: str
    url: str
    caption: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)
    owner_username: Optional[str] = None
    owner_id: Optional[str] = None
    media: List[MediaAsset] = Field(default_factory=list)
    timestamp: Optional[datetime] = None


class DownloadResult(BaseModel):
    file_path: str
    size: int
    mime_type: str
    media_type: MediaType


# --- Gemini models ---

class GeminiFileRef(BaseModel):
    uri: str
    mime_type: str


class ExtractRecipeParams(BaseModel):
    gemini_file_uri: str
    media_mime_type: str = "application/octet-stream"
    caption: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)
    owner_username: Optional[str] = None
    extra_files: List[GeminiFileRef] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    recipe: RecipeData
    confidence: float
    issues: List[ValidationIssue] = Field(default_factory=list)
    raw_text: str = ""


# --- Import models ---

class ImportStatus(str, Enum):
    QUEUED = "queued"
    SCRAPING = "scraping"
    DOWNLOADING_MEDIA = "downloading_media"
    UPLOADING_MEDIA = "uploading_media"
    EXTRACTING = "extracting"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Happy path order; FAILED is reachable from any non-terminal status.
STAGE_ORDER = [
    ImportStatus.QUEUED,
    ImportStatus.SCRAPING,
    ImportStatus.DOWNLOADING_MEDIA,
    ImportStatus.UPLOADING_MEDIA,
    ImportStatus.EXTRACTING,
    ImportStatus.READY,
]
TERMINAL_STATUSES = frozenset({ImportStatus.READY, ImportStatus.FAILED})
ACTIVE_STATUSES = frozenset(s for s in STAGE_ORDER if s not in TERMINAL_STATUSES)


class ImportRecord(BaseModel):
    """The persisted state document for one import."""
    id: str
    input_url: str
    status: ImportStatus = ImportStatus.QUEUED
    stage: ImportStatus = ImportStatus.QUEUED
    progress: int = Field(0, ge=0, le=100)
    recipe_id: Optional[str] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
