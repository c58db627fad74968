# recipe_validator.py
#
# Description:
# This module validates and repairs the raw recipe structure returned by the
# LLM into the canonical RecipeData model. Recoverable problems are repaired
# and reported as warnings; anything that makes the recipe unusable is
# reported as an error. The raw shape never travels past this module.

import copy
import re
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ValidationError

from .models import RecipeData, ValidationIssue, ValidationResult

SYNTHETIC_INGREDIENT_ID_PREFIX = "ingredient_"

OPTIONAL_TEXT_FIELDS = ("difficulty", "cuisine")
INGREDIENT_TEXT_FIELDS = ("unit", "preparation", "section", "chefs_note")
STEP_TEXT_FIELDS = ("section", "chefs_note")


def _error(path: str, message: str) -> ValidationIssue:
    return ValidationIssue(path=path, message=message, severity="error")


def _warning(path: str, message: str) -> ValidationIssue:
    return ValidationIssue(path=path, message=message, severity="warning")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _normalize_string_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    entries = [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()]
    return entries or None


def _normalize_servings(value: Any, issues: List[ValidationIssue]) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    if _is_number(value):
        issues.append(_warning("servings", "Servings given as a number. Wrapped into {value}."))
        return {"value": value}
    if isinstance(value, str):
        match = re.search(r"\d+(?:[.,]\d+)?", value)
        if match:
            issues.append(_warning("servings", "Servings given as text. Parsed the first number."))
            return {"value": float(match.group(0).replace(",", ".")), "note": value.strip()}
    issues.append(_warning("servings", "Unrecognized servings value. Dropped."))
    return None


def _normalize_confidence(value: Any, issues: List[ValidationIssue]) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            issues.append(_warning("confidence", "Confidence is not a number. Dropped."))
            return None
    if not _is_number(value):
        issues.append(_warning("confidence", "Confidence is not a number. Dropped."))
        return None
    if value < 0 or value > 1:
        issues.append(_warning("confidence", "Confidence outside [0, 1]. Clamped."))
    return clamp_confidence(value)


def _explicit_ingredient_id(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    value = item.get("id")
    if _is_number(value):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _allocate_ingredient_id(index: int, taken: Set[str]) -> str:
    """First free `ingredient_<n>`, preferring the 1-based position. Never reuses an explicit id."""
    n = index + 1
    while f"{SYNTHETIC_INGREDIENT_ID_PREFIX}{n}" in taken:
        n += 1
    ingredient_id = f"{SYNTHETIC_INGREDIENT_ID_PREFIX}{n}"
    taken.add(ingredient_id)
    return ingredient_id


def _allocate_idx(index: int, taken: Set[int]) -> int:
    idx = index + 1
    while idx in taken:
        idx += 1
    taken.add(idx)
    return idx


def _normalize_ingredient(
    item: Any, index: int, issues: List[ValidationIssue], taken_ids: Set[str]
) -> Dict[str, Any]:
    path = f"ingredients.{index}"

    if isinstance(item, str):
        issues.append(_warning(path, "Ingredient given as plain text. Converted to an object."))
        item = {"name": item}
    elif not isinstance(item, dict):
        issues.append(_error(path, "Ingredient must be an object"))
        return {"id": _allocate_ingredient_id(index, taken_ids), "name": ""}

    ingredient = dict(item)

    name = ingredient.get("name")
    if not isinstance(name, str) or not name.strip():
        issues.append(_error(f"{path}.name", "Ingredient name is required"))
        ingredient["name"] = ""
    else:
        ingredient["name"] = name.strip()

    ingredient_id = _explicit_ingredient_id(ingredient)
    if ingredient_id is None:
        ingredient_id = _allocate_ingredient_id(index, taken_ids)
        issues.append(_warning(f"{path}.id", "Missing ingredient id. Generated deterministic value."))
    ingredient["id"] = ingredient_id

    for field in INGREDIENT_TEXT_FIELDS:
        ingredient[field] = _blank_to_none(ingredient.get(field))
    ingredient["quantity"] = _blank_to_none(ingredient.get("quantity"))
    ingredient["optional"] = bool(ingredient.get("optional"))
    return ingredient


def _coerce_idx(value: Any) -> Optional[int]:
    if _is_number(value) and float(value).is_integer() and value >= 1:
        return int(value)
    if isinstance(value, str) and value.strip().isdigit() and int(value) >= 1:
        return int(value)
    return None


def _normalize_step(item: Any, index: int, issues: List[ValidationIssue], taken_idx: Set[int]) -> Dict[str, Any]:
    path = f"steps.{index}"

    if isinstance(item, str):
        issues.append(_warning(path, "Step given as plain text. Converted to an object."))
        item = {"idx": _allocate_idx(index, taken_idx), "text": item}
    elif not isinstance(item, dict):
        issues.append(_error(path, "Step must be an object"))
        return {"idx": _allocate_idx(index, taken_idx), "text": "", "used_ingredients": []}

    step = dict(item)

    idx = _coerce_idx(step.get("idx"))
    if idx is None:
        idx = _allocate_idx(index, taken_idx)
        issues.append(_warning(f"{path}.idx", "Missing idx value. Assigned sequential index."))
    step["idx"] = idx

    text = step.get("text")
    if not isinstance(text, str) or not text.strip():
        issues.append(_error(f"{path}.text", "Step text is required"))
        step["text"] = ""
    else:
        step["text"] = text.strip()

    used = step.get("used_ingredients")
    if not isinstance(used, list):
        if used is not None:
            issues.append(_warning(f"{path}.used_ingredients", "used_ingredients is not a list. Dropped."))
        used = []
    step["used_ingredients"] = [str(ref).strip() for ref in used if isinstance(ref, (str, int)) and str(ref).strip()]

    for field in STEP_TEXT_FIELDS:
        step[field] = _blank_to_none(step.get(field))
    return step


def _issues_from_validation_error(error: ValidationError) -> List[ValidationIssue]:
    issues = []
    for detail in error.errors():
        path = ".".join(str(part) for part in detail.get("loc", ()))
        issues.append(_error(path, detail.get("msg", "Schema validation error")))
    return issues


def _check_identifiers(recipe: RecipeData, issues: List[ValidationIssue]):
    ingredient_ids = set()
    for index, ingredient in enumerate(recipe.ingredients):
        if ingredient.id in ingredient_ids:
            issues.append(_error(f"ingredients.{index}.id", f"Duplicate ingredient id '{ingredient.id}'"))
        ingredient_ids.add(ingredient.id)

    seen_idx = set()
    for index, step in enumerate(recipe.steps):
        if step.idx in seen_idx:
            issues.append(_error(f"steps.{index}.idx", f"Duplicate step idx {step.idx}"))
        seen_idx.add(step.idx)

        # A step may only reference ingredients defined above.
        for ref_index, ref in enumerate(step.used_ingredients):
            if ref not in ingredient_ids:
                issues.append(_error(
                    f"steps.{index}.used_ingredients.{ref_index}",
                    f"Step {step.idx} references unknown ingredient id '{ref}'",
                ))


def clamp_confidence(value: float) -> float:
    return round(min(1.0, max(0.0, float(value))), 2)


def calculate_confidence(recipe: RecipeData) -> float:
    """Default confidence from how complete the recipe is."""
    signals = [
        1 if recipe.title else 0,
        1 if recipe.ingredients else 0,
        1 if recipe.steps else 0,
        1 if recipe.total_time_min is not None else 0,
        1 if recipe.difficulty else 0,
    ]
    completeness = sum(signals) / len(signals)
    ingredient_bonus = min(len(recipe.ingredients) / 20, 0.2)
    step_bonus = min(len(recipe.steps) / 30, 0.2)
    return clamp_confidence(completeness * 0.6 + ingredient_bonus + step_bonus)


def validate_recipe_data(data: Any) -> ValidationResult:
    """
    Validates and normalizes a raw recipe structure.

    Args:
        data: The decoded JSON object (or a RecipeData model).

    Returns:
        ValidationResult. `valid` is False only if an error-severity issue was
        recorded; warnings describe repairs that were applied.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not isinstance(data, dict):
        return ValidationResult(valid=False, issues=[_error("", "Recipe must be a JSON object")])

    issues: List[ValidationIssue] = []
    raw = copy.deepcopy(data)
    raw.pop("schema_version", None)

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        issues.append(_error("title", "Recipe title is required"))
        raw["title"] = ""
    else:
        raw["title"] = title.strip()

    raw["servings"] = _normalize_servings(raw.get("servings"), issues)
    raw["confidence"] = _normalize_confidence(raw.get("confidence"), issues)
    raw["assumptions"] = _normalize_string_list(raw.get("assumptions"))
    for field in OPTIONAL_TEXT_FIELDS:
        raw[field] = _blank_to_none(raw.get(field))

    ingredients = raw.get("ingredients")
    if not isinstance(ingredients, list) or not ingredients:
        issues.append(_error("ingredients", "At least one ingredient is required"))
        ingredients = ingredients if isinstance(ingredients, list) else []
    # Generated ids must not collide with ids the model did provide, wherever they appear.
    taken_ids = {i for i in map(_explicit_ingredient_id, ingredients) if i is not None}
    raw["ingredients"] = [_normalize_ingredient(item, i, issues, taken_ids) for i, item in enumerate(ingredients)]

    steps = raw.get("steps")
    if not isinstance(steps, list) or not steps:
        issues.append(_error("steps", "At least one step is required"))
        steps = steps if isinstance(steps, list) else []
    explicit_idx = (_coerce_idx(step.get("idx")) for step in steps if isinstance(step, dict))
    taken_idx = {idx for idx in explicit_idx if idx is not None}
    raw["steps"] = [_normalize_step(item, i, issues, taken_idx) for i, item in enumerate(steps)]

    try:
        recipe = RecipeData.model_validate(raw)
    except ValidationError as e:
        issues.extend(_issues_from_validation_error(e))
        return ValidationResult(valid=False, confidence=0.0, issues=issues)

    _check_identifiers(recipe, issues)

    confidence = recipe.confidence if recipe.confidence is not None else calculate_confidence(recipe)
    confidence = clamp_confidence(confidence)
    recipe = recipe.model_copy(update={
        "steps": sorted(recipe.steps, key=lambda step: step.idx),
        "confidence": confidence,
    })

    valid = not any(issue.severity == "error" for issue in issues)
    return ValidationResult(valid=valid, recipe=recipe, confidence=confidence, issues=issues)
