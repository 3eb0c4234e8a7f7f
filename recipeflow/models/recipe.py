"""Recipe-related Pydantic models.

``ExtractedRecipe`` is the draft shape produced by the extraction and refinement
agents; ``Recipe`` is what the recipe store persists.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from recipeflow.models.job import SourceKind, utcnow

DEFAULT_SECTION = "Main"


class ExtractedIngredient(BaseModel):
    """An ingredient line as read from the source."""

    name: str = ""
    quantity: Optional[str] = None
    unit: Optional[str] = None
    category: Optional[str] = None
    section: Optional[str] = None
    is_optional: bool = False
    notes: Optional[str] = None


class ExtractedStep(BaseModel):
    """A preparation step as read from the source."""

    step_number: Optional[int] = None
    instruction: str = ""
    duration_seconds: Optional[int] = None
    technique: Optional[str] = None
    temperature: Optional[str] = None


class ExtractedRecipe(BaseModel):
    """Structured draft recipe returned by the extractor and refiner."""

    title: str = ""
    description: Optional[str] = None
    servings: Optional[int] = None
    prep_time_minutes: Optional[int] = None
    cook_time_minutes: Optional[int] = None
    difficulty: Optional[str] = None
    cuisine: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    thumbnail_url: Optional[str] = None
    ingredients: list[ExtractedIngredient] = Field(default_factory=list)
    steps: list[ExtractedStep] = Field(default_factory=list)


class RecipeIngredient(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(min_length=1)
    quantity: Optional[str] = None
    unit: Optional[str] = None
    category: Optional[str] = None
    section: str = DEFAULT_SECTION
    is_optional: bool = False
    notes: Optional[str] = None
    sort_order: int = 0


class RecipeStep(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    step_number: int = Field(ge=1)
    instruction: str
    duration_seconds: Optional[int] = None
    technique: Optional[str] = None
    temperature: Optional[str] = None


class Recipe(BaseModel):
    """Persisted recipe produced by a completed job."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    servings: Optional[int] = None
    prep_time_minutes: Optional[int] = None
    cook_time_minutes: Optional[int] = None
    difficulty: Optional[str] = None
    cuisine: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    source_type: SourceKind
    source_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    ingredients: list[RecipeIngredient] = Field(default_factory=list)
    steps: list[RecipeStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


def build_recipe(
    draft: ExtractedRecipe,
    owner_id: str,
    source_kind: SourceKind,
    source_url: Optional[str] = None,
) -> Recipe:
    """
    Convert a draft into a persistable recipe.

    Ingredient entries with no usable name are skipped rather than failing the
    whole recipe; sort order follows the draft. Steps without an instruction are
    dropped and the rest are renumbered when the draft's numbering is missing.
    """
    ingredients: list[RecipeIngredient] = []
    for index, item in enumerate(draft.ingredients):
        name = (item.name or "").strip()
        if not name:
            continue
        ingredients.append(
            RecipeIngredient(
                name=name,
                quantity=item.quantity,
                unit=item.unit,
                category=item.category,
                section=(item.section or "").strip() or DEFAULT_SECTION,
                is_optional=item.is_optional,
                notes=item.notes,
                sort_order=index,
            )
        )

    usable_steps = [s for s in draft.steps if (s.instruction or "").strip()]
    numbered = all(s.step_number and s.step_number >= 1 for s in usable_steps)
    steps = [
        RecipeStep(
            step_number=step.step_number if numbered else position,
            instruction=step.instruction.strip(),
            duration_seconds=step.duration_seconds,
            technique=step.technique,
            temperature=step.temperature,
        )
        for position, step in enumerate(usable_steps, start=1)
    ]

    return Recipe(
        owner_id=owner_id,
        title=draft.title.strip(),
        description=draft.description,
        servings=draft.servings,
        prep_time_minutes=draft.prep_time_minutes,
        cook_time_minutes=draft.cook_time_minutes,
        difficulty=draft.difficulty,
        cuisine=draft.cuisine,
        tags=list(draft.tags),
        source_type=source_kind,
        source_url=source_url,
        thumbnail_url=draft.thumbnail_url,
        ingredients=ingredients,
        steps=steps,
    )
