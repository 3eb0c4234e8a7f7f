"""Pydantic data models for RecipeFlow."""

from recipeflow.models.job import ErrorCode, Job, JobStatus, SourceKind
from recipeflow.models.recipe import (
    ExtractedIngredient,
    ExtractedRecipe,
    ExtractedStep,
    Recipe,
    RecipeIngredient,
    RecipeStep,
    build_recipe,
)

__all__ = [
    "ErrorCode",
    "Job",
    "JobStatus",
    "SourceKind",
    "ExtractedIngredient",
    "ExtractedRecipe",
    "ExtractedStep",
    "Recipe",
    "RecipeIngredient",
    "RecipeStep",
    "build_recipe",
]
