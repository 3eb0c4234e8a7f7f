"""Utility modules for RecipeFlow."""

from recipeflow.utils.errors import (
    DatabaseError,
    DuplicateJobError,
    ExtractionError,
    FetchError,
    FirecrawlAPIError,
    InvalidSubmissionError,
    JobCancelledError,
    JobNotFoundError,
    NoRecipeFoundError,
    RecipeFlowError,
    RefinementError,
    SlotUnavailableError,
    UnsupportedSourceError,
)
from recipeflow.utils.retry import with_retry

__all__ = [
    "RecipeFlowError",
    "FetchError",
    "UnsupportedSourceError",
    "FirecrawlAPIError",
    "ExtractionError",
    "NoRecipeFoundError",
    "RefinementError",
    "DatabaseError",
    "DuplicateJobError",
    "JobNotFoundError",
    "InvalidSubmissionError",
    "JobCancelledError",
    "SlotUnavailableError",
    "with_retry",
]
