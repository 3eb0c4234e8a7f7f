"""Service layer for RecipeFlow."""

from recipeflow.services.admission import ExtractionJobService, create_job_service
from recipeflow.services.cancellation import CancellationHandle, CancellationRegistry, CancelReason
from recipeflow.services.extraction_cache import (
    ExtractionCache,
    InMemoryExtractionCache,
    SupabaseExtractionCache,
    create_extraction_cache,
)
from recipeflow.services.fetchers import FetchedContent, SourceFetcher, create_source_fetcher
from recipeflow.services.job_store import InMemoryJobStore, JobStore, SupabaseJobStore, create_job_store
from recipeflow.services.limiter import ConcurrencyLimiter, Slot
from recipeflow.services.reaper import JobReaper
from recipeflow.services.recipe_store import (
    InMemoryRecipeStore,
    RecipeStore,
    SupabaseRecipeStore,
    create_recipe_store,
)
from recipeflow.services.runner import JobRunner

__all__ = [
    "CancellationHandle",
    "CancellationRegistry",
    "CancelReason",
    "ConcurrencyLimiter",
    "Slot",
    "ExtractionJobService",
    "create_job_service",
    "FetchedContent",
    "SourceFetcher",
    "create_source_fetcher",
    "JobStore",
    "InMemoryJobStore",
    "SupabaseJobStore",
    "create_job_store",
    "RecipeStore",
    "InMemoryRecipeStore",
    "SupabaseRecipeStore",
    "create_recipe_store",
    "ExtractionCache",
    "InMemoryExtractionCache",
    "SupabaseExtractionCache",
    "create_extraction_cache",
    "JobReaper",
    "JobRunner",
]
