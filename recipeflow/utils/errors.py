"""Custom exception classes for RecipeFlow."""

from typing import Optional


class RecipeFlowError(Exception):
    """Base exception for all application errors."""

    pass


class FetchError(RecipeFlowError):
    """A source could not be turned into local content."""

    pass


class UnsupportedSourceError(FetchError):
    """The locator does not match anything the fetcher understands."""

    pass


class FirecrawlAPIError(FetchError):
    """Firecrawl API returned an error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"Firecrawl error {status_code}: {message}")


class ExtractionError(RecipeFlowError):
    """Errors from the recipe extractor."""

    pass


class NoRecipeFoundError(ExtractionError):
    """The extractor answered but the content holds no usable recipe."""

    pass


class RefinementError(RecipeFlowError):
    """Errors from the recipe refiner."""

    pass


class DatabaseError(RecipeFlowError):
    """Base exception for store operations."""

    pass


class DuplicateJobError(DatabaseError):
    """A job already holds this (owner, idempotency key) pair."""

    def __init__(self, owner_id: str, idempotency_key: str) -> None:
        self.owner_id = owner_id
        self.idempotency_key = idempotency_key
        super().__init__(f"Job already exists for idempotency key {idempotency_key!r}")


class JobNotFoundError(RecipeFlowError):
    """Job does not exist or is not visible to the caller."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidSubmissionError(RecipeFlowError):
    """A submission was rejected before any job was created."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class JobCancelledError(RecipeFlowError):
    """The job's cancellation handle fired while work was pending."""

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(f"Job was cancelled ({reason or 'unknown reason'})")


class SlotUnavailableError(RecipeFlowError):
    """Cancellation fired before a concurrency slot became free."""

    pass
