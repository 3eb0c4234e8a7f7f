"""Pytest fixtures for RecipeFlow tests."""

import asyncio
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

from recipeflow.models.job import Job, JobStatus, SourceKind
from recipeflow.models.recipe import ExtractedIngredient, ExtractedRecipe, ExtractedStep
from recipeflow.services.admission import ExtractionJobService
from recipeflow.services.cancellation import CancellationHandle, CancellationRegistry
from recipeflow.services.fetchers import FetchedContent
from recipeflow.services.job_store import InMemoryJobStore
from recipeflow.services.limiter import ConcurrencyLimiter
from recipeflow.services.recipe_store import InMemoryRecipeStore
from recipeflow.services.runner import JobRunner
from recipeflow.services.uploads import UploadStager
from recipeflow.utils.errors import RefinementError


# ==================== Fakes ====================


class FakeFetcher:
    """Writes a small file into a per-job working directory."""

    def __init__(self, temp_dir: Path, error: Optional[Exception] = None) -> None:
        self.temp_dir = temp_dir
        self.error = error
        self.calls: List[Tuple[SourceKind, str]] = []
        self.contents: List[FetchedContent] = []
        self.workdirs: List[Path] = []

    async def fetch(
        self, kind: SourceKind, locator: str, handle: CancellationHandle
    ) -> FetchedContent:
        self.calls.append((kind, locator))
        if self.error is not None:
            raise self.error
        workdir = self.temp_dir / f"recipeflow-{kind.value}-{handle.job_id}"
        workdir.mkdir(parents=True)
        self.workdirs.append(workdir)
        path = workdir / "source.md"
        path.write_text("# Pancakes\n\n2 eggs\n1 cup flour\n")
        content = FetchedContent(
            kind=kind,
            locator=locator,
            paths=[path],
            mime_types=["text/markdown"],
            text=path.read_text(),
            thumbnail_url="https://img.example.com/thumb.jpg" if kind == SourceKind.VIDEO else None,
            workdir=workdir,
        )
        self.contents.append(content)
        return content


class FakeExtractor:
    """Returns a fixed draft; can be held open with ``gate`` or made to fail."""

    def __init__(
        self,
        draft: ExtractedRecipe,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.draft = draft
        self.error = error
        self.gate = gate
        self.calls = 0
        self.finished = 0
        self.started = asyncio.Event()
        self.events: List[Tuple[str, str]] = []

    async def extract(self, content, handle, on_progress=None) -> ExtractedRecipe:
        self.calls += 1
        self.events.append(("start", handle.job_id))
        try:
            if on_progress:
                await on_progress(20, "Analyzing source", JobStatus.PROCESSING)
                await on_progress(40, "Extracting recipe", JobStatus.EXTRACTING)
            self.started.set()
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            if on_progress:
                await on_progress(90, "Recipe extracted", JobStatus.EXTRACTING)
            return self.draft.model_copy(deep=True)
        finally:
            self.finished += 1
            self.events.append(("end", handle.job_id))


class FakeRefiner:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls = 0

    async def refine(self, draft: ExtractedRecipe, handle: CancellationHandle) -> ExtractedRecipe:
        self.calls += 1
        if self.error is not None:
            raise self.error
        refined = draft.model_copy(deep=True)
        refined.difficulty = "easy"
        return refined


class RecordingJobStore(InMemoryJobStore):
    """In-memory store that records every progress value it accepts."""

    def __init__(self) -> None:
        super().__init__()
        self.progress_history: dict[str, List[int]] = {}

    async def update_progress(self, job_id, status, progress, message) -> bool:
        updated = await super().update_progress(job_id, status, progress, message)
        job = await self.get_by_id(job_id)
        if job is not None:
            self.progress_history.setdefault(job_id, []).append(job.progress_percent)
        return updated


# ==================== Fixtures ====================


@pytest.fixture
def sample_draft() -> ExtractedRecipe:
    """Sample extracted recipe draft."""
    return ExtractedRecipe(
        title="Fluffy Pancakes",
        description="Weekend pancakes.",
        servings=4,
        ingredients=[
            ExtractedIngredient(name="flour", quantity="1", unit="cup"),
            ExtractedIngredient(name="  ", quantity="1"),
            ExtractedIngredient(name="eggs", quantity="2", section="Batter"),
        ],
        steps=[
            ExtractedStep(instruction="Whisk everything together."),
            ExtractedStep(instruction="Cook on a hot griddle."),
        ],
    )


@pytest.fixture
def sample_job_data() -> dict:
    """Sample job fields for testing."""
    return {
        "owner_id": "u1",
        "source_kind": SourceKind.WEBPAGE,
        "source_locator": "https://example.com/pancakes",
    }


@pytest.fixture
def job_store() -> RecordingJobStore:
    return RecordingJobStore()


@pytest.fixture
def recipe_store() -> InMemoryRecipeStore:
    return InMemoryRecipeStore()


@pytest.fixture
def registry() -> CancellationRegistry:
    return CancellationRegistry()


@pytest.fixture
def stager(tmp_path: Path) -> UploadStager:
    return UploadStager(temp_dir=str(tmp_path), max_image_bytes=1024, max_images=3)


@pytest.fixture
def fetcher(tmp_path: Path) -> FakeFetcher:
    return FakeFetcher(tmp_path)


@pytest.fixture
def extractor(sample_draft: ExtractedRecipe) -> FakeExtractor:
    return FakeExtractor(sample_draft)


@pytest.fixture
def refiner() -> FakeRefiner:
    return FakeRefiner()


@pytest.fixture
def failing_refiner() -> FakeRefiner:
    return FakeRefiner(error=RefinementError("refiner is down"))


@pytest.fixture
def make_runner(job_store, recipe_store, registry, fetcher, extractor, refiner, stager) -> Callable[..., JobRunner]:
    """Build a JobRunner from the default fakes, overriding any collaborator."""

    def _make(**overrides) -> JobRunner:
        parts = {
            "job_store": job_store,
            "recipe_store": recipe_store,
            "fetcher": fetcher,
            "extractor": extractor,
            "refiner": refiner,
            "limiter": ConcurrencyLimiter(5),
            "registry": registry,
            "stager": stager,
        }
        parts.update(overrides)
        return JobRunner(**parts)

    return _make


@pytest.fixture
def make_service(job_store, registry, make_runner, stager) -> Callable[..., ExtractionJobService]:
    """Build an ExtractionJobService around ``make_runner``."""

    def _make(timeout: float = 60.0, **runner_overrides) -> ExtractionJobService:
        runner = make_runner(**runner_overrides)
        return ExtractionJobService(
            job_store=job_store,
            runner=runner,
            registry=registry,
            stager=stager,
            timeout_for=lambda kind: timeout,
        )

    return _make


async def wait_for_terminal(store: InMemoryJobStore, job_id: str, timeout: float = 5.0) -> Job:
    """Poll the store until the job reaches a terminal status."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await store.get_by_id(job_id)
        if job is not None and job.is_terminal:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"Job {job_id} did not finish: {job}")
        await asyncio.sleep(0.01)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
