"""Job runner: drives one job through Fetch, Extract, Refine and Persist.

Stage errors never leave ``JobRunner.run``; each is classified into an error
code on the job record. The runner is the only writer of a job's progress.
"""

import logging
from typing import Optional

from recipeflow.models.job import ErrorCode, Job, JobStatus, SourceKind, status_rank
from recipeflow.models.recipe import ExtractedRecipe, build_recipe
from recipeflow.services.cancellation import CancellationHandle, CancellationRegistry, CancelReason
from recipeflow.services.extraction_cache import ExtractionCache
from recipeflow.services.extractor import RecipeExtractor
from recipeflow.services.fetchers import FetchedContent, SourceFetcher
from recipeflow.services.job_store import CANCELLED_MESSAGE, JobStore
from recipeflow.services.limiter import ConcurrencyLimiter
from recipeflow.services.recipe_store import RecipeStore
from recipeflow.services.refiner import RecipeRefiner
from recipeflow.services.uploads import UPLOAD_SCHEME, UploadStager
from recipeflow.utils.errors import DatabaseError, JobCancelledError, SlotUnavailableError

logger = logging.getLogger(__name__)

FETCH_PROGRESS = 10
EXTRACT_PROGRESS_END = 90
REFINE_PROGRESS = 92
PERSIST_PROGRESS = 95

NEVER_STARTED_MESSAGE = "Job was cancelled before it reached execution"
CACHE_HIT_MESSAGE = "Loaded cached recipe"

# Uploaded images have no stable URL to key a cache entry on.
CACHEABLE_KINDS = frozenset({SourceKind.VIDEO, SourceKind.WEBPAGE})


def scale_extract_progress(percent: int) -> int:
    """Map extractor progress in [0, 100] onto the job's extract band."""
    percent = min(100, max(0, percent))
    return FETCH_PROGRESS + percent * (EXTRACT_PROGRESS_END - FETCH_PROGRESS) // 100


class ProgressReporter:
    """Writes progress for one job, never letting status or percent go backwards."""

    def __init__(self, job_store: JobStore, job_id: str) -> None:
        self.job_store = job_store
        self.job_id = job_id
        self.status = JobStatus.PENDING
        self.percent = 0

    async def report(self, status: JobStatus, percent: int, message: str) -> None:
        if status_rank(status) < status_rank(self.status):
            status = self.status
        percent = max(self.percent, min(100, percent))
        self.status, self.percent = status, percent
        await self.job_store.update_progress(self.job_id, status, percent, message)


class JobRunner:
    """Executes admitted jobs under the concurrency limiter."""

    def __init__(
        self,
        job_store: JobStore,
        recipe_store: RecipeStore,
        fetcher: SourceFetcher,
        extractor: RecipeExtractor,
        refiner: Optional[RecipeRefiner],
        limiter: ConcurrencyLimiter,
        registry: CancellationRegistry,
        stager: Optional[UploadStager] = None,
        cache: Optional[ExtractionCache] = None,
    ) -> None:
        """
        Initialize the JobRunner.

        Args:
            job_store: Store holding job records
            recipe_store: Store receiving finished recipes
            fetcher: Dispatching fetcher for all source kinds
            extractor: Draft recipe extractor
            refiner: Best-effort refiner; refinement is skipped when None
            limiter: Gate bounding concurrent executions
            registry: Registry of live cancellation handles
            stager: Owner of staged uploads, discarded once their job ends
            cache: Extraction cache for video and webpage URLs; disabled when None
        """
        self.job_store = job_store
        self.recipe_store = recipe_store
        self.fetcher = fetcher
        self.extractor = extractor
        self.refiner = refiner
        self.limiter = limiter
        self.registry = registry
        self.stager = stager
        self.cache = cache

    async def run(self, job: Job, handle: CancellationHandle) -> None:
        """Run ``job`` to a terminal state. Never raises for stage failures."""
        try:
            await self._run(job, handle)
        except Exception as e:
            logger.exception(f"Job {job.id} failed unexpectedly")
            try:
                await self.job_store.mark_failed(job.id, ErrorCode.INTERNAL_ERROR, str(e) or type(e).__name__)
            except DatabaseError:
                logger.exception(f"Could not record failure for job {job.id}")
        finally:
            handle.close()
            self._discard_upload(job)
            if self.registry.get(job.id) is handle:
                self.registry.remove(job.id)

    def _discard_upload(self, job: Job) -> None:
        # Jobs that end before Fetch never hand their staged directory to a workdir.
        if self.stager is not None and job.source_locator.startswith(UPLOAD_SCHEME):
            self.stager.discard(job.source_locator)

    async def _run(self, job: Job, handle: CancellationHandle) -> None:
        if handle.cancelled:
            await self._terminate_cancelled(job.id, handle, "before start")
            return

        try:
            slot = await self.limiter.acquire(handle)
        except SlotUnavailableError:
            logger.info(f"Job {job.id} cancelled while waiting for a slot")
            await self.job_store.mark_failed(job.id, ErrorCode.TIMEOUT, NEVER_STARTED_MESSAGE)
            return

        content: Optional[FetchedContent] = None
        try:
            async with slot:
                await self.job_store.mark_started(job.id)
                logger.info(f"Starting job {job.id} ({job.source_kind.value})")
                progress = ProgressReporter(self.job_store, job.id)

                try:
                    cached = await self._lookup_cache(job, handle)
                except JobCancelledError as e:
                    await self._stage_failed(job.id, handle, "cache lookup", ErrorCode.INTERNAL_ERROR, e)
                    return

                if cached is not None:
                    draft = cached
                    await progress.report(JobStatus.EXTRACTING, EXTRACT_PROGRESS_END, CACHE_HIT_MESSAGE)
                else:
                    # Fetch
                    await progress.report(JobStatus.DOWNLOADING, FETCH_PROGRESS, "Downloading source")
                    try:
                        content = await handle.run(
                            self.fetcher.fetch(job.source_kind, job.source_locator, handle)
                        )
                    except Exception as e:
                        await self._stage_failed(job.id, handle, "fetch", ErrorCode.DOWNLOAD_FAILED, e)
                        return

                    # Extract
                    async def on_progress(percent: int, message: str, status: JobStatus) -> None:
                        await progress.report(status, scale_extract_progress(percent), message)
                        handle.raise_if_cancelled()

                    await progress.report(JobStatus.EXTRACTING, FETCH_PROGRESS, "Extracting recipe")
                    try:
                        draft = await handle.run(self.extractor.extract(content, handle, on_progress))
                    except Exception as e:
                        await self._stage_failed(job.id, handle, "extract", ErrorCode.EXTRACTION_FAILED, e)
                        return

                    # Refine
                    await progress.report(JobStatus.EXTRACTING, REFINE_PROGRESS, "Refining recipe")
                    try:
                        draft = await self._refine(job.id, draft, handle)
                    except JobCancelledError as e:
                        await self._stage_failed(job.id, handle, "refine", ErrorCode.INTERNAL_ERROR, e)
                        return

                # Persist
                await progress.report(JobStatus.EXTRACTING, PERSIST_PROGRESS, "Saving recipe")
                try:
                    recipe_id = await self._persist(job, draft, handle)
                except Exception as e:
                    await self._stage_failed(job.id, handle, "persist", ErrorCode.SAVE_FAILED, e)
                    return

                handle.seal()
                if await self.job_store.mark_completed(job.id, recipe_id):
                    logger.info(f"Job {job.id} completed with recipe {recipe_id}")
                else:
                    logger.warning(f"Job {job.id} was already terminal when recipe {recipe_id} was saved")

                if cached is None:
                    await self._remember(job, draft)
        finally:
            if content is not None:
                try:
                    content.cleanup()
                except OSError as e:
                    logger.warning(f"Failed to clean up fetched content for job {job.id}: {e}")

    def _cacheable(self, job: Job) -> bool:
        return self.cache is not None and job.source_kind in CACHEABLE_KINDS

    async def _lookup_cache(self, job: Job, handle: CancellationHandle) -> Optional[ExtractedRecipe]:
        """Cached draft for the job's URL. Cache errors count as a miss."""
        if not self._cacheable(job):
            return None
        try:
            entry = await handle.run(self.cache.get_by_url(job.source_locator))
        except DatabaseError as e:
            logger.warning(f"Extraction cache lookup failed for job {job.id}: {e}")
            return None
        if entry is None:
            return None

        logger.info(f"Job {job.id} reusing cached extraction for {entry.normalized_url}")
        try:
            await self.cache.record_hit(entry)
        except DatabaseError as e:
            logger.warning(f"Could not record cache hit for job {job.id}: {e}")
        return entry.recipe

    async def _remember(self, job: Job, draft: ExtractedRecipe) -> None:
        if not self._cacheable(job):
            return
        try:
            await self.cache.put(job.source_locator, draft)
        except DatabaseError as e:
            logger.warning(f"Could not cache extraction for job {job.id}: {e}")

    async def _refine(
        self, job_id: str, draft: ExtractedRecipe, handle: CancellationHandle
    ) -> ExtractedRecipe:
        if self.refiner is None:
            return draft
        try:
            return await handle.run(self.refiner.refine(draft, handle))
        except JobCancelledError:
            raise
        except Exception as e:
            if handle.cancelled:
                raise JobCancelledError(handle.reason.value if handle.reason else None) from e
            logger.warning(f"Refinement failed for job {job_id}, keeping unrefined draft: {e}")
            return draft

    async def _persist(self, job: Job, draft: ExtractedRecipe, handle: CancellationHandle) -> str:
        current = await self.job_store.get_by_id(job.id)
        if current is None:
            raise DatabaseError(f"Job {job.id} disappeared before its recipe was saved")
        handle.raise_if_cancelled()

        source_url = None if job.source_locator.startswith(UPLOAD_SCHEME) else job.source_locator
        recipe = build_recipe(draft, current.owner_id, job.source_kind, source_url=source_url)
        return await handle.run(self.recipe_store.create(recipe))

    async def _stage_failed(
        self,
        job_id: str,
        handle: CancellationHandle,
        stage: str,
        code: ErrorCode,
        error: Exception,
    ) -> None:
        if isinstance(error, JobCancelledError) or handle.cancelled:
            await self._terminate_cancelled(job_id, handle, f"during {stage}")
            return
        logger.warning(f"Job {job_id} failed during {stage} ({code.value}): {error}")
        await self.job_store.mark_failed(job_id, code, str(error) or type(error).__name__)

    async def _terminate_cancelled(self, job_id: str, handle: CancellationHandle, where: str) -> None:
        if handle.reason == CancelReason.DEADLINE:
            logger.warning(f"Job {job_id} exceeded its time budget {where}")
            await self.job_store.mark_failed(
                job_id, ErrorCode.TIMEOUT, f"Job exceeded its time budget {where}"
            )
            return
        logger.info(f"Job {job_id} cancelled {where}")
        await self.job_store.mark_cancelled(job_id, CANCELLED_MESSAGE)
