"""Job admission: submission, status reads, listing and cancellation."""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from recipeflow.config import Settings, get_settings
from recipeflow.models.job import ErrorCode, Job, JobStatus, SourceKind
from recipeflow.services.cancellation import CancellationHandle, CancellationRegistry, CancelReason
from recipeflow.services.fetchers import HTTP_SCHEMES
from recipeflow.services.job_store import CANCELLED_MESSAGE, JobStore
from recipeflow.services.runner import JobRunner
from recipeflow.services.uploads import UPLOAD_SCHEME, UploadStager
from recipeflow.utils.errors import DuplicateJobError, InvalidSubmissionError, JobNotFoundError

logger = logging.getLogger(__name__)

MAX_LOCATOR_LENGTH = 2083
MAX_LIST_LIMIT = 100
DEFAULT_TIMEOUTS = {
    SourceKind.VIDEO: 30 * 60,
    SourceKind.WEBPAGE: 5 * 60,
    SourceKind.IMAGE: 5 * 60,
}


def validate_locator(kind: SourceKind, locator: str) -> str:
    """
    Check a source locator against its kind.

    Raises:
        InvalidSubmissionError: If the locator is empty, too long or of the wrong form
    """
    locator = (locator or "").strip()
    if not locator:
        raise InvalidSubmissionError("sourceLocator", "Source locator is required")
    if len(locator) > MAX_LOCATOR_LENGTH:
        raise InvalidSubmissionError(
            "sourceLocator", f"Source locator exceeds {MAX_LOCATOR_LENGTH} characters"
        )
    if locator.startswith(HTTP_SCHEMES) and len(locator) > len("https://"):
        return locator
    if kind == SourceKind.IMAGE and locator.startswith(UPLOAD_SCHEME):
        return locator
    allowed = "an http(s) URL or upload reference" if kind == SourceKind.IMAGE else "an http(s) URL"
    raise InvalidSubmissionError("sourceLocator", f"{kind.value} sources must be {allowed}")


class ExtractionJobService:
    """Admits extraction jobs and schedules their runners."""

    def __init__(
        self,
        job_store: JobStore,
        runner: JobRunner,
        registry: CancellationRegistry,
        stager: Optional[UploadStager] = None,
        timeout_for: Optional[Callable[[SourceKind], float]] = None,
    ) -> None:
        """
        Initialize the ExtractionJobService.

        Args:
            job_store: Store holding job records
            runner: Runner executing admitted jobs
            registry: Registry of live cancellation handles
            stager: Upload staging used by ``submit_images``
            timeout_for: Wall-clock budget per source kind
        """
        self.job_store = job_store
        self.runner = runner
        self.registry = registry
        self.stager = stager
        self.timeout_for = timeout_for or DEFAULT_TIMEOUTS.__getitem__
        self._tasks: Set[asyncio.Task] = set()
        self._key_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._key_users: Dict[Tuple[str, str], int] = {}
        self._accepting = True

    async def submit(
        self,
        owner_id: str,
        source_kind: SourceKind,
        source_locator: str,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Job, bool]:
        """
        Admit a job, or return the existing one for the idempotency key.

        Returns:
            Tuple of (job, created); ``created`` is False when an existing job
            was returned for the idempotency key

        Raises:
            InvalidSubmissionError: If the submission is malformed
        """
        if not self._accepting:
            raise InvalidSubmissionError("service", "Service is shutting down")
        if not (owner_id or "").strip():
            raise InvalidSubmissionError("ownerId", "Owner is required")
        try:
            source_kind = SourceKind(source_kind)
        except ValueError:
            raise InvalidSubmissionError("sourceKind", f"Unknown source kind: {source_kind}")
        source_locator = validate_locator(source_kind, source_locator)
        key = (idempotency_key or "").strip() or None

        if key is None:
            return await self._create(owner_id, source_kind, source_locator, None), True

        lock_key = (owner_id, key)
        lock = self._key_locks.setdefault(lock_key, asyncio.Lock())
        self._key_users[lock_key] = self._key_users.get(lock_key, 0) + 1
        try:
            async with lock:
                existing = await self._reusable_job(owner_id, key)
                if existing is not None:
                    logger.info(f"Idempotent submit for key {key!r} returned job {existing.id}")
                    return existing, False
                try:
                    return await self._create(owner_id, source_kind, source_locator, key), True
                except DuplicateJobError:
                    # another process won the race for this key
                    existing = await self.job_store.get_by_idempotency_key(owner_id, key)
                    if existing is None:
                        raise
                    return existing, False
        finally:
            self._key_users[lock_key] -= 1
            if not self._key_users[lock_key]:
                del self._key_users[lock_key]
                self._key_locks.pop(lock_key, None)

    async def submit_images(
        self,
        owner_id: str,
        images: Sequence[Tuple[bytes, str]],
        idempotency_key: Optional[str] = None,
    ) -> Tuple[Job, bool]:
        """Stage uploaded images and submit an image job referencing them."""
        if self.stager is None:
            raise InvalidSubmissionError("images", "Image uploads are not enabled")
        locator = self.stager.stage(images)
        try:
            job, created = await self.submit(owner_id, SourceKind.IMAGE, locator, idempotency_key)
        except BaseException:
            self.stager.discard(locator)
            raise
        if not created:
            self.stager.discard(locator)
        return job, created

    async def _reusable_job(self, owner_id: str, key: str) -> Optional[Job]:
        existing = await self.job_store.get_by_idempotency_key(owner_id, key)
        if existing is None:
            return None
        if existing.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            # failed attempts free their key so resubmitting retries the work
            await self.job_store.release_idempotency_key(existing.id)
            logger.info(f"Released idempotency key {key!r} from {existing.status.value} job {existing.id}")
            return None
        return existing

    async def _create(
        self,
        owner_id: str,
        source_kind: SourceKind,
        source_locator: str,
        idempotency_key: Optional[str],
    ) -> Job:
        job = Job(
            owner_id=owner_id,
            source_kind=source_kind,
            source_locator=source_locator,
            idempotency_key=idempotency_key,
            status_message="Queued",
        )
        job = await self.job_store.create(job)

        handle = CancellationHandle(job.id, timeout=self.timeout_for(source_kind))
        self.registry.register(handle)
        task = asyncio.create_task(self.runner.run(job, handle), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(f"Admitted job {job.id} ({source_kind.value}) for owner {owner_id}")
        return job

    async def get_status(self, job_id: str, owner_id: str) -> Job:
        """
        Fetch a job visible to ``owner_id``.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to someone else
        """
        job = await self.job_store.get_by_id(job_id)
        if job is None or job.owner_id != owner_id:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise InvalidSubmissionError("limit", f"limit must be between 1 and {MAX_LIST_LIMIT}")
        if offset < 0:
            raise InvalidSubmissionError("offset", "offset must not be negative")
        return await self.job_store.list_by_owner(owner_id, limit=limit, offset=offset)

    async def cancel(self, job_id: str, owner_id: str) -> None:
        """
        Request cancellation of a job.

        Signals the job's handle and marks the record cancelled when the signal
        was delivered. Jobs that are terminal, sealed or not running in this
        process are left untouched.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to someone else
        """
        job = await self.get_status(job_id, owner_id)
        if job.is_terminal:
            return
        if self.registry.cancel(job_id, CancelReason.REQUESTED):
            await self.job_store.mark_cancelled(job_id, CANCELLED_MESSAGE)
            logger.info(f"Cancellation requested for job {job_id}")

    def active_job_ids(self) -> Set[str]:
        return self.registry.job_ids()

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        """Stop admitting, cancel live jobs and wait for their runners."""
        self._accepting = False
        signalled = self.registry.cancel_all(CancelReason.SHUTDOWN)
        tasks = list(self._tasks)
        logger.info(f"Shutting down: {signalled} job(s) signalled, {len(tasks)} runner(s) pending")
        if not tasks:
            return

        done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                job_id = task.get_name().removeprefix("job-")
                await self.job_store.mark_failed(
                    job_id, ErrorCode.INTERNAL_ERROR, "Runner did not stop before shutdown"
                )


def create_job_service(settings: Optional[Settings] = None) -> ExtractionJobService:
    """Create the job service with stores, fetchers and agents from settings."""
    from recipeflow.services.extractor import RecipeExtractor
    from recipeflow.services.extraction_cache import create_extraction_cache
    from recipeflow.services.fetchers import create_source_fetcher
    from recipeflow.services.job_store import create_job_store
    from recipeflow.services.limiter import ConcurrencyLimiter
    from recipeflow.services.recipe_store import create_recipe_store
    from recipeflow.services.refiner import RecipeRefiner

    settings = settings or get_settings()
    stager = UploadStager(
        temp_dir=settings.resolved_temp_dir,
        max_image_bytes=settings.max_image_bytes,
        max_images=settings.max_images_per_job,
    )
    registry = CancellationRegistry()
    job_store = create_job_store()
    runner = JobRunner(
        job_store=job_store,
        recipe_store=create_recipe_store(),
        fetcher=create_source_fetcher(stager),
        extractor=RecipeExtractor(max_inline_bytes=settings.max_inline_media_bytes),
        refiner=RecipeRefiner(),
        limiter=ConcurrencyLimiter(settings.max_concurrent_jobs),
        registry=registry,
        stager=stager,
        cache=create_extraction_cache(),
    )
    return ExtractionJobService(
        job_store=job_store,
        runner=runner,
        registry=registry,
        stager=stager,
        timeout_for=settings.job_timeout_for,
    )
