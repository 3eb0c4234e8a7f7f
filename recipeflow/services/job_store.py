"""Job store: durable record of extraction jobs for status polling.

Every writer is a no-op once a job is terminal, so each job ends in exactly one
terminal status no matter how the runner and a cancel request interleave.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from recipeflow.models.job import (
    ACTIVE_STATUSES,
    ErrorCode,
    Job,
    JobStatus,
    SourceKind,
    status_rank,
    utcnow,
)
from recipeflow.utils.errors import DatabaseError, DuplicateJobError

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Job cancelled by user"
COMPLETED_MESSAGE = "Recipe extracted successfully"
FAILED_MESSAGE = "Recipe extraction failed"
STALE_JOB_MESSAGE = "Job timed out after exceeding maximum processing duration"


class JobStore(ABC):
    """CRUD-style contract the engine uses to read and write job records."""

    @abstractmethod
    async def create(self, job: Job) -> Job:
        """Insert a new job. Raises DuplicateJobError on an idempotency conflict."""

    @abstractmethod
    async def get_by_id(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def get_by_idempotency_key(self, owner_id: str, key: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        """Jobs for an owner, most recent first."""

    @abstractmethod
    async def mark_started(self, job_id: str) -> bool:
        """Set started_at on a pending job."""

    @abstractmethod
    async def update_progress(
        self, job_id: str, status: JobStatus, progress: int, message: str
    ) -> bool:
        ...

    @abstractmethod
    async def mark_completed(self, job_id: str, recipe_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, job_id: str, code: ErrorCode, message: str) -> bool:
        ...

    @abstractmethod
    async def mark_cancelled(self, job_id: str, message: str = CANCELLED_MESSAGE) -> bool:
        ...

    @abstractmethod
    async def release_idempotency_key(self, job_id: str) -> bool:
        """Clear the key on a failed or cancelled job so it can be reused."""

    @abstractmethod
    async def mark_stale_jobs_failed(
        self, cutoff: datetime, exclude_ids: Iterable[str] = ()
    ) -> int:
        """
        Fail non-terminal jobs whose start (or creation, if never started) is
        older than ``cutoff``. Returns the number of jobs changed.
        """


class InMemoryJobStore(JobStore):
    """Process-local job store used in development and tests."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    async def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise DatabaseError(f"Job id already used: {job.id}")
            if job.idempotency_key:
                for existing in self._jobs.values():
                    if (
                        existing.owner_id == job.owner_id
                        and existing.idempotency_key == job.idempotency_key
                    ):
                        raise DuplicateJobError(job.owner_id, job.idempotency_key)
            self._jobs[job.id] = job.model_copy(deep=True)
        logger.info(f"Created job {job.id}")
        return job

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def get_by_idempotency_key(self, owner_id: str, key: str) -> Optional[Job]:
        with self._lock:
            for job in self._jobs.values():
                if job.owner_id == owner_id and job.idempotency_key == key:
                    return job.model_copy(deep=True)
        return None

    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        with self._lock:
            owned = [j for j in self._jobs.values() if j.owner_id == owner_id]
        # newest insert first among equal timestamps
        owned.reverse()
        owned.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in owned[offset : offset + limit]]

    async def mark_started(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING or job.started_at:
                return False
            job.started_at = utcnow()
            return True

    async def update_progress(
        self, job_id: str, status: JobStatus, progress: int, message: str
    ) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            if status_rank(status) >= status_rank(job.status):
                job.status = status
            job.progress_percent = max(job.progress_percent, min(100, max(0, progress)))
            job.status_message = message
            return True

    async def mark_completed(self, job_id: str, recipe_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            job.status = JobStatus.COMPLETED
            job.progress_percent = 100
            job.result_recipe_id = recipe_id
            job.status_message = COMPLETED_MESSAGE
            job.completed_at = utcnow()
            return True

    async def mark_failed(self, job_id: str, code: ErrorCode, message: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            job.status = JobStatus.FAILED
            job.error_code = code
            job.error_message = message
            job.status_message = FAILED_MESSAGE
            job.completed_at = utcnow()
            return True

    async def mark_cancelled(self, job_id: str, message: str = CANCELLED_MESSAGE) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return False
            job.status = JobStatus.CANCELLED
            job.error_code = ErrorCode.CANCELLED
            job.error_message = message
            job.status_message = message
            job.completed_at = utcnow()
            return True

    async def release_idempotency_key(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                return False
            job.idempotency_key = None
            return True

    async def mark_stale_jobs_failed(
        self, cutoff: datetime, exclude_ids: Iterable[str] = ()
    ) -> int:
        excluded = set(exclude_ids)
        count = 0
        with self._lock:
            for job in self._jobs.values():
                if job.is_terminal or job.id in excluded:
                    continue
                if (job.started_at or job.created_at) >= cutoff:
                    continue
                job.status = JobStatus.FAILED
                job.error_code = ErrorCode.TIMEOUT
                job.error_message = STALE_JOB_MESSAGE
                job.status_message = FAILED_MESSAGE
                job.completed_at = utcnow()
                count += 1
        return count


class SupabaseJobStore(JobStore):
    """Job store backed by the Supabase ``extraction_jobs`` table."""

    TABLE = "extraction_jobs"

    def __init__(self, supabase_client: Any) -> None:
        """
        Initialize the SupabaseJobStore.

        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    def _table(self) -> Any:
        return self.supabase.table(self.TABLE)

    def _active(self, query: Any) -> Any:
        return query.in_("status", [s.value for s in ACTIVE_STATUSES])

    @staticmethod
    def _to_row(job: Job) -> dict[str, Any]:
        return {
            "id": job.id,
            "owner_id": job.owner_id,
            "source_kind": job.source_kind.value,
            "source_locator": job.source_locator,
            "idempotency_key": job.idempotency_key,
            "status": job.status.value,
            "progress": job.progress_percent,
            "status_message": job.status_message,
            "result_recipe_id": job.result_recipe_id,
            "error_code": job.error_code.value if job.error_code else None,
            "error_message": job.error_message,
            "created_at": job.created_at.isoformat(),
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> Job:
        def _dt(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            source_kind=SourceKind(row["source_kind"]),
            source_locator=row["source_locator"],
            idempotency_key=row.get("idempotency_key"),
            status=JobStatus(row["status"]),
            progress_percent=row.get("progress") or 0,
            status_message=row.get("status_message"),
            result_recipe_id=row.get("result_recipe_id"),
            error_code=ErrorCode(row["error_code"]) if row.get("error_code") else None,
            error_message=row.get("error_message"),
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=_dt(row.get("started_at")),
            completed_at=_dt(row.get("completed_at")),
        )

    async def create(self, job: Job) -> Job:
        try:
            result = self._table().insert(self._to_row(job)).execute()
        except Exception as e:
            text = str(e)
            if job.idempotency_key and ("23505" in text or "duplicate key" in text):
                raise DuplicateJobError(job.owner_id, job.idempotency_key)
            raise DatabaseError(f"Failed to create job: {e}")

        if not result.data:
            raise DatabaseError("Failed to insert job into database")

        logger.info(f"Created job {job.id}")
        return job

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        try:
            result = self._table().select("*").eq("id", job_id).execute()
            if not result.data:
                return None
            return self._from_row(result.data[0])
        except Exception as e:
            logger.error(f"Failed to get job {job_id}: {e}")
            return None

    async def get_by_idempotency_key(self, owner_id: str, key: str) -> Optional[Job]:
        try:
            result = (
                self._table()
                .select("*")
                .eq("owner_id", owner_id)
                .eq("idempotency_key", key)
                .execute()
            )
            if not result.data:
                return None
            return self._from_row(result.data[0])
        except Exception as e:
            raise DatabaseError(f"Failed to look up idempotency key: {e}")

    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        try:
            result = (
                self._table()
                .select("*")
                .eq("owner_id", owner_id)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
            return [self._from_row(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to list jobs for {owner_id}: {e}")

    async def _update(self, job_id: str, data: dict[str, Any], query_filter: Any = None) -> bool:
        try:
            query = self._table().update(data).eq("id", job_id)
            query = query_filter(query) if query_filter else self._active(query)
            result = query.execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Failed to update job {job_id}: {e}")
            return False

    async def mark_started(self, job_id: str) -> bool:
        return await self._update(
            job_id,
            {"started_at": utcnow().isoformat()},
            lambda q: q.eq("status", JobStatus.PENDING.value).is_("started_at", "null"),
        )

    async def update_progress(
        self, job_id: str, status: JobStatus, progress: int, message: str
    ) -> bool:
        return await self._update(
            job_id,
            {"status": status.value, "progress": progress, "status_message": message},
        )

    async def mark_completed(self, job_id: str, recipe_id: str) -> bool:
        return await self._update(
            job_id,
            {
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "result_recipe_id": recipe_id,
                "status_message": COMPLETED_MESSAGE,
                "completed_at": utcnow().isoformat(),
            },
        )

    async def mark_failed(self, job_id: str, code: ErrorCode, message: str) -> bool:
        return await self._update(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "error_code": code.value,
                "error_message": message,
                "status_message": FAILED_MESSAGE,
                "completed_at": utcnow().isoformat(),
            },
        )

    async def mark_cancelled(self, job_id: str, message: str = CANCELLED_MESSAGE) -> bool:
        return await self._update(
            job_id,
            {
                "status": JobStatus.CANCELLED.value,
                "error_code": ErrorCode.CANCELLED.value,
                "error_message": message,
                "status_message": message,
                "completed_at": utcnow().isoformat(),
            },
        )

    async def release_idempotency_key(self, job_id: str) -> bool:
        return await self._update(
            job_id,
            {"idempotency_key": None},
            lambda q: q.in_("status", [JobStatus.FAILED.value, JobStatus.CANCELLED.value]),
        )

    async def mark_stale_jobs_failed(
        self, cutoff: datetime, exclude_ids: Iterable[str] = ()
    ) -> int:
        data = {
            "status": JobStatus.FAILED.value,
            "error_code": ErrorCode.TIMEOUT.value,
            "error_message": STALE_JOB_MESSAGE,
            "status_message": FAILED_MESSAGE,
            "completed_at": utcnow().isoformat(),
        }
        excluded = sorted(set(exclude_ids))
        count = 0
        try:
            # started jobs by started_at, never-started ones by created_at
            started = self._active(self._table().update(data)).lt(
                "started_at", cutoff.isoformat()
            )
            never_started = (
                self._active(self._table().update(data))
                .is_("started_at", "null")
                .lt("created_at", cutoff.isoformat())
            )
            for query in (started, never_started):
                if excluded:
                    query = query.not_.in_("id", excluded)
                result = query.execute()
                count += len(result.data or [])
        except Exception as e:
            raise DatabaseError(f"Failed to mark stale jobs: {e}")
        return count


# Factory function for creating a JobStore with settings
def create_job_store() -> JobStore:
    """
    Create the job store configured for this process.

    Returns:
        SupabaseJobStore when Supabase credentials are set, otherwise InMemoryJobStore
    """
    from recipeflow.config import get_settings

    settings = get_settings()
    if not settings.use_supabase:
        logger.warning("Supabase not configured; job records are kept in memory")
        return InMemoryJobStore()

    from supabase import create_client

    supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return SupabaseJobStore(supabase_client=supabase_client)
