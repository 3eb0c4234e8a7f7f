"""Reaper for jobs and temp files orphaned by a process restart."""

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

from recipeflow.models.job import utcnow
from recipeflow.services.extraction_cache import ExtractionCache
from recipeflow.services.fetchers import TEMP_PREFIX
from recipeflow.services.job_store import JobStore
from recipeflow.utils.errors import DatabaseError

logger = logging.getLogger(__name__)


@dataclass
class ReapResult:
    stale_jobs: int = 0
    temp_entries: int = 0
    cache_entries: int = 0


class JobReaper:
    """
    Periodically fails stale non-terminal jobs, removes orphaned temp files and
    purges expired extraction cache entries.

    A job counts as stale once its start (or creation, if it never started) is
    older than ``max_job_age_seconds``, unless it still has a live cancellation
    handle in this process.
    """

    def __init__(
        self,
        job_store: JobStore,
        live_job_ids: Callable[[], Iterable[str]],
        max_job_age_seconds: float,
        temp_dir: str,
        orphan_temp_max_age_seconds: float = 60 * 60,
        interval_seconds: float = 5 * 60,
        extraction_cache: Optional[ExtractionCache] = None,
    ) -> None:
        self.job_store = job_store
        self.live_job_ids = live_job_ids
        self.max_job_age_seconds = max_job_age_seconds
        self.temp_dir = Path(temp_dir)
        self.orphan_temp_max_age_seconds = orphan_temp_max_age_seconds
        self.interval_seconds = interval_seconds
        self.extraction_cache = extraction_cache
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> ReapResult:
        result = ReapResult()
        cutoff = utcnow() - timedelta(seconds=self.max_job_age_seconds)
        result.stale_jobs = await self.job_store.mark_stale_jobs_failed(
            cutoff, exclude_ids=set(self.live_job_ids())
        )
        if result.stale_jobs:
            logger.warning(f"Marked {result.stale_jobs} stale job(s) as failed")

        result.temp_entries = self.clean_temp_files()
        if result.temp_entries:
            logger.info(f"Removed {result.temp_entries} orphaned temp entr(ies)")

        if self.extraction_cache is not None:
            try:
                result.cache_entries = await self.extraction_cache.delete_expired()
            except DatabaseError as e:
                logger.warning(f"Failed to purge extraction cache: {e}")
            if result.cache_entries:
                logger.info(f"Purged {result.cache_entries} expired cache entr(ies)")
        return result

    def clean_temp_files(self) -> int:
        """Delete ``recipeflow-*`` entries older than the orphan age."""
        if not self.temp_dir.is_dir():
            return 0
        cutoff = time.time() - self.orphan_temp_max_age_seconds
        removed = 0
        for entry in self.temp_dir.glob(f"{TEMP_PREFIX}*"):
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove orphaned temp entry {entry}: {e}")
        return removed

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="job-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reaper pass failed")
            await asyncio.sleep(self.interval_seconds)
