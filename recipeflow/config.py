"""Application settings from environment variables."""

import tempfile
from functools import lru_cache

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

from recipeflow.models.job import SourceKind

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    # API Keys
    gemini_api_key: str = ""
    firecrawl_api_key: str = ""

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""

    # Models
    extraction_model: str = "google-gla:gemini-2.5-flash"
    refine_model: str = "google-gla:gemini-2.5-flash"

    # Configuration
    log_level: str = "INFO"
    http_max_retry_attempts: int = 3
    http_base_delay_seconds: float = 1.0

    # Job engine
    max_concurrent_jobs: int = 5
    video_job_timeout_seconds: float = 30 * 60
    light_job_timeout_seconds: float = 5 * 60
    shutdown_grace_seconds: float = 10.0
    temp_dir: str = ""

    # Uploads
    max_image_bytes: int = 10 * 1024 * 1024
    max_images_per_job: int = 10

    # Media sent inline to the model (local files only; remote videos go by URL)
    max_inline_media_bytes: int = 20 * 1024 * 1024

    # Extraction cache
    extraction_cache_enabled: bool = True
    extraction_cache_ttl_seconds: float = 30 * 24 * 60 * 60

    # Reaper
    reaper_interval_seconds: float = 5 * 60
    stale_job_grace_seconds: float = 5 * 60
    orphan_temp_max_age_seconds: float = 60 * 60

    model_config = {"env_file": ".env"}

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def resolved_temp_dir(self) -> str:
        return self.temp_dir or tempfile.gettempdir()

    def job_timeout_for(self, kind: SourceKind) -> float:
        """Wall-clock budget for one job of the given source kind."""
        if kind == SourceKind.VIDEO:
            return self.video_job_timeout_seconds
        return self.light_job_timeout_seconds

    @property
    def max_job_age_seconds(self) -> float:
        """Age after which a non-terminal job is considered orphaned."""
        longest = max(self.video_job_timeout_seconds, self.light_job_timeout_seconds)
        return longest + self.stale_job_grace_seconds


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
