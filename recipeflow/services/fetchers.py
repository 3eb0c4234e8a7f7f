"""Fetchers: turn a source locator into local content the extractor can read."""

import asyncio
import logging
import mimetypes
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from firecrawl import AsyncFirecrawlApp
from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError

from recipeflow.models.job import SourceKind
from recipeflow.services.cancellation import CancellationHandle
from recipeflow.services.uploads import MIME_EXTENSIONS, UPLOAD_SCHEME, UploadStager
from recipeflow.utils.errors import (
    FetchError,
    FirecrawlAPIError,
    JobCancelledError,
    UnsupportedSourceError,
)
from recipeflow.utils.retry import with_retry

logger = logging.getLogger(__name__)

TEMP_PREFIX = "recipeflow-"
HTTP_SCHEMES = ("http://", "https://")

# Hosts whose videos the model reads by URL, so nothing is downloaded.
REMOTE_VIDEO_HOSTS = frozenset({"youtube.com", "www.youtube.com", "m.youtube.com", "youtu.be"})


@dataclass
class FetchedContent:
    """Local content produced by a fetch; owns its working directory."""

    kind: SourceKind
    locator: str
    paths: List[Path] = field(default_factory=list)
    mime_types: List[str] = field(default_factory=list)
    text: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    remote_url: Optional[str] = None
    workdir: Optional[Path] = None

    @property
    def files(self) -> List[Tuple[Path, str]]:
        return list(zip(self.paths, self.mime_types))

    def cleanup(self) -> None:
        """Remove the working directory. Safe to call more than once."""
        if self.workdir is not None and self.workdir.exists():
            shutil.rmtree(self.workdir)
        self.workdir = None


def make_workdir(temp_dir: Optional[str], kind: SourceKind, job_id: str) -> Path:
    return Path(tempfile.mkdtemp(prefix=f"{TEMP_PREFIX}{kind.value}-{job_id}-", dir=temp_dir or None))


def is_remote_video_url(url: str) -> bool:
    return (urlsplit(url).hostname or "").lower() in REMOTE_VIDEO_HOSTS


def require_http_url(locator: str) -> None:
    if not locator.startswith(HTTP_SCHEMES):
        raise UnsupportedSourceError(f"Expected an http(s) URL, got: {locator}")


class Fetcher(ABC):
    @abstractmethod
    async def fetch(self, locator: str, handle: CancellationHandle) -> FetchedContent:
        """
        Fetch the source behind ``locator``.

        Raises:
            FetchError: If the source cannot be retrieved
            JobCancelledError: If the handle fired while fetching
        """


class VideoFetcher(Fetcher):
    """
    Fetches videos with yt-dlp in a worker thread.

    YouTube videos are only looked up for metadata and handed to the model by
    URL. Everything else is downloaded at a low resolution so it can be sent
    inline.
    """

    def __init__(self, temp_dir: Optional[str] = None, max_filesize: int = 500 * 1024 * 1024) -> None:
        self.temp_dir = temp_dir
        self.max_filesize = max_filesize

    async def fetch(self, locator: str, handle: CancellationHandle) -> FetchedContent:
        require_http_url(locator)
        loop = asyncio.get_running_loop()
        if is_remote_video_url(locator):
            info = await loop.run_in_executor(None, self._lookup_info, locator, handle)
            logger.info(f"Resolved remote video for job {handle.job_id}: {info.get('title')}")
            return FetchedContent(
                kind=SourceKind.VIDEO,
                locator=locator,
                title=info.get("title"),
                description=info.get("description"),
                thumbnail_url=info.get("thumbnail"),
                remote_url=locator,
            )

        workdir = make_workdir(self.temp_dir, SourceKind.VIDEO, handle.job_id)
        future = loop.run_in_executor(None, self._download, locator, workdir, handle)
        try:
            info, path = await asyncio.shield(future)
        except asyncio.CancelledError:
            # the hook sees the cancelled handle and stops the thread; wait for it
            # before removing the directory it writes into
            await asyncio.gather(future, return_exceptions=True)
            shutil.rmtree(workdir, ignore_errors=True)
            raise
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        mime_type = mimetypes.guess_type(path.name)[0] or "video/mp4"
        logger.info(f"Downloaded video for job {handle.job_id}: {path.name}")
        return FetchedContent(
            kind=SourceKind.VIDEO,
            locator=locator,
            paths=[path],
            mime_types=[mime_type],
            title=info.get("title"),
            description=info.get("description"),
            thumbnail_url=info.get("thumbnail"),
            workdir=workdir,
        )

    @staticmethod
    def _base_opts() -> Dict[str, Any]:
        return {"noplaylist": True, "quiet": True, "no_warnings": True, "noprogress": True}

    @staticmethod
    def _download_failed(e: DownloadError, handle: CancellationHandle, what: str) -> Exception:
        if handle.cancelled:
            return JobCancelledError(handle.reason.value if handle.reason else None)
        return FetchError(f"{what} failed: {e}")

    def _lookup_info(self, url: str, handle: CancellationHandle) -> Dict[str, Any]:
        try:
            with YoutubeDL(self._base_opts()) as ydl:
                info = ydl.extract_info(url, download=False)
        except DownloadError as e:
            raise self._download_failed(e, handle, "Video lookup") from e
        if not info:
            raise FetchError(f"No video found at {url}")
        return info

    def _download(
        self, url: str, workdir: Path, handle: CancellationHandle
    ) -> Tuple[Dict[str, Any], Path]:
        def _progress_hook(status: Dict[str, Any]) -> None:
            if handle.cancelled:
                raise JobCancelledError(handle.reason.value if handle.reason else None)

        opts = self._base_opts()
        opts.update(
            {
                "outtmpl": str(workdir / "video.%(ext)s"),
                "format": "best[height<=480][ext=mp4]/best[ext=mp4]/best",
                "max_filesize": self.max_filesize,
                "progress_hooks": [_progress_hook],
            }
        )
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=True)
                path = Path(ydl.prepare_filename(info))
        except JobCancelledError:
            raise
        except DownloadError as e:
            raise self._download_failed(e, handle, "Video download") from e

        if not path.exists():
            candidates = sorted(p for p in workdir.iterdir() if p.is_file())
            if not candidates:
                raise FetchError("Video download produced no file")
            path = candidates[0]
        return info or {}, path


class WebpageFetcher(Fetcher):
    """Scrapes a webpage to markdown with Firecrawl."""

    def __init__(self, firecrawl_api_key: str, temp_dir: Optional[str] = None) -> None:
        """
        Initialize the WebpageFetcher.

        Args:
            firecrawl_api_key: API key for Firecrawl service
            temp_dir: Parent directory for per-job working directories
        """
        self.firecrawl_api_key = firecrawl_api_key
        self.temp_dir = temp_dir
        self._firecrawl: Optional[AsyncFirecrawlApp] = None

    @property
    def firecrawl(self) -> AsyncFirecrawlApp:
        if self._firecrawl is None:
            self._firecrawl = AsyncFirecrawlApp(api_key=self.firecrawl_api_key)
        return self._firecrawl

    async def fetch(self, locator: str, handle: CancellationHandle) -> FetchedContent:
        require_http_url(locator)
        try:
            response = await handle.run(self.firecrawl.scrape(locator, formats=["markdown"]))
        except JobCancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to scrape URL {locator}: {e}")
            raise FirecrawlAPIError(500, str(e))

        markdown, metadata = self._read_response(response)
        if not markdown.strip():
            raise FetchError(f"Webpage has no readable content: {locator}")

        workdir = make_workdir(self.temp_dir, SourceKind.WEBPAGE, handle.job_id)
        path = workdir / "page.md"
        try:
            path.write_text(markdown, encoding="utf-8")
        except OSError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            raise FetchError(f"Could not store scraped page: {e}") from e

        return FetchedContent(
            kind=SourceKind.WEBPAGE,
            locator=locator,
            paths=[path],
            mime_types=["text/markdown"],
            text=markdown,
            title=metadata.get("title") or metadata.get("og_title") or metadata.get("ogTitle"),
            description=metadata.get("description"),
            thumbnail_url=metadata.get("og_image") or metadata.get("ogImage"),
            workdir=workdir,
        )

    @staticmethod
    def _read_response(response: Any) -> Tuple[str, Dict[str, Any]]:
        if not response:
            return "", {}
        if isinstance(response, dict):
            return response.get("markdown") or "", response.get("metadata") or {}

        markdown = getattr(response, "markdown", None) or ""
        metadata = getattr(response, "metadata", None) or {}
        if not isinstance(metadata, dict):
            # ScrapeResponse metadata is a pydantic model in newer clients
            metadata = metadata.model_dump() if hasattr(metadata, "model_dump") else {}
        return markdown, metadata


class ImageFetcher(Fetcher):
    """Resolves staged uploads or downloads image URLs."""

    def __init__(
        self,
        stager: UploadStager,
        temp_dir: Optional[str] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.stager = stager
        self.transport = transport
        self.temp_dir = temp_dir
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout

    async def fetch(self, locator: str, handle: CancellationHandle) -> FetchedContent:
        if locator.startswith(UPLOAD_SCHEME):
            return self._from_upload(locator)
        require_http_url(locator)
        return await self._from_url(locator, handle)

    def _from_upload(self, locator: str) -> FetchedContent:
        files = self.stager.files(locator)
        if not files:
            raise FetchError(f"Upload contains no images: {locator}")
        return FetchedContent(
            kind=SourceKind.IMAGE,
            locator=locator,
            paths=[path for path, _ in files],
            mime_types=[mime for _, mime in files],
            workdir=self.stager.resolve(locator),
        )

    async def _from_url(self, url: str, handle: CancellationHandle) -> FetchedContent:
        download = with_retry(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            exceptions=(httpx.TransportError,),
        )(self._download)
        try:
            data, mime_type = await handle.run(download(url))
        except httpx.HTTPError as e:
            raise FetchError(f"Image download failed: {e}") from e

        workdir = make_workdir(self.temp_dir, SourceKind.IMAGE, handle.job_id)
        path = workdir / f"image_00{MIME_EXTENSIONS[mime_type]}"
        try:
            path.write_bytes(data)
        except OSError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            raise FetchError(f"Could not store image: {e}") from e

        return FetchedContent(
            kind=SourceKind.IMAGE,
            locator=url,
            paths=[path],
            mime_types=[mime_type],
            workdir=workdir,
        )

    async def _download(self, url: str) -> Tuple[bytes, str]:
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self.transport
        ) as client:
            response = await client.get(url)
            response.raise_for_status()

        mime_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if mime_type not in MIME_EXTENSIONS:
            raise FetchError(f"Unsupported image type from {url}: {mime_type or 'unknown'}")
        if len(response.content) > self.stager.max_image_bytes:
            raise FetchError(f"Image at {url} exceeds the size limit")
        return response.content, mime_type


class SourceFetcher:
    """Selects the fetcher for a job's source kind."""

    def __init__(self, fetchers: Dict[SourceKind, Fetcher]) -> None:
        self.fetchers = fetchers

    async def fetch(
        self, kind: SourceKind, locator: str, handle: CancellationHandle
    ) -> FetchedContent:
        fetcher = self.fetchers.get(kind)
        if fetcher is None:
            raise UnsupportedSourceError(f"No fetcher configured for {kind.value} sources")
        return await fetcher.fetch(locator, handle)


def create_source_fetcher(stager: Optional[UploadStager] = None) -> SourceFetcher:
    """Create the fetchers configured for this process."""
    from recipeflow.config import get_settings

    settings = get_settings()
    temp_dir = settings.resolved_temp_dir
    stager = stager or UploadStager(
        temp_dir=temp_dir,
        max_image_bytes=settings.max_image_bytes,
        max_images=settings.max_images_per_job,
    )
    return SourceFetcher(
        {
            SourceKind.VIDEO: VideoFetcher(temp_dir=temp_dir),
            SourceKind.WEBPAGE: WebpageFetcher(settings.firecrawl_api_key, temp_dir=temp_dir),
            SourceKind.IMAGE: ImageFetcher(
                stager,
                temp_dir=temp_dir,
                max_attempts=settings.http_max_retry_attempts,
                base_delay=settings.http_base_delay_seconds,
            ),
        }
    )
