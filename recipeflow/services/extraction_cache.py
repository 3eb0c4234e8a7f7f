"""Extraction cache: reuse recipes already extracted from the same source URL.

Entries are keyed by the SHA-256 of the normalized URL, so tracking parameters,
short links and mobile hosts all land on the same entry. Entries expire after
a TTL and are purged by the reaper.
"""

import hashlib
import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, Field

from recipeflow.models.job import utcnow
from recipeflow.models.recipe import ExtractedRecipe
from recipeflow.utils.errors import DatabaseError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 24 * 60 * 60

TRACKING_PARAM = re.compile(r"^(utm_|fbclid|gclid|gclsrc|dclid|msclkid|ref|source|medium|campaign)")
VIDEO_NOISE_PARAMS = frozenset(
    {"t", "start", "end", "feature", "si", "app", "sender_device", "is_copy_url", "is_from_webapp"}
)
QUOTE_CHARS = "\"',;"
ENCODED_QUOTES = ("%22", "%27", "%2C", "%2c")


def _normalize_video(host: str, path: str, query: str) -> Tuple[str, str, str]:
    if host == "youtu.be" and path.strip("/"):
        return "youtube.com", "/watch", urlencode({"v": path.strip("/")})
    if host == "m.youtube.com":
        host = "youtube.com"
    if host == "youtube.com":
        for prefix in ("/shorts/", "/embed/"):
            if path.startswith(prefix) and len(path) > len(prefix):
                return host, "/watch", urlencode({"v": path[len(prefix):].strip("/")})
        if path == "/watch":
            params = [(k, v) for k, v in parse_qsl(query) if k not in VIDEO_NOISE_PARAMS]
            return host, path, urlencode(params)

    if host in ("vm.tiktok.com", "m.tiktok.com"):
        host = "tiktok.com"
    if host == "tiktok.com":
        query = ""
    return host, path, query


def normalize_url(raw_url: str) -> str:
    """
    Canonical form of a source URL for cache lookups.

    Lowercases scheme and host, drops ``www.``, collapses YouTube and TikTok
    link variants, strips tracking parameters and the fragment, and sorts the
    remaining query parameters.
    """
    url = raw_url.strip().strip(QUOTE_CHARS)
    for encoded in ENCODED_QUOTES:
        url = url.replace(encoded, "")

    try:
        parts = urlsplit(url)
    except ValueError:
        return url.lower()
    if not parts.netloc:
        return url.lower()

    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[len("www."):]
    host, path, query = _normalize_video(host, parts.path, parts.query)

    params = [(k, v) for k, v in parse_qsl(query) if not TRACKING_PARAM.match(k.lower())]
    params.sort()
    return urlunsplit((parts.scheme.lower(), host, path.rstrip("/"), urlencode(params), ""))


def hash_url(url: str) -> str:
    """SHA-256 hex digest of the normalized URL."""
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


class CachedExtraction(BaseModel):
    """One cached extraction result."""

    url_hash: str
    normalized_url: str
    recipe: ExtractedRecipe
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    hit_count: int = 0

    @property
    def is_expired(self) -> bool:
        return utcnow() >= self.expires_at


class ExtractionCache(ABC):
    """Contract for looking up and storing extraction results by source URL."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)

    def _entry_for(self, url: str, recipe: ExtractedRecipe) -> CachedExtraction:
        now = utcnow()
        return CachedExtraction(
            url_hash=hash_url(url),
            normalized_url=normalize_url(url),
            recipe=recipe,
            created_at=now,
            expires_at=now + self.ttl,
        )

    @abstractmethod
    async def get_by_url(self, url: str) -> Optional[CachedExtraction]:
        """Live entry for ``url``, or None on a miss or an expired entry."""

    @abstractmethod
    async def put(self, url: str, recipe: ExtractedRecipe) -> CachedExtraction:
        """Store ``recipe`` for ``url``, replacing any previous entry."""

    @abstractmethod
    async def record_hit(self, entry: CachedExtraction) -> None:
        ...

    @abstractmethod
    async def delete_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""


class InMemoryExtractionCache(ExtractionCache):
    """Process-local cache used in development and tests."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        super().__init__(ttl_seconds)
        self._entries: Dict[str, CachedExtraction] = {}
        self._lock = threading.Lock()

    async def get_by_url(self, url: str) -> Optional[CachedExtraction]:
        with self._lock:
            entry = self._entries.get(hash_url(url))
            if entry is None or entry.is_expired:
                return None
            return entry.model_copy(deep=True)

    async def put(self, url: str, recipe: ExtractedRecipe) -> CachedExtraction:
        entry = self._entry_for(url, recipe)
        with self._lock:
            self._entries[entry.url_hash] = entry.model_copy(deep=True)
        logger.info(f"Cached extraction for {entry.normalized_url}")
        return entry

    async def record_hit(self, entry: CachedExtraction) -> None:
        with self._lock:
            stored = self._entries.get(entry.url_hash)
            if stored is not None:
                stored.hit_count += 1

    async def delete_expired(self) -> int:
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired]
            for key in expired:
                del self._entries[key]
        return len(expired)


class SupabaseExtractionCache(ExtractionCache):
    """Cache backed by the ``extraction_cache`` Supabase table."""

    TABLE = "extraction_cache"

    def __init__(self, supabase_client: Any, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        super().__init__(ttl_seconds)
        self.supabase = supabase_client

    def _table(self) -> Any:
        return self.supabase.table(self.TABLE)

    @staticmethod
    def _to_row(entry: CachedExtraction) -> dict[str, Any]:
        return {
            "url_hash": entry.url_hash,
            "normalized_url": entry.normalized_url,
            "extraction_result": entry.recipe.model_dump(mode="json"),
            "created_at": entry.created_at.isoformat(),
            "expires_at": entry.expires_at.isoformat(),
            "hit_count": entry.hit_count,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> CachedExtraction:
        return CachedExtraction(
            url_hash=row["url_hash"],
            normalized_url=row["normalized_url"],
            recipe=ExtractedRecipe.model_validate(row["extraction_result"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
            hit_count=row.get("hit_count") or 0,
        )

    async def get_by_url(self, url: str) -> Optional[CachedExtraction]:
        try:
            result = self._table().select("*").eq("url_hash", hash_url(url)).execute()
        except Exception as e:
            raise DatabaseError(f"Failed to read extraction cache: {e}")
        if not result.data:
            return None
        entry = self._from_row(result.data[0])
        return None if entry.is_expired else entry

    async def put(self, url: str, recipe: ExtractedRecipe) -> CachedExtraction:
        entry = self._entry_for(url, recipe)
        try:
            self._table().upsert(self._to_row(entry), on_conflict="url_hash").execute()
        except Exception as e:
            raise DatabaseError(f"Failed to write extraction cache: {e}")
        logger.info(f"Cached extraction for {entry.normalized_url}")
        return entry

    async def record_hit(self, entry: CachedExtraction) -> None:
        try:
            (
                self._table()
                .update({"hit_count": entry.hit_count + 1})
                .eq("url_hash", entry.url_hash)
                .execute()
            )
        except Exception as e:
            raise DatabaseError(f"Failed to record cache hit: {e}")

    async def delete_expired(self) -> int:
        try:
            result = self._table().delete().lt("expires_at", utcnow().isoformat()).execute()
        except Exception as e:
            raise DatabaseError(f"Failed to purge extraction cache: {e}")
        return len(result.data or [])


def create_extraction_cache() -> Optional[ExtractionCache]:
    """
    Create the extraction cache configured for this process.

    Returns:
        None when caching is disabled, SupabaseExtractionCache when Supabase
        credentials are set, otherwise InMemoryExtractionCache
    """
    from recipeflow.config import get_settings

    settings = get_settings()
    if not settings.extraction_cache_enabled:
        return None
    ttl = settings.extraction_cache_ttl_seconds
    if not settings.use_supabase:
        return InMemoryExtractionCache(ttl_seconds=ttl)

    from supabase import create_client

    supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return SupabaseExtractionCache(supabase_client=supabase_client, ttl_seconds=ttl)
