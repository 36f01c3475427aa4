from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple
import logging
import re

import httpx

logger = logging.getLogger(__name__)

_NUMERIC_VERSION = re.compile(r"^\d+(?:\.\d+)*$")


def _version_key(tag: str) -> Optional[Tuple[int, ...]]:
    if not _NUMERIC_VERSION.match(tag or ""):
        return None
    return tuple(int(part) for part in tag.split("."))


class VersionCatalog:
    """Best-effort list of installable version tags.

    The list is swapped out only when its length, first entry or last entry
    changes; readers keep seeing the same object otherwise.
    """

    def __init__(self, versions: Optional[List[str]] = None):
        self.versions: List[str] = list(versions or [])
        self.updated_at: Optional[datetime] = None

    @staticmethod
    def should_replace(current: List[str], listing: List[str]) -> bool:
        if len(listing) != len(current):
            return True
        if not listing:
            return False
        return listing[0] != current[0] or listing[-1] != current[-1]

    def update(self, listing: List[str]) -> bool:
        if not listing:
            return False
        if not self.should_replace(self.versions, listing):
            return False
        self.versions = list(listing)
        self.updated_at = datetime.now(timezone.utc)
        return True

    def available_upgrades(self, installed: Optional[str]) -> List[str]:
        """Numeric tags newer than ``installed``, newest first."""
        floor = _version_key(installed or "")
        candidates = []
        for tag in self.versions:
            key = _version_key(tag)
            if key is None:
                continue
            if floor is not None and key <= floor:
                continue
            candidates.append((key, tag))
        candidates.sort(reverse=True)
        return [tag for _, tag in candidates]


class VersionCatalogRefresher:
    def __init__(
        self,
        catalog: VersionCatalog,
        tags_url: str,
        interval_seconds: int = 3600,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ):
        self.catalog = catalog
        self.tags_url = tags_url
        self.interval_seconds = interval_seconds
        self._client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=30, follow_redirects=True))
        self.scheduler = AsyncIOScheduler(
            executors={'default': AsyncIOExecutor()},
            timezone='UTC'
        )

    def start(self):
        """Refresh now and then every ``interval_seconds`` for the life of the process."""
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.refresh,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="version_catalog_refresh",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Version catalog refresh scheduled every {self.interval_seconds}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Version catalog refresher stopped")

    async def fetch_tags(self) -> List[str]:
        """Walk every page of the tag listing. Any failure yields an empty list."""
        tags: List[str] = []
        url: Optional[str] = self.tags_url
        seen = set()
        try:
            async with self._client_factory() as client:
                while url and url not in seen:
                    seen.add(url)
                    resp = await client.get(url)
                    resp.raise_for_status()
                    page = resp.json()
                    for entry in page.get("results") or []:
                        name = entry.get("name") if isinstance(entry, dict) else None
                        if name:
                            tags.append(str(name))
                    url = page.get("next")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to fetch version tags from {self.tags_url}: {e}")
            return []
        return tags

    async def refresh(self) -> bool:
        listing = await self.fetch_tags()
        replaced = self.catalog.update(listing)
        if replaced:
            logger.info(f"Version catalog updated: {len(listing)} tags")
        return replaced
