"""Offline story cache.

Keeps full story text for the most recently opened stories so a child can hear a
favourite without a network connection.

Cache keys:
  offline_story_<id>   full story snapshot
  offline_story_ids    JSON list of cached ids, most recent first
  offline_cache_meta   {total_stories, last_updated, cache_version}
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel

from .cache_store import CacheKeys, CacheStoreError, LocalCacheStore

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


class CachedStoryInput(BaseModel):
    id: str
    title: str
    content: str
    theme: str
    image_url: Optional[str] = None
    narrator_id: Optional[str] = None
    child_name: Optional[str] = None
    audio_cached: bool = False


class CachedStory(CachedStoryInput):
    cached_at: str


class CacheMeta(BaseModel):
    total_stories: int
    last_updated: str
    cache_version: int = CACHE_VERSION


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class OfflineStoryCache:
    def __init__(self, store: LocalCacheStore, *, limit: int = 20) -> None:
        self._store = store
        self._limit = limit

    async def _cached_ids(self) -> List[str]:
        try:
            raw = await self._store.get(CacheKeys.OFFLINE_STORY_IDS)
            ids = json.loads(raw) if raw else []
        except (CacheStoreError, ValueError):
            return []
        return [value for value in ids if isinstance(value, str)] if isinstance(ids, list) else []

    async def _save_ids(self, ids: List[str]) -> None:
        meta = CacheMeta(total_stories=len(ids), last_updated=_now())
        await self._store.multi_set(
            [
                (CacheKeys.OFFLINE_STORY_IDS, json.dumps(ids)),
                (CacheKeys.OFFLINE_META, meta.model_dump_json()),
            ]
        )

    async def cache_story(self, story: CachedStoryInput) -> Optional[CachedStory]:
        """Save a story, evicting the oldest entries beyond the cache limit."""
        entry = CachedStory(**story.model_dump(), cached_at=_now())
        try:
            await self._store.set(CacheKeys.offline_story(story.id), entry.model_dump_json())
            ids = [value for value in await self._cached_ids() if value != story.id]
            ids.insert(0, story.id)
            evicted = ids[self._limit :]
            ids = ids[: self._limit]
            if evicted:
                await self._store.multi_remove([CacheKeys.offline_story(value) for value in evicted])
            await self._save_ids(ids)
        except CacheStoreError as exc:
            logger.warning("cache_story failed", exc_info=exc)
            return None
        return entry

    async def get_cached_story(self, story_id: str) -> Optional[CachedStory]:
        try:
            raw = await self._store.get(CacheKeys.offline_story(story_id))
            return CachedStory.model_validate_json(raw) if raw else None
        except (CacheStoreError, ValueError):
            return None

    async def get_all_cached_stories(self) -> List[CachedStory]:
        """Cached stories, most recently cached first."""
        stories: List[CachedStory] = []
        for story_id in await self._cached_ids():
            story = await self.get_cached_story(story_id)
            if story is not None:
                stories.append(story)
        return stories

    async def is_story_cached(self, story_id: str) -> bool:
        return story_id in await self._cached_ids()

    async def remove_cached_story(self, story_id: str) -> None:
        try:
            await self._store.remove(CacheKeys.offline_story(story_id))
            ids = [value for value in await self._cached_ids() if value != story_id]
            await self._save_ids(ids)
        except CacheStoreError as exc:
            logger.warning("remove_cached_story failed", exc_info=exc)

    async def clear_story_cache(self) -> None:
        try:
            keys = [CacheKeys.offline_story(value) for value in await self._cached_ids()]
            await self._store.multi_remove(keys + [CacheKeys.OFFLINE_STORY_IDS, CacheKeys.OFFLINE_META])
        except CacheStoreError as exc:
            logger.warning("clear_story_cache failed", exc_info=exc)

    async def get_cache_meta(self) -> CacheMeta:
        try:
            raw = await self._store.get(CacheKeys.OFFLINE_META)
            if raw:
                return CacheMeta.model_validate_json(raw)
        except (CacheStoreError, ValueError):
            pass
        ids = await self._cached_ids()
        return CacheMeta(total_stories=len(ids), last_updated="")

    async def mark_audio_cached(self, story_id: str) -> None:
        story = await self.get_cached_story(story_id)
        if story is None:
            return
        updated = story.model_copy(update={"audio_cached": True})
        try:
            await self._store.set(CacheKeys.offline_story(story_id), updated.model_dump_json())
        except CacheStoreError as exc:
            logger.warning("mark_audio_cached failed", exc_info=exc)
