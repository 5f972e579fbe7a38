"""Hybrid sync between Supabase and the on-device cache.

Signed-in users get their child profiles, voice profiles, stories and preferences
pulled from Supabase and mirrored into the local cache; screens read the cache
first so they render instantly and keep working offline.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from .best_effort import attempt_best_effort
from .cache_store import CacheKeys, CacheStoreError, LocalCacheStore, decode_records, encode_records
from .gateway import BackendGateway, GatewayError, GatewayResult
from .locks import UserLocks
from .schemas import (
    ChildProfile,
    HybridData,
    ParentVoiceProfile,
    Story,
    SyncState,
    SyncStatus,
    UserPreferences,
)

logger = logging.getLogger(__name__)

NEVER_SYNCED_LABEL = "Never synced"
UNEXPECTED_ERROR_CODE = "UNEXPECTED_ERROR"

CacheEntries = List[Tuple[str, str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_relative_time(iso_string: str, *, now: Optional[datetime] = None) -> str:
    """Human label for how long ago ``iso_string`` was, e.g. "Just now" or "5m ago"."""
    then = _parse_timestamp(iso_string)
    if then is None:
        return NEVER_SYNCED_LABEL
    current = now or _utcnow()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)

    seconds = math.floor((current - then).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if seconds < 10:
        return "Just now"
    if seconds < 60:
        return f"{seconds}s ago"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    return f"{days}d ago"


def _parse_status(value: Optional[str]) -> SyncStatus:
    if not value:
        return SyncStatus.NEVER
    try:
        return SyncStatus(value)
    except ValueError:
        return SyncStatus.NEVER


def _dump(model: Any) -> str:
    return json.dumps(model.model_dump(mode="json"))


def children_entries(children: Sequence[ChildProfile]) -> CacheEntries:
    entries: CacheEntries = [(CacheKeys.CHILDREN, encode_records(children))]
    if children:
        first = children[0]
        entries.append((CacheKeys.PENDING_CHILD, _dump(first)))
        if first.id:
            entries.append((CacheKeys.ACTIVE_CHILD_ID, first.id))
    return entries


def preferences_entries(preferences: UserPreferences) -> CacheEntries:
    entries: CacheEntries = [(CacheKeys.PREFERENCES, _dump(preferences))]
    if preferences.active_voice_id:
        entries.append((CacheKeys.ACTIVE_VOICE_ID, preferences.active_voice_id))
    if preferences.active_child_id:
        entries.append((CacheKeys.ACTIVE_CHILD_ID, preferences.active_child_id))
    if preferences.narrator_type:
        entries.append((CacheKeys.NARRATOR_TYPE, preferences.narrator_type.value))
    return entries


@dataclass
class CloudSnapshot:
    children: GatewayResult[List[ChildProfile]]
    voices: GatewayResult[List[ParentVoiceProfile]]
    stories: GatewayResult[List[Story]]
    preferences: GatewayResult[UserPreferences]

    @property
    def preferences_ok(self) -> bool:
        # No preferences row yet is a normal state for a new account.
        return self.preferences.ok or self.preferences.not_found

    @property
    def complete(self) -> bool:
        return self.children.ok and self.voices.ok and self.stories.ok and self.preferences_ok


class SyncEngine:
    def __init__(
        self,
        gateway: BackendGateway,
        store: LocalCacheStore,
        *,
        locks: Optional[UserLocks] = None,
        story_limit: int = 50,
        fetch_concurrency: int = 4,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._locks = locks or UserLocks()
        self._story_limit = story_limit
        self._fetch_concurrency = fetch_concurrency

    @property
    def is_configured(self) -> bool:
        return self._gateway.is_configured

    async def get_sync_state(self, user_id: Optional[str] = None) -> SyncState:
        """Bookkeeping for the last sync; "syncing" while ``user_id`` (any user when None) refreshes."""
        try:
            last_sync_at = await self._store.get(CacheKeys.LAST_SYNC_AT)
            stored_status = await self._store.get(CacheKeys.SYNC_STATUS)
        except CacheStoreError:
            return SyncState(status=SyncStatus.NEVER, last_sync_at=None, last_sync_label=NEVER_SYNCED_LABEL)

        status = SyncStatus.SYNCING if self._locks.is_refreshing(user_id) else _parse_status(stored_status)
        return SyncState(
            status=status,
            last_sync_at=last_sync_at,
            last_sync_label=format_relative_time(last_sync_at) if last_sync_at else NEVER_SYNCED_LABEL,
        )

    async def _mark_synced(self) -> str:
        now = _utcnow().isoformat()
        await self._store.multi_set(
            [(CacheKeys.LAST_SYNC_AT, now), (CacheKeys.SYNC_STATUS, SyncStatus.SUCCESS.value)]
        )
        return now

    async def _mark_failed(self) -> None:
        await self._store.set(CacheKeys.SYNC_STATUS, SyncStatus.ERROR.value)

    async def _fetch_all(self, user_id: str) -> CloudSnapshot:
        semaphore = asyncio.Semaphore(self._fetch_concurrency)

        async def bounded(label: str, fetch: Callable[[], Awaitable[GatewayResult[Any]]]) -> GatewayResult[Any]:
            async with semaphore:
                try:
                    return await fetch()
                except Exception as exc:
                    logger.exception("fetching %s raised", label)
                    message = str(exc) or exc.__class__.__name__
                    return GatewayResult(error=GatewayError(message=message, code=UNEXPECTED_ERROR_CODE))

        children, voices, stories, preferences = await asyncio.gather(
            bounded("children", lambda: self._gateway.get_children(user_id)),
            bounded("voices", lambda: self._gateway.get_parent_voices(user_id)),
            bounded("stories", lambda: self._gateway.get_stories(user_id, limit=self._story_limit)),
            bounded("preferences", lambda: self._gateway.get_user_preferences(user_id)),
        )
        return CloudSnapshot(children=children, voices=voices, stories=stories, preferences=preferences)

    async def sync_from_cloud(self, user_id: str) -> bool:
        """Pull fresh data from Supabase into the local cache.

        Returns True only when every collection was refreshed. Without a configured
        backend or a user id this is a quiet no-op returning False.
        """
        if not self.is_configured or not user_id:
            return False

        async with self._locks.refresh(user_id):
            try:
                return await self._refresh(user_id)
            except Exception:
                logger.exception("sync_from_cloud failed", extra={"user_id": user_id})
                await attempt_best_effort("mark sync failed", self._mark_failed)
                return False

    async def _refresh(self, user_id: str) -> bool:
        snapshot = await self._fetch_all(user_id)

        if snapshot.children.ok:
            await self._store.multi_set(children_entries(snapshot.children.data or []))
        else:
            logger.warning("child profiles not refreshed: %s", snapshot.children.error)

        if snapshot.voices.ok:
            await self._store.set(CacheKeys.VOICES, encode_records(snapshot.voices.data or []))
        else:
            logger.warning("voice profiles not refreshed: %s", snapshot.voices.error)

        if snapshot.stories.ok:
            stories = (snapshot.stories.data or [])[: self._story_limit]
            await self._store.set(CacheKeys.STORIES, encode_records(stories))
        else:
            logger.warning("stories not refreshed: %s", snapshot.stories.error)

        if snapshot.preferences.ok and snapshot.preferences.data is not None:
            await self._store.multi_set(preferences_entries(snapshot.preferences.data))
        elif not snapshot.preferences_ok:
            logger.warning("preferences not refreshed: %s", snapshot.preferences.error)

        if not snapshot.complete:
            await self._mark_failed()
            return False

        synced_at = await self._mark_synced()
        mirrored = await attempt_best_effort(
            "mirror last_sync_at",
            self._gateway.upsert_user_preferences,
            user_id,
            {"last_sync_at": synced_at},
        )
        if mirrored is not None and not mirrored.ok:
            logger.warning("last_sync_at not mirrored to cloud: %s", mirrored.error)
        logger.info("cloud sync complete", extra={"user_id": user_id, "synced_at": synced_at})
        return True

    async def get_cached_children(self) -> List[ChildProfile]:
        try:
            raw = await self._store.get(CacheKeys.CHILDREN)
            if raw:
                return decode_records(raw, ChildProfile)
            legacy = await self._store.get(CacheKeys.PENDING_CHILD)
            if legacy:
                return [ChildProfile.model_validate_json(legacy)]
            return []
        except (CacheStoreError, ValueError):
            return []

    async def get_cached_voices(self) -> List[ParentVoiceProfile]:
        try:
            return decode_records(await self._store.get(CacheKeys.VOICES), ParentVoiceProfile)
        except (CacheStoreError, ValueError):
            return []

    async def get_cached_stories(self) -> List[Story]:
        try:
            return decode_records(await self._store.get(CacheKeys.STORIES), Story)
        except (CacheStoreError, ValueError):
            return []

    async def get_cached_preferences(self) -> Optional[UserPreferences]:
        try:
            raw = await self._store.get(CacheKeys.PREFERENCES)
            return UserPreferences.model_validate_json(raw) if raw else None
        except (CacheStoreError, ValueError):
            return None

    async def load_hybrid_data(self, user_id: Optional[str]) -> HybridData:
        """Cached data, replaced wholesale by a fresh cloud copy when one can be fetched.

        The result is either entirely cached (``from_cache=True``) or entirely fresh;
        collections are never mixed.
        """
        children, voices, stories, preferences = await asyncio.gather(
            self.get_cached_children(),
            self.get_cached_voices(),
            self.get_cached_stories(),
            self.get_cached_preferences(),
        )
        cached = HybridData(
            children=children,
            voices=voices,
            stories=stories,
            preferences=preferences,
            from_cache=True,
        )
        if not user_id or not self.is_configured:
            return cached

        try:
            async with self._locks.refresh(user_id):
                snapshot = await self._fetch_all(user_id)
                if not snapshot.complete:
                    logger.warning("cloud fetch incomplete, serving cached data", extra={"user_id": user_id})
                    await attempt_best_effort("mark sync failed", self._mark_failed)
                    return cached

                fresh = HybridData(
                    children=snapshot.children.data or [],
                    voices=snapshot.voices.data or [],
                    stories=(snapshot.stories.data or [])[: self._story_limit],
                    # No preferences row yet: keep the cached copy so result and cache agree.
                    preferences=snapshot.preferences.data if snapshot.preferences.data is not None else preferences,
                    from_cache=False,
                )
                entries = children_entries(fresh.children)
                entries.append((CacheKeys.VOICES, encode_records(fresh.voices)))
                entries.append((CacheKeys.STORIES, encode_records(fresh.stories)))
                if snapshot.preferences.ok and snapshot.preferences.data is not None:
                    entries.extend(preferences_entries(snapshot.preferences.data))
                entries.append((CacheKeys.LAST_SYNC_AT, _utcnow().isoformat()))
                entries.append((CacheKeys.SYNC_STATUS, SyncStatus.SUCCESS.value))
                await self._store.multi_set(entries)
                return fresh
        except Exception as exc:
            logger.warning("cloud refresh failed, serving cached data", exc_info=exc)
            await attempt_best_effort("mark sync failed", self._mark_failed)
            return cached

    async def clear_sync_cache(self) -> None:
        """Drop every sync cache key. Called on sign-out; safe to repeat."""
        try:
            await self._store.multi_remove(CacheKeys.SYNC_KEYS)
        except CacheStoreError as exc:
            logger.warning("clear_sync_cache failed", exc_info=exc)
