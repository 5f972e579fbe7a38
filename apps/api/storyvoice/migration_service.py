"""Migration of device-only records into Supabase.

Records created before the user had an account (or under another account) live
only in the local cache: the pending child profile, the local story list and the
cached voice profiles. Once the user signs in they are uploaded, the cached
copies are rewritten with their cloud ids, and a per-user flag
(``migration_complete_<userId>``) stops the scan from running again.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .best_effort import attempt_best_effort
from .cache_store import CacheKeys, CacheStoreError, LocalCacheStore, decode_records
from .config import MigrationRetryPolicy
from .gateway import BackendGateway, GatewayError
from .locks import UserLocks
from .reconcile import is_local_id, reconcile
from .schemas import (
    CachedRecord,
    ChildProfile,
    ChildProfileCreate,
    LocalDataSummary,
    MigrationResult,
    ParentVoiceCreate,
    ParentVoiceProfile,
    Story,
    StoryCreate,
    VoiceType,
)
from .sync_service import SyncEngine

logger = logging.getLogger(__name__)

DEFAULT_CHILD_NAME = "My Child"
DEFAULT_STORY_TITLE = "Untitled Story"
BACKEND_UNAVAILABLE_ERROR = "Supabase is not available"
MISSING_USER_ERROR = "A signed-in user is required"


def _describe(error: Optional[GatewayError]) -> str:
    return error.message if error and error.message else "unknown error"


def _child_link(
    new_child_id: Optional[str],
    local_child_id: Optional[str],
    migrated_child_ids: Dict[str, str],
) -> Optional[str]:
    """Foreign key for a migrated story/voice.

    The child created in this run wins; otherwise a local child id resolves through
    the ids recorded when that child was migrated earlier.
    """
    if new_child_id:
        return new_child_id
    if local_child_id and local_child_id in migrated_child_ids:
        return migrated_child_ids[local_child_id]
    if local_child_id and not is_local_id(local_child_id):
        return local_child_id
    return None


def _replace_entry(
    entries: List[Any],
    local: CachedRecord,
    cloud: CachedRecord,
    *,
    fallback_field: str,
) -> bool:
    """Rewrite the cached copy of ``local`` in place with its cloud record.

    Matched by old id; records that never had an id are matched by ``fallback_field``
    among the entries that still have none.
    """
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        if local.id:
            matched = entry.get("id") == local.id
        else:
            matched = not entry.get("id") and entry.get(fallback_field) == getattr(local, fallback_field)
        if matched:
            entries[index] = reconcile(entry, cloud)
            return True
    return False


class MigrationEngine:
    def __init__(
        self,
        gateway: BackendGateway,
        store: LocalCacheStore,
        sync: SyncEngine,
        *,
        locks: Optional[UserLocks] = None,
        retry_policy: MigrationRetryPolicy = MigrationRetryPolicy.GIVE_UP_AFTER_FIRST_ATTEMPT,
        story_limit: int = 50,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._sync = sync
        self._locks = locks or UserLocks()
        self._retry_policy = retry_policy
        self._story_limit = story_limit

    async def is_migration_complete(self, user_id: str) -> bool:
        try:
            return await self._store.get(CacheKeys.migration_complete(user_id)) is not None
        except CacheStoreError:
            return False

    async def get_migration_timestamp(self) -> Optional[str]:
        """ISO timestamp of the last completed migration, or None."""
        try:
            return await self._store.get(CacheKeys.MIGRATION_COMPLETED_AT)
        except CacheStoreError:
            return None

    async def _mark_complete(self, user_id: str) -> str:
        now = datetime.now(timezone.utc).isoformat()
        await self._store.multi_set(
            [
                (CacheKeys.migration_complete(user_id), "true"),
                (CacheKeys.MIGRATION_COMPLETED_AT, now),
            ]
        )
        return now

    async def _read_cached_list(self, key: str) -> List[Any]:
        try:
            raw = await self._store.get(key)
            items = json.loads(raw) if raw else []
        except (CacheStoreError, ValueError):
            return []
        return items if isinstance(items, list) else []

    async def _read_migrated_child_ids(self, user_id: str) -> Dict[str, str]:
        try:
            raw = await self._store.get(CacheKeys.migrated_child_ids(user_id))
            mapping = json.loads(raw) if raw else {}
        except (CacheStoreError, ValueError):
            return {}
        if not isinstance(mapping, dict):
            return {}
        return {str(key): str(value) for key, value in mapping.items() if key and value}

    async def detect_local_data(self, user_id: str) -> LocalDataSummary:
        """Scan the cache for records that still need uploading.

        Returns the empty summary once migration is done for this user, when Supabase
        is not configured, or when the cache cannot be read.
        """
        if not user_id or not self._gateway.is_configured:
            return LocalDataSummary()
        if await self.is_migration_complete(user_id):
            return LocalDataSummary()

        try:
            child_raw = await self._store.get(CacheKeys.PENDING_CHILD)
            stories_raw = await self._store.get(CacheKeys.STORIES)
            voices_raw = await self._store.get(CacheKeys.VOICES)

            local_children: List[ChildProfile] = []
            if child_raw:
                child = ChildProfile.model_validate_json(child_raw)
                if child.is_migration_candidate(user_id):
                    local_children.append(child)
            local_stories = [
                story for story in decode_records(stories_raw, Story) if story.is_migration_candidate(user_id)
            ]
            local_voices = [
                voice
                for voice in decode_records(voices_raw, ParentVoiceProfile)
                if voice.is_migration_candidate(user_id)
            ]
        except (CacheStoreError, ValueError) as exc:
            logger.warning("local data scan failed", exc_info=exc)
            return LocalDataSummary()

        return LocalDataSummary(
            child_count=len(local_children),
            story_count=len(local_stories),
            voice_count=len(local_voices),
            has_local_data=bool(local_children or local_stories or local_voices),
            local_children=local_children,
            local_stories=local_stories,
            local_voices=local_voices,
        )

    async def migrate_local_data_to_cloud(self, user_id: str, summary: LocalDataSummary) -> MigrationResult:
        """Upload every record in ``summary``; one failure never stops the others."""
        if not self._gateway.is_configured:
            return MigrationResult(success=False, errors=[BACKEND_UNAVAILABLE_ERROR])
        if not user_id:
            return MigrationResult(success=False, errors=[MISSING_USER_ERROR])

        async with self._locks.hold(user_id):
            if await self.is_migration_complete(user_id):
                return MigrationResult(success=True, marked_complete=True)
            result = await self._migrate(user_id, summary)

        logger.info(
            "local data migration finished",
            extra={
                "user_id": user_id,
                "migrated": result.total_migrated,
                "errors": len(result.errors),
                "marked_complete": result.marked_complete,
            },
        )
        if result.marked_complete:
            # Refresh every cache from the now-authoritative cloud copy.
            await attempt_best_effort("post-migration sync", self._sync.sync_from_cloud, user_id)
        return result

    async def _migrate(self, user_id: str, summary: LocalDataSummary) -> MigrationResult:
        errors: List[str] = []

        migrated_child_ids = await self._read_migrated_child_ids(user_id)
        new_child_id: Optional[str] = None
        migrated_children = 0
        for local_child in summary.local_children:
            try:
                created = await self._gateway.create_child(
                    ChildProfileCreate(
                        user_id=user_id,
                        name=local_child.name or DEFAULT_CHILD_NAME,
                        birthday=local_child.birthday,
                        age=local_child.age,
                        interests=list(local_child.interests),
                        life_notes=local_child.life_notes,
                    )
                )
            except Exception as exc:
                logger.warning("child migration raised", exc_info=exc)
                errors.append(f"Child migration failed: {exc}")
                continue
            if not created.ok or created.data is None:
                errors.append(f"Child: {_describe(created.error)}")
                continue

            saved = created.data
            new_child_id = saved.id
            migrated_children += 1
            entries = [(CacheKeys.PENDING_CHILD, json.dumps(saved.model_dump(mode="json")))]
            if saved.id:
                entries.append((CacheKeys.ACTIVE_CHILD_ID, saved.id))
                if local_child.id:
                    migrated_child_ids[local_child.id] = saved.id
                    entries.append((CacheKeys.migrated_child_ids(user_id), json.dumps(migrated_child_ids)))
            await attempt_best_effort("cache migrated child", self._store.multi_set, entries)

        cached_stories = await self._read_cached_list(CacheKeys.STORIES)
        migrated_stories = 0
        for local_story in summary.local_stories:
            legacy: Dict[str, Any] = local_story.model_extra or {}
            try:
                created_story = await self._gateway.create_story(
                    StoryCreate(
                        user_id=user_id,
                        child_id=_child_link(new_child_id, local_story.child_id, migrated_child_ids),
                        title=local_story.title or DEFAULT_STORY_TITLE,
                        content=local_story.content,
                        image_url=local_story.image_url or legacy.get("imageUrl"),
                        theme=local_story.theme,
                        is_favorite=local_story.is_favorite,
                    )
                )
            except Exception as exc:
                logger.warning("story migration raised", exc_info=exc)
                errors.append(f"Story migration failed: {exc}")
                continue
            if not created_story.ok or created_story.data is None:
                errors.append(f'Story "{local_story.title or "?"}": {_describe(created_story.error)}')
                continue

            _replace_entry(cached_stories, local_story, created_story.data, fallback_field="title")
            migrated_stories += 1

        if migrated_stories:
            await attempt_best_effort(
                "rewrite cached stories",
                self._store.set,
                CacheKeys.STORIES,
                json.dumps(cached_stories[: self._story_limit]),
            )

        # Metadata only: recordings stay where recording_url / recording_labels point.
        cached_voices = await self._read_cached_list(CacheKeys.VOICES)
        migrated_voices = 0
        for local_voice in summary.local_voices:
            try:
                created_voice = await self._gateway.create_parent_voice(
                    ParentVoiceCreate(
                        user_id=user_id,
                        child_id=_child_link(new_child_id, local_voice.child_id, migrated_child_ids),
                        voice_type=local_voice.voice_type or VoiceType.CUSTOM,
                        voice_name=local_voice.voice_name,
                        recording_url=local_voice.recording_url,
                        duration_seconds=local_voice.duration_seconds,
                        script_paragraphs_recorded=local_voice.script_paragraphs_recorded,
                        is_complete=local_voice.is_complete,
                        recording_labels=dict(local_voice.recording_labels),
                    )
                )
            except Exception as exc:
                logger.warning("voice migration raised", exc_info=exc)
                errors.append(f"Voice migration failed: {exc}")
                continue
            if not created_voice.ok or created_voice.data is None:
                errors.append(f'Voice "{local_voice.voice_name or "?"}": {_describe(created_voice.error)}')
                continue

            _replace_entry(cached_voices, local_voice, created_voice.data, fallback_field="voice_name")
            migrated_voices += 1

        if migrated_voices:
            await attempt_best_effort(
                "rewrite cached voices",
                self._store.set,
                CacheKeys.VOICES,
                json.dumps(cached_voices),
            )

        total_migrated = migrated_children + migrated_stories + migrated_voices
        if self._retry_policy is MigrationRetryPolicy.RETRY_FAILED_ONLY:
            should_mark = not errors
        else:
            should_mark = not errors or total_migrated > 0

        marked_complete = False
        if should_mark:
            marked_at = await attempt_best_effort("mark migration complete", self._mark_complete, user_id)
            marked_complete = marked_at is not None

        return MigrationResult(
            success=not errors,
            migrated_children=migrated_children,
            migrated_stories=migrated_stories,
            migrated_voices=migrated_voices,
            total_migrated=total_migrated,
            errors=errors,
            marked_complete=marked_complete,
        )
