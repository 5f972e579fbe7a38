"""On-device key/value cache backed by SQLite."""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CacheKeys:
    LAST_SYNC_AT = "sync_last_sync_at"
    SYNC_STATUS = "sync_status"
    CHILDREN = "sync_child_profiles"
    VOICES = "sync_voice_profiles"
    STORIES = "local_stories"
    PREFERENCES = "sync_user_preferences"

    # Single-value pointers kept for older read paths.
    PENDING_CHILD = "pending_child_profile"
    ACTIVE_CHILD_ID = "active_child_id"
    ACTIVE_VOICE_ID = "active_voice_id"
    NARRATOR_TYPE = "selected_voice_type"

    MIGRATION_COMPLETE_PREFIX = "migration_complete_"
    MIGRATION_COMPLETED_AT = "migration_completed_at"
    MIGRATED_CHILD_IDS_PREFIX = "migrated_child_ids_"

    OFFLINE_STORY_PREFIX = "offline_story_"
    OFFLINE_STORY_IDS = "offline_story_ids"
    OFFLINE_META = "offline_cache_meta"

    SYNC_KEYS = (LAST_SYNC_AT, SYNC_STATUS, CHILDREN, VOICES, STORIES, PREFERENCES)

    @classmethod
    def migration_complete(cls, user_id: str) -> str:
        return f"{cls.MIGRATION_COMPLETE_PREFIX}{user_id}"

    @classmethod
    def migrated_child_ids(cls, user_id: str) -> str:
        """Local child id -> cloud child id, for records migrated by this user."""
        return f"{cls.MIGRATED_CHILD_IDS_PREFIX}{user_id}"

    @classmethod
    def offline_story(cls, story_id: str) -> str:
        return f"{cls.OFFLINE_STORY_PREFIX}{story_id}"


class CacheStoreError(Exception):
    """Reading or writing the cache file failed."""


def decode_records(raw: Optional[str], model: Type[ModelT]) -> List[ModelT]:
    """Parse a cached JSON list into models, skipping entries that do not validate.

    Raises ValueError when ``raw`` is not JSON; anything that is not a list decodes to [].
    """
    if not raw:
        return []
    items = json.loads(raw)
    if not isinstance(items, list):
        return []
    records: List[ModelT] = []
    for item in items:
        try:
            records.append(model.model_validate(item))
        except ValidationError:
            logger.debug("Skipping malformed cached %s entry", model.__name__)
    return records


def encode_records(records: Iterable[BaseModel]) -> str:
    return json.dumps([record.model_dump(mode="json") for record in records])


class LocalCacheStore:
    """Async key/value API over a single ``kv_store`` table.

    Every call opens its own connection in a worker thread. Failures surface as
    CacheStoreError; callers treat them as a cache miss.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        with sqlite3.connect(self._path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._path)
        except sqlite3.Error as exc:
            raise CacheStoreError(f"cannot open cache at {self._path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise CacheStoreError(str(exc)) from exc
        finally:
            conn.close()

    def _get(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _set_many(self, pairs: Sequence[Tuple[str, str]]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                [(key, value, now) for key, value in pairs],
            )
            conn.commit()

    def _remove_many(self, keys: Sequence[str]) -> None:
        with self._connection() as conn:
            conn.executemany("DELETE FROM kv_store WHERE key = ?", [(key,) for key in keys])
            conn.commit()

    async def get(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_many, [(key, value)])

    async def multi_set(self, pairs: Sequence[Tuple[str, str]]) -> None:
        if pairs:
            await asyncio.to_thread(self._set_many, list(pairs))

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_many, [key])

    async def multi_remove(self, keys: Sequence[str]) -> None:
        if keys:
            await asyncio.to_thread(self._remove_many, list(keys))
