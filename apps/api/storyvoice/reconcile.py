"""Local vs cloud record reconciliation.

Every cached record has an origin: ``cloud`` once Supabase has assigned it an id,
``local`` while it only exists on the device. The ``local_``/``tmp_`` id prefixes
are just how the local origin is serialised in the cache.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

LOCAL_ID_PREFIXES = ("local_", "tmp_")


class RecordOrigin(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


def is_local_id(record_id: Optional[str]) -> bool:
    if not record_id:
        return True
    return record_id.startswith(LOCAL_ID_PREFIXES)


def origin_of(record_id: Optional[str]) -> RecordOrigin:
    return RecordOrigin.LOCAL if is_local_id(record_id) else RecordOrigin.CLOUD


def is_migration_candidate(
    record_id: Optional[str],
    record_user_id: Optional[str],
    user_id: str,
) -> bool:
    """A record needs migrating if it is local, unowned, or owned by another account."""
    if origin_of(record_id) is RecordOrigin.LOCAL:
        return True
    return not record_user_id or record_user_id != user_id


def reconcile(local: Mapping[str, Any], cloud: BaseModel) -> Dict[str, Any]:
    """Merge a cached record with its authoritative cloud copy.

    Cloud wins on every field it carries; keys only the local copy knows about
    (legacy camelCase fields and the like) are kept.
    """
    return {**local, **cloud.model_dump(mode="json", exclude_none=False)}
