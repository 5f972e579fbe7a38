"""Pydantic schemas shared across the sync layer."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .reconcile import RecordOrigin, is_migration_candidate, origin_of

# Number of paragraphs in the parent voice recording script.
SCRIPT_PARAGRAPH_COUNT = 5


class VoiceType(str, Enum):
    MOM = "mom"
    DAD = "dad"
    CUSTOM = "custom"


class SyncStatus(str, Enum):
    NEVER = "never"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class CachedRecord(BaseModel):
    """Base for entity rows as they live in Supabase and in the device cache.

    Cached copies can be partial or carry legacy keys, so everything is optional
    and unknown keys are preserved.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def origin(self) -> RecordOrigin:
        return origin_of(self.id)

    def is_migration_candidate(self, user_id: str) -> bool:
        return is_migration_candidate(self.id, self.user_id, user_id)


class ChildProfile(CachedRecord):
    name: Optional[str] = None
    birthday: Optional[str] = None
    age: Optional[int] = None
    interests: List[str] = Field(default_factory=list)
    life_notes: Optional[str] = None

    @field_validator("interests", mode="before")
    @classmethod
    def _interests_default(cls, value: Any) -> Any:
        return [] if value is None else value


class ParentVoiceProfile(CachedRecord):
    child_id: Optional[str] = None
    voice_type: Optional[VoiceType] = None
    voice_name: Optional[str] = None
    recording_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    script_paragraphs_recorded: int = 0
    is_complete: bool = False
    recording_labels: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("script_paragraphs_recorded", mode="before")
    @classmethod
    def _counter_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("is_complete", mode="before")
    @classmethod
    def _complete_default(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("recording_labels", mode="before")
    @classmethod
    def _labels_default(cls, value: Any) -> Any:
        return {} if value is None else value


class Story(CachedRecord):
    child_id: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    image_url: Optional[str] = None
    theme: Optional[str] = None
    is_favorite: bool = False

    @field_validator("is_favorite", mode="before")
    @classmethod
    def _favorite_default(cls, value: Any) -> Any:
        return False if value is None else value

    @model_validator(mode="after")
    def _updated_at_default(self) -> "Story":
        if self.updated_at is None:
            self.updated_at = self.created_at
        return self


class UserPreferences(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: Optional[str] = None
    active_voice_id: Optional[str] = None
    active_child_id: Optional[str] = None
    narrator_type: Optional[VoiceType] = None
    notifications_enabled: bool = True
    last_sync_at: Optional[str] = None
    updated_at: Optional[str] = None


class UserProfile(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class FamilyRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class FamilyGroup(BaseModel):
    id: str
    owner_user_id: str
    invite_code: str
    group_name: str
    created_at: Optional[str] = None


class FamilyMember(BaseModel):
    id: Optional[str] = None
    group_id: str
    user_id: str
    role: FamilyRole
    joined_at: Optional[str] = None


class FamilyGroupDetails(BaseModel):
    group: Optional[FamilyGroup] = None
    members: List[FamilyMember] = Field(default_factory=list)


class ChildProfileCreate(BaseModel):
    user_id: str
    name: str
    birthday: Optional[str] = None
    age: Optional[int] = None
    interests: List[str] = Field(default_factory=list)
    life_notes: Optional[str] = None


class ParentVoiceCreate(BaseModel):
    user_id: str
    child_id: Optional[str] = None
    voice_type: VoiceType = VoiceType.CUSTOM
    voice_name: Optional[str] = None
    recording_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    script_paragraphs_recorded: int = 0
    is_complete: bool = False
    recording_labels: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _complete_matches_counter(self) -> "ParentVoiceCreate":
        self.is_complete = self.script_paragraphs_recorded >= SCRIPT_PARAGRAPH_COUNT
        return self


class StoryCreate(BaseModel):
    user_id: str
    child_id: Optional[str] = None
    title: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    theme: Optional[str] = None
    is_favorite: bool = False


class SyncState(BaseModel):
    status: SyncStatus
    last_sync_at: Optional[str] = None
    last_sync_label: str


class HybridData(BaseModel):
    children: List[ChildProfile] = Field(default_factory=list)
    voices: List[ParentVoiceProfile] = Field(default_factory=list)
    stories: List[Story] = Field(default_factory=list)
    preferences: Optional[UserPreferences] = None
    from_cache: bool


class LocalDataSummary(BaseModel):
    child_count: int = 0
    story_count: int = 0
    voice_count: int = 0
    has_local_data: bool = False
    local_children: List[ChildProfile] = Field(default_factory=list)
    local_stories: List[Story] = Field(default_factory=list)
    local_voices: List[ParentVoiceProfile] = Field(default_factory=list)


class MigrationResult(BaseModel):
    success: bool
    migrated_children: int = 0
    migrated_stories: int = 0
    migrated_voices: int = 0
    total_migrated: int = 0
    errors: List[str] = Field(default_factory=list)
    marked_complete: bool = False
