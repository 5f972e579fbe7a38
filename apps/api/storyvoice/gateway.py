"""Guarded Supabase data access, one group of functions per table.

No call here raises for a missing configuration or a failed request: the outcome
comes back as a ``GatewayResult`` whose ``error`` is set instead of ``data``.
"""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .schemas import (
    ChildProfile,
    ChildProfileCreate,
    FamilyGroup,
    FamilyGroupDetails,
    FamilyMember,
    FamilyRole,
    ParentVoiceCreate,
    ParentVoiceProfile,
    Story,
    StoryCreate,
    UserPreferences,
    UserProfile,
)
from .supabase import SupabaseClient, SupabaseRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

NOT_FOUND_CODE = "PGRST116"
NETWORK_ERROR_CODE = "NETWORK_ERROR"
INVALID_RESPONSE_CODE = "INVALID_RESPONSE"


@dataclass(frozen=True)
class GatewayError:
    message: str
    code: str
    details: str = ""
    hint: str = ""

    @classmethod
    def from_request_error(cls, exc: SupabaseRequestError) -> "GatewayError":
        payload = exc.payload
        return cls(
            message=str(payload.get("message") or exc),
            code=str(payload.get("code") or f"HTTP_{exc.status_code}"),
            details=str(payload.get("details") or ""),
            hint=str(payload.get("hint") or ""),
        )


NOT_CONFIGURED_ERROR = GatewayError(
    message="Supabase is not configured. Please connect Supabase to your project.",
    code="SUPABASE_NOT_CONFIGURED",
    hint="Set SUPABASE_URL and SUPABASE_ANON_KEY in your environment.",
)


@dataclass(frozen=True)
class GatewayResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def not_found(self) -> bool:
        return self.error is not None and self.error.code == NOT_FOUND_CODE


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _one(model: Type[ModelT]) -> Callable[[List[Dict[str, Any]]], Optional[ModelT]]:
    def parse(rows: List[Dict[str, Any]]) -> Optional[ModelT]:
        return model.model_validate(rows[0]) if rows else None

    return parse


def _many(model: Type[ModelT]) -> Callable[[List[Dict[str, Any]]], List[ModelT]]:
    def parse(rows: List[Dict[str, Any]]) -> List[ModelT]:
        return [model.model_validate(row) for row in rows]

    return parse


def _nothing(_: Any) -> None:
    return None


def _invite_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(6))


class BackendGateway:
    """CRUD access to the StoryVoice tables.

    Built without a client, the gateway is "not configured" and every call returns
    ``NOT_CONFIGURED_ERROR`` immediately.
    """

    def __init__(self, client: Optional[SupabaseClient]) -> None:
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def _call(
        self,
        action: str,
        request: Callable[[SupabaseClient], Awaitable[Any]],
        parse: Callable[[Any], Any],
        *,
        expect_row: bool = False,
    ) -> GatewayResult[Any]:
        if self._client is None:
            logger.warning("%s skipped: Supabase not configured.", action)
            return GatewayResult(error=NOT_CONFIGURED_ERROR)
        try:
            raw = await request(self._client)
        except SupabaseRequestError as exc:
            logger.warning("%s failed: %s", action, exc)
            return GatewayResult(error=GatewayError.from_request_error(exc))
        except httpx.HTTPError as exc:
            logger.warning("%s failed: %r", action, exc)
            return GatewayResult(
                error=GatewayError(message=str(exc) or exc.__class__.__name__, code=NETWORK_ERROR_CODE)
            )
        try:
            data = parse(raw)
        except ValidationError as exc:
            logger.warning("%s returned an unexpected row shape", action, exc_info=exc)
            return GatewayResult(
                error=GatewayError(message=f"{action}: unexpected response", code=INVALID_RESPONSE_CODE)
            )
        if expect_row and data is None:
            return GatewayResult(
                error=GatewayError(message=f"{action}: no rows returned", code=NOT_FOUND_CODE)
            )
        return GatewayResult(data=data)

    # User profile (table: users)

    async def upsert_user_profile(
        self, user_id: str, email: str, full_name: Optional[str] = None
    ) -> GatewayResult[UserProfile]:
        payload = {"id": user_id, "email": email, "full_name": full_name, "updated_at": _now()}
        return await self._call(
            "upsert_user_profile",
            lambda client: client.upsert("users", payload, on_conflict="id"),
            _one(UserProfile),
            expect_row=True,
        )

    # Child profiles (table: child_profiles)

    async def create_child(self, data: ChildProfileCreate) -> GatewayResult[ChildProfile]:
        payload = {**data.model_dump(mode="json"), "updated_at": _now()}
        return await self._call(
            "create_child",
            lambda client: client.insert("child_profiles", payload),
            _one(ChildProfile),
            expect_row=True,
        )

    async def update_child(self, child_id: str, data: Dict[str, Any]) -> GatewayResult[ChildProfile]:
        payload = {**data, "updated_at": _now()}
        return await self._call(
            "update_child",
            lambda client: client.update("child_profiles", payload, {"id": f"eq.{child_id}"}),
            _one(ChildProfile),
            expect_row=True,
        )

    async def get_children(self, user_id: str) -> GatewayResult[List[ChildProfile]]:
        params = {"select": "*", "user_id": f"eq.{user_id}", "order": "created_at.asc"}
        return await self._call(
            "get_children",
            lambda client: client.select("child_profiles", params),
            _many(ChildProfile),
        )

    async def delete_child(self, child_id: str) -> GatewayResult[None]:
        return await self._call(
            "delete_child",
            lambda client: client.delete("child_profiles", {"id": f"eq.{child_id}"}),
            _nothing,
        )

    # Voice profiles (table: voice_profiles)

    async def create_parent_voice(self, data: ParentVoiceCreate) -> GatewayResult[ParentVoiceProfile]:
        payload = {**data.model_dump(mode="json"), "updated_at": _now()}
        return await self._call(
            "create_parent_voice",
            lambda client: client.insert("voice_profiles", payload),
            _one(ParentVoiceProfile),
            expect_row=True,
        )

    async def update_parent_voice(
        self, voice_id: str, data: Dict[str, Any]
    ) -> GatewayResult[ParentVoiceProfile]:
        payload = {**data, "updated_at": _now()}
        return await self._call(
            "update_parent_voice",
            lambda client: client.update("voice_profiles", payload, {"id": f"eq.{voice_id}"}),
            _one(ParentVoiceProfile),
            expect_row=True,
        )

    async def get_parent_voices(self, user_id: str) -> GatewayResult[List[ParentVoiceProfile]]:
        params = {"select": "*", "user_id": f"eq.{user_id}", "order": "created_at.asc"}
        return await self._call(
            "get_parent_voices",
            lambda client: client.select("voice_profiles", params),
            _many(ParentVoiceProfile),
        )

    async def delete_parent_voice(self, voice_id: str) -> GatewayResult[None]:
        return await self._call(
            "delete_parent_voice",
            lambda client: client.delete("voice_profiles", {"id": f"eq.{voice_id}"}),
            _nothing,
        )

    # Stories (table: stories)

    async def create_story(self, data: StoryCreate) -> GatewayResult[Story]:
        payload = {**data.model_dump(mode="json"), "updated_at": _now()}
        return await self._call(
            "create_story",
            lambda client: client.insert("stories", payload),
            _one(Story),
            expect_row=True,
        )

    async def get_stories(
        self,
        user_id: str,
        child_id: Optional[str] = None,
        *,
        limit: Optional[int] = None,
    ) -> GatewayResult[List[Story]]:
        """Stories newest first."""
        params: Dict[str, Any] = {"select": "*", "user_id": f"eq.{user_id}", "order": "created_at.desc"}
        if child_id:
            params["child_id"] = f"eq.{child_id}"
        if limit is not None:
            params["limit"] = str(limit)
        return await self._call(
            "get_stories",
            lambda client: client.select("stories", params),
            _many(Story),
        )

    async def update_story(self, story_id: str, data: Dict[str, Any]) -> GatewayResult[Story]:
        payload = {**data, "updated_at": _now()}
        return await self._call(
            "update_story",
            lambda client: client.update("stories", payload, {"id": f"eq.{story_id}"}),
            _one(Story),
            expect_row=True,
        )

    async def toggle_story_favorite(self, story_id: str, is_favorite: bool) -> GatewayResult[Story]:
        return await self.update_story(story_id, {"is_favorite": is_favorite})

    async def delete_story(self, story_id: str) -> GatewayResult[None]:
        return await self._call(
            "delete_story",
            lambda client: client.delete("stories", {"id": f"eq.{story_id}"}),
            _nothing,
        )

    # User preferences (table: user_preferences)

    async def upsert_user_preferences(
        self, user_id: str, prefs: Dict[str, Any]
    ) -> GatewayResult[UserPreferences]:
        payload = {"user_id": user_id, **prefs, "updated_at": _now()}
        return await self._call(
            "upsert_user_preferences",
            lambda client: client.upsert("user_preferences", payload, on_conflict="user_id"),
            _one(UserPreferences),
            expect_row=True,
        )

    async def get_user_preferences(self, user_id: str) -> GatewayResult[UserPreferences]:
        """A user without a preferences row yet gets a not-found error (``result.not_found``)."""
        params = {"select": "*", "user_id": f"eq.{user_id}", "limit": "1"}
        return await self._call(
            "get_user_preferences",
            lambda client: client.select("user_preferences", params),
            _one(UserPreferences),
            expect_row=True,
        )

    # Family sharing (tables: family_groups, family_members)

    async def create_family_group(self, user_id: str, group_name: str) -> GatewayResult[FamilyGroup]:
        payload = {"owner_user_id": user_id, "invite_code": _invite_code(), "group_name": group_name}
        result = await self._call(
            "create_family_group",
            lambda client: client.insert("family_groups", payload),
            _one(FamilyGroup),
            expect_row=True,
        )
        if result.ok and result.data is not None:
            membership = await self._call(
                "add_family_owner",
                lambda client: client.insert(
                    "family_members",
                    {"group_id": result.data.id, "user_id": user_id, "role": FamilyRole.OWNER.value},
                ),
                _nothing,
            )
            if not membership.ok:
                logger.warning("family group %s created without owner membership", result.data.id)
        return result

    async def join_family_group(self, user_id: str, invite_code: str) -> GatewayResult[FamilyGroup]:
        params = {"select": "*", "invite_code": f"eq.{invite_code.strip().upper()}", "limit": "1"}
        found = await self._call(
            "find_family_group",
            lambda client: client.select("family_groups", params),
            _one(FamilyGroup),
            expect_row=True,
        )
        if not found.ok or found.data is None:
            return found
        group = found.data
        joined = await self._call(
            "join_family_group",
            lambda client: client.upsert(
                "family_members",
                {"group_id": group.id, "user_id": user_id, "role": FamilyRole.MEMBER.value},
                on_conflict="group_id,user_id",
            ),
            _nothing,
        )
        if not joined.ok:
            return GatewayResult(error=joined.error)
        return GatewayResult(data=group)

    async def get_family_group(self, user_id: str) -> GatewayResult[FamilyGroupDetails]:
        membership = await self._call(
            "get_family_membership",
            lambda client: client.select(
                "family_members", {"select": "group_id", "user_id": f"eq.{user_id}", "limit": "1"}
            ),
            lambda rows: rows[0].get("group_id") if rows else None,
        )
        if not membership.ok:
            return GatewayResult(error=membership.error)
        if membership.data is None:
            return GatewayResult(data=FamilyGroupDetails())
        group_id = membership.data
        group = await self._call(
            "get_family_group",
            lambda client: client.select("family_groups", {"select": "*", "id": f"eq.{group_id}"}),
            _one(FamilyGroup),
        )
        if not group.ok:
            return GatewayResult(error=group.error)
        members = await self._call(
            "get_family_members",
            lambda client: client.select("family_members", {"select": "*", "group_id": f"eq.{group_id}"}),
            _many(FamilyMember),
        )
        if not members.ok:
            return GatewayResult(error=members.error)
        return GatewayResult(data=FamilyGroupDetails(group=group.data, members=members.data or []))

    async def leave_family_group(self, user_id: str, group_id: str) -> GatewayResult[None]:
        return await self._call(
            "leave_family_group",
            lambda client: client.delete(
                "family_members", {"user_id": f"eq.{user_id}", "group_id": f"eq.{group_id}"}
            ),
            _nothing,
        )

    # Account deletion

    async def delete_all_user_data(self, user_id: str) -> GatewayResult[None]:
        """Delete every row owned by the user, children of foreign keys first."""
        steps = [
            ("user_preferences", {"user_id": f"eq.{user_id}"}),
            ("stories", {"user_id": f"eq.{user_id}"}),
            ("voice_profiles", {"user_id": f"eq.{user_id}"}),
            ("child_profiles", {"user_id": f"eq.{user_id}"}),
            ("users", {"id": f"eq.{user_id}"}),
        ]
        for table, params in steps:
            result = await self._call(
                f"delete_all_user_data[{table}]",
                lambda client, table=table, params=params: client.delete(table, params),
                _nothing,
            )
            if not result.ok:
                return result
        return GatewayResult()
