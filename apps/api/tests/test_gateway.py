import asyncio
import json

import httpx

from storyvoice.gateway import NOT_CONFIGURED_ERROR, BackendGateway
from storyvoice.schemas import ChildProfileCreate, ParentVoiceCreate
from storyvoice.supabase import SupabaseClient


class FakePostgrest:
    """Routes requests by (method, table) to queued responses and records them."""

    def __init__(self, responses=None):
        self.responses = {key: list(value) for key, value in (responses or {}).items()}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        table = request.url.path.rsplit("/", 1)[-1]
        self.requests.append(request)
        queue = self.responses.get((request.method, table))
        if not queue:
            return httpx.Response(200, json=[])
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def params(self, index=-1):
        return dict(self.requests[index].url.params)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)


def _gateway(fake: FakePostgrest) -> BackendGateway:
    client = SupabaseClient(
        base_url="http://supabase.test",
        anon_key="anon-key",
        access_token="user-token",
        transport=httpx.MockTransport(fake),
    )
    return BackendGateway(client)


def test_unconfigured_gateway_returns_sentinel_error():
    gateway = BackendGateway(None)

    result = asyncio.run(gateway.get_children("user-1"))

    assert not gateway.is_configured
    assert result.data is None
    assert result.error is NOT_CONFIGURED_ERROR
    assert result.error.code == "SUPABASE_NOT_CONFIGURED"


def test_get_children_oldest_first_scoped_to_user():
    fake = FakePostgrest(
        {("GET", "child_profiles"): [httpx.Response(200, json=[{"id": "c-1", "name": "Ava", "interests": None}])]}
    )

    result = asyncio.run(_gateway(fake).get_children("user-1"))

    assert result.ok
    assert result.data[0].name == "Ava"
    assert result.data[0].interests == []
    params = fake.params()
    assert params["order"] == "created_at.asc"
    assert params["user_id"] == "eq.user-1"
    assert fake.requests[0].headers["Authorization"] == "Bearer user-token"
    assert fake.requests[0].headers["apikey"] == "anon-key"


def test_get_stories_newest_first_with_filters():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).get_stories("user-1", "child-1", limit=50))

    assert result.ok and result.data == []
    params = fake.params()
    assert params["order"] == "created_at.desc"
    assert params["child_id"] == "eq.child-1"
    assert params["limit"] == "50"


def test_missing_preferences_row_is_not_found():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).get_user_preferences("user-1"))

    assert not result.ok
    assert result.not_found
    assert result.error.code == "PGRST116"


def test_postgrest_error_payload_is_carried():
    fake = FakePostgrest(
        {
            ("POST", "child_profiles"): [
                httpx.Response(
                    409,
                    json={"code": "23505", "message": "duplicate key", "details": "id", "hint": "use upsert"},
                )
            ]
        }
    )

    result = asyncio.run(_gateway(fake).create_child(ChildProfileCreate(user_id="user-1", name="Ava")))

    assert result.error.code == "23505"
    assert result.error.message == "duplicate key"
    assert result.error.details == "id"
    assert result.error.hint == "use upsert"


def test_plain_text_error_gets_http_code():
    fake = FakePostgrest({("DELETE", "stories"): [httpx.Response(500, text="upstream exploded")]})

    result = asyncio.run(_gateway(fake).delete_story("s-1"))

    assert result.error.code == "HTTP_500"
    assert "upstream exploded" in result.error.message


def test_transport_failure_maps_to_network_error():
    fake = FakePostgrest(
        {("GET", "voice_profiles"): [httpx.ConnectError("connection refused")]}
    )

    result = asyncio.run(_gateway(fake).get_parent_voices("user-1"))

    assert result.error.code == "NETWORK_ERROR"


def test_unexpected_row_shape_is_invalid_response():
    fake = FakePostgrest({("GET", "child_profiles"): [httpx.Response(200, json=[{"id": "c-1", "age": "old"}])]})

    result = asyncio.run(_gateway(fake).get_children("user-1"))

    assert result.error.code == "INVALID_RESPONSE"


def test_create_voice_sends_representation_and_timestamps():
    fake = FakePostgrest(
        {
            ("POST", "voice_profiles"): [
                httpx.Response(201, json=[{"id": "v-1", "voice_type": "mom", "script_paragraphs_recorded": 5}])
            ]
        }
    )
    data = ParentVoiceCreate(user_id="user-1", voice_type="mom", script_paragraphs_recorded=5)

    result = asyncio.run(_gateway(fake).create_parent_voice(data))

    assert result.data.id == "v-1"
    body = fake.body()
    assert body["is_complete"] is True
    assert body["updated_at"]
    assert fake.requests[0].headers["Prefer"] == "return=representation"


def test_upsert_preferences_merges_on_user_id():
    fake = FakePostgrest(
        {("POST", "user_preferences"): [httpx.Response(201, json=[{"user_id": "user-1", "last_sync_at": "x"}])]}
    )

    result = asyncio.run(_gateway(fake).upsert_user_preferences("user-1", {"last_sync_at": "x"}))

    assert result.data.last_sync_at == "x"
    assert fake.params()["on_conflict"] == "user_id"
    assert "merge-duplicates" in fake.requests[0].headers["Prefer"]


def test_toggle_favorite_patches_story():
    fake = FakePostgrest({("PATCH", "stories"): [httpx.Response(200, json=[{"id": "s-1", "is_favorite": True}])]})

    result = asyncio.run(_gateway(fake).toggle_story_favorite("s-1", True))

    assert result.data.is_favorite is True
    assert fake.params()["id"] == "eq.s-1"
    assert fake.body()["is_favorite"] is True


def test_delete_all_user_data_removes_dependents_first():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).delete_all_user_data("user-1"))

    assert result.ok
    tables = [request.url.path.rsplit("/", 1)[-1] for request in fake.requests]
    assert tables == ["user_preferences", "stories", "voice_profiles", "child_profiles", "users"]
    assert dict(fake.requests[-1].url.params) == {"id": "eq.user-1"}


def test_delete_all_user_data_stops_at_first_failure():
    fake = FakePostgrest({("DELETE", "stories"): [httpx.Response(403, json={"message": "denied", "code": "42501"})]})

    result = asyncio.run(_gateway(fake).delete_all_user_data("user-1"))

    assert result.error.code == "42501"
    assert len(fake.requests) == 2


def test_create_family_group_adds_owner_membership():
    fake = FakePostgrest(
        {
            ("POST", "family_groups"): [
                httpx.Response(
                    201,
                    json=[{"id": "g-1", "owner_user_id": "user-1", "invite_code": "ABC123", "group_name": "Home"}],
                )
            ]
        }
    )

    result = asyncio.run(_gateway(fake).create_family_group("user-1", "Home"))

    assert result.data.id == "g-1"
    invite_code = fake.body(0)["invite_code"]
    assert len(invite_code) == 6 and invite_code.isalnum() and invite_code.upper() == invite_code
    assert fake.body(1) == {"group_id": "g-1", "user_id": "user-1", "role": "owner"}


def test_join_family_group_with_unknown_code():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).join_family_group("user-1", " abc123 "))

    assert result.not_found
    assert fake.params()["invite_code"] == "eq.ABC123"


def test_get_family_group_without_membership():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).get_family_group("user-1"))

    assert result.ok
    assert result.data.group is None
    assert result.data.members == []


def test_upsert_user_profile_keys_on_id():
    fake = FakePostgrest(
        {("POST", "users"): [httpx.Response(201, json=[{"id": "user-1", "email": "a@example.com", "full_name": "Ana"}])]}
    )

    result = asyncio.run(_gateway(fake).upsert_user_profile("user-1", "a@example.com", "Ana"))

    assert result.data.full_name == "Ana"
    assert fake.params()["on_conflict"] == "id"
    assert fake.body()["email"] == "a@example.com"


def test_leave_family_group_filters_by_user_and_group():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).leave_family_group("user-1", "g-1"))

    assert result.ok
    assert fake.requests[0].method == "DELETE"
    assert fake.params() == {"user_id": "eq.user-1", "group_id": "eq.g-1"}


def test_read_timeout_maps_to_network_error():
    fake = FakePostgrest({("GET", "stories"): [httpx.ReadTimeout("timed out")]})

    result = asyncio.run(_gateway(fake).get_stories("user-1"))

    assert result.data is None
    assert result.error.code == "NETWORK_ERROR"
    assert result.error.message == "timed out"


def test_update_child_patches_by_id_with_timestamp():
    fake = FakePostgrest(
        {("PATCH", "child_profiles"): [httpx.Response(200, json=[{"id": "c-1", "name": "Ava", "age": 6}])]}
    )

    result = asyncio.run(_gateway(fake).update_child("c-1", {"age": 6}))

    assert result.data.age == 6
    assert fake.params() == {"id": "eq.c-1"}
    body = fake.body()
    assert body["age"] == 6
    assert body["updated_at"]


def test_update_child_without_matching_row():
    fake = FakePostgrest()

    result = asyncio.run(_gateway(fake).update_child("missing", {"age": 6}))

    assert not result.ok
    assert result.not_found


def test_update_parent_voice_patches_by_id_with_timestamp():
    fake = FakePostgrest(
        {("PATCH", "voice_profiles"): [httpx.Response(200, json=[{"id": "v-1", "voice_name": "Grandma"}])]}
    )

    result = asyncio.run(_gateway(fake).update_parent_voice("v-1", {"voice_name": "Grandma"}))

    assert result.data.voice_name == "Grandma"
    assert fake.params() == {"id": "eq.v-1"}
    assert fake.body()["updated_at"]


def test_deletes_filter_by_record_id():
    fake = FakePostgrest({("DELETE", "stories"): [httpx.Response(204)]})
    gateway = _gateway(fake)

    async def scenario():
        return [
            await gateway.delete_child("c-1"),
            await gateway.delete_parent_voice("v-1"),
            await gateway.delete_story("s-1"),
        ]

    results = asyncio.run(scenario())

    assert all(result.ok and result.data is None for result in results)
    assert [(request.method, request.url.path.rsplit("/", 1)[-1]) for request in fake.requests] == [
        ("DELETE", "child_profiles"),
        ("DELETE", "voice_profiles"),
        ("DELETE", "stories"),
    ]
    assert [dict(request.url.params) for request in fake.requests] == [
        {"id": "eq.c-1"},
        {"id": "eq.v-1"},
        {"id": "eq.s-1"},
    ]
