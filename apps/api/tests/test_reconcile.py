import pytest

from storyvoice.reconcile import RecordOrigin, is_local_id, is_migration_candidate, origin_of, reconcile
from storyvoice.schemas import ChildProfile, ParentVoiceCreate, Story


@pytest.mark.parametrize("record_id", [None, "", "local_abc", "tmp_1"])
def test_local_ids(record_id):
    assert is_local_id(record_id)
    assert origin_of(record_id) is RecordOrigin.LOCAL


def test_server_id_is_cloud():
    assert not is_local_id("uuid-1234")
    assert origin_of("uuid-1234") is RecordOrigin.CLOUD
    # Prefix match only.
    assert not is_local_id("my_local_story")


def test_migration_candidates():
    assert is_migration_candidate("local_1", "user-1", "user-1")
    assert is_migration_candidate("uuid-1", None, "user-1")
    assert is_migration_candidate("uuid-1", "someone-else", "user-1")
    assert not is_migration_candidate("uuid-1", "user-1", "user-1")


def test_record_origin_property():
    assert ChildProfile(id="local_9", name="Ava").origin is RecordOrigin.LOCAL
    assert ChildProfile(id="c-1", name="Ava").origin is RecordOrigin.CLOUD
    assert Story(title="No id yet").is_migration_candidate("user-1")


def test_reconcile_prefers_cloud_and_keeps_local_only_keys():
    local = {"id": "local_42", "title": "Dragons", "imageUrl": "file:///dragon.png", "is_favorite": True}
    cloud = Story(id="srv_99", user_id="user-1", title="Dragons", is_favorite=False, created_at="2025-01-01T00:00:00Z")

    merged = reconcile(local, cloud)

    assert merged["id"] == "srv_99"
    assert merged["user_id"] == "user-1"
    assert merged["is_favorite"] is False
    assert merged["imageUrl"] == "file:///dragon.png"
    assert merged["updated_at"] == "2025-01-01T00:00:00Z"


def test_cached_rows_tolerate_nulls_and_extra_keys():
    child = ChildProfile.model_validate({"id": "c-1", "interests": None, "favouriteColour": "green"})
    assert child.interests == []
    assert child.model_extra == {"favouriteColour": "green"}

    story = Story.model_validate({"id": "s-1", "is_favorite": None, "created_at": "2025-02-02T00:00:00Z"})
    assert story.is_favorite is False
    assert story.updated_at == "2025-02-02T00:00:00Z"


def test_voice_completion_follows_paragraph_count():
    assert ParentVoiceCreate(user_id="u", script_paragraphs_recorded=5).is_complete
    assert not ParentVoiceCreate(user_id="u", script_paragraphs_recorded=4, is_complete=True).is_complete
