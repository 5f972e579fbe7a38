import asyncio
import json

import pytest

from storyvoice.cache_store import CacheKeys, decode_records, encode_records
from storyvoice.schemas import ChildProfile, Story

from .sync_helpers import make_store


def test_get_set_remove(tmp_path):
    store = make_store(tmp_path)

    async def scenario():
        assert await store.get("missing") is None
        await store.set("a", "1")
        await store.set("a", "2")
        await store.multi_set([("b", "x"), ("c", "y")])
        values = [await store.get(key) for key in ("a", "b", "c")]
        await store.remove("a")
        await store.multi_remove(["b", "c"])
        after = [await store.get(key) for key in ("a", "b", "c")]
        return values, after

    values, after = asyncio.run(scenario())
    assert values == ["2", "x", "y"]
    assert after == [None, None, None]


def test_values_survive_a_new_store_instance(tmp_path):
    asyncio.run(make_store(tmp_path).set(CacheKeys.SYNC_STATUS, "success"))

    assert asyncio.run(make_store(tmp_path).get(CacheKeys.SYNC_STATUS)) == "success"


def test_empty_batches_are_noops(tmp_path):
    store = make_store(tmp_path)

    asyncio.run(store.multi_set([]))
    asyncio.run(store.multi_remove([]))


def test_decode_records_skips_bad_entries():
    raw = json.dumps([{"id": "c-1", "name": "Ava"}, {"id": "c-2", "age": "old"}, 5, {"name": "Ben"}])

    children = decode_records(raw, ChildProfile)

    assert [child.name for child in children] == ["Ava", "Ben"]


def test_decode_records_edge_inputs():
    assert decode_records(None, Story) == []
    assert decode_records("", Story) == []
    assert decode_records('{"id": "s-1"}', Story) == []
    with pytest.raises(ValueError):
        decode_records("{not json", Story)


def test_encode_records_writes_json_list():
    encoded = encode_records([Story(id="s-1", title="Moon")])

    assert json.loads(encoded)[0]["title"] == "Moon"


def test_migration_flag_key_is_per_user():
    assert CacheKeys.migration_complete("abc") == "migration_complete_abc"
    assert CacheKeys.migration_complete("abc") not in CacheKeys.SYNC_KEYS
