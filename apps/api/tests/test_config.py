import json

from storyvoice.config import MigrationRetryPolicy, load_config
from storyvoice.supabase import build_client

_ENV_NAMES = [
    "SUPABASE_URL",
    "EXPO_PUBLIC_SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "EXPO_PUBLIC_SUPABASE_ANON_KEY",
    "STORYVOICE_CACHE_PATH",
    "STORYVOICE_MIGRATION_RETRY_POLICY",
]


def _clear_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_missing_backend_is_not_an_error(tmp_path, monkeypatch):
    _clear_env(monkeypatch)

    config = load_config(tmp_path / "absent.json")

    assert not config.is_backend_configured
    assert build_client(config) is None
    assert config.migration_retry_policy is MigrationRetryPolicy.GIVE_UP_AFTER_FIRST_ATTEMPT


def test_environment_overrides_file(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    config_file = tmp_path / "config.json"
    config_file.write_text(
        json.dumps({"supabase_url": "https://file.supabase.co/", "supabase_anon_key": "file-key", "story_cache_limit": 10})
    )
    monkeypatch.setenv("EXPO_PUBLIC_SUPABASE_URL", "https://env.supabase.co/")
    monkeypatch.setenv("STORYVOICE_MIGRATION_RETRY_POLICY", "retry_failed_only")
    monkeypatch.setenv("STORYVOICE_CACHE_PATH", str(tmp_path / "cache.db"))

    config = load_config(config_file)

    assert config.base_url == "https://env.supabase.co"
    assert config.supabase_anon_key == "file-key"
    assert config.story_cache_limit == 10
    assert config.migration_retry_policy is MigrationRetryPolicy.RETRY_FAILED_ONLY
    assert config.resolved_cache_path == tmp_path / "cache.db"
    assert config.resolved_jwks_url == "https://env.supabase.co/auth/v1/keys"

    client = build_client(config, "user-token")
    assert client.access_token == "user-token"
    assert client.anon_key == "file-key"
