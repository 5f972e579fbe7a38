"""Service wiring for the HTTP layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Depends, Header

from .cache_store import LocalCacheStore
from .config import SyncConfig, load_config
from .gateway import BackendGateway
from .locks import UserLocks
from .migration_service import MigrationEngine
from .offline_cache import OfflineStoryCache
from .supabase import build_client, parse_bearer_token, parse_user_id, verify_access_token
from .sync_service import SyncEngine

GatewayFactory = Callable[[Optional[str]], BackendGateway]


@dataclass
class Services:
    """Process-wide pieces (config, cache file, user locks) plus per-token engine factories.

    Engines are cheap and built per request so the gateway talks to Supabase with
    the caller's access token, which is what row-level security checks.
    """

    config: SyncConfig
    store: LocalCacheStore
    locks: UserLocks = field(default_factory=UserLocks)
    gateway_factory: Optional[GatewayFactory] = None

    def gateway(self, access_token: Optional[str] = None) -> BackendGateway:
        if self.gateway_factory is not None:
            return self.gateway_factory(access_token)
        return BackendGateway(build_client(self.config, access_token))

    def sync_engine(self, access_token: Optional[str] = None) -> SyncEngine:
        return SyncEngine(
            self.gateway(access_token),
            self.store,
            locks=self.locks,
            story_limit=self.config.story_cache_limit,
            fetch_concurrency=self.config.fetch_concurrency,
        )

    def migration_engine(self, access_token: Optional[str] = None) -> MigrationEngine:
        gateway = self.gateway(access_token)
        sync = SyncEngine(
            gateway,
            self.store,
            locks=self.locks,
            story_limit=self.config.story_cache_limit,
            fetch_concurrency=self.config.fetch_concurrency,
        )
        return MigrationEngine(
            gateway,
            self.store,
            sync,
            locks=self.locks,
            retry_policy=self.config.migration_retry_policy,
            story_limit=self.config.story_cache_limit,
        )

    def offline_cache(self) -> OfflineStoryCache:
        return OfflineStoryCache(self.store, limit=self.config.offline_story_limit)


def build_services(config: SyncConfig) -> Services:
    return Services(config=config, store=LocalCacheStore(config.resolved_cache_path))


@lru_cache
def get_services() -> Services:
    return build_services(load_config())


@dataclass
class UserSession:
    user_id: str
    access_token: str


async def get_user_session(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> UserSession:
    token = parse_bearer_token(authorization)
    payload = await verify_access_token(token, services.config)
    return UserSession(user_id=parse_user_id(payload.get("sub")), access_token=token)


async def get_optional_user_session(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> Optional[UserSession]:
    if not authorization:
        return None
    return await get_user_session(authorization, services)
