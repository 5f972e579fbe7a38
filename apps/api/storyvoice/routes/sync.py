"""Sync endpoints.

The cache is device-local, so reading state and clearing the cache work without a
session (signed-out devices clear it too). A malformed or invalid Authorization
header is still rejected.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..dependencies import Services, UserSession, get_optional_user_session, get_services, get_user_session
from ..schemas import HybridData, SyncState

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])
logger = logging.getLogger(__name__)


class SyncNowResponse(BaseModel):
    synced: bool
    state: SyncState


@router.get("/state", response_model=SyncState)
async def get_sync_state(
    session: Optional[UserSession] = Depends(get_optional_user_session),
    services: Services = Depends(get_services),
) -> SyncState:
    return await services.sync_engine().get_sync_state(session.user_id if session else None)


@router.post("", response_model=SyncNowResponse)
async def sync_now(
    session: UserSession = Depends(get_user_session),
    services: Services = Depends(get_services),
) -> SyncNowResponse:
    """Settings "Sync Now": refresh every cache from Supabase."""

    engine = services.sync_engine(session.access_token)
    synced = await engine.sync_from_cloud(session.user_id)
    logger.info("sync requested", extra={"user_id": session.user_id, "synced": synced})
    return SyncNowResponse(synced=synced, state=await engine.get_sync_state(session.user_id))


@router.get("/data", response_model=HybridData)
async def load_data(
    session: Optional[UserSession] = Depends(get_optional_user_session),
    services: Services = Depends(get_services),
) -> HybridData:
    if session is None:
        return await services.sync_engine().load_hybrid_data(None)
    engine = services.sync_engine(session.access_token)
    return await engine.load_hybrid_data(session.user_id)


@router.delete("/cache", dependencies=[Depends(get_optional_user_session)])
async def clear_cache(services: Services = Depends(get_services)) -> dict:
    await services.sync_engine().clear_sync_cache()
    return {"cleared": True}
