"""Offline story cache endpoints.

The cache belongs to the device rather than an account, so no session is required;
a malformed or invalid Authorization header is still rejected.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import Services, get_optional_user_session, get_services
from ..offline_cache import CachedStory, CachedStoryInput, CacheMeta

router = APIRouter(
    prefix="/api/v1/offline",
    tags=["offline"],
    dependencies=[Depends(get_optional_user_session)],
)


@router.get("/stories", response_model=List[CachedStory])
async def list_offline_stories(services: Services = Depends(get_services)) -> List[CachedStory]:
    return await services.offline_cache().get_all_cached_stories()


@router.put("/stories", response_model=CachedStory)
async def cache_offline_story(
    payload: CachedStoryInput,
    services: Services = Depends(get_services),
) -> CachedStory:
    entry = await services.offline_cache().cache_story(payload)
    if entry is None:
        raise HTTPException(status_code=500, detail="Offline story cache is unavailable.")
    return entry


@router.delete("/stories/{story_id}")
async def remove_offline_story(story_id: str, services: Services = Depends(get_services)) -> dict:
    await services.offline_cache().remove_cached_story(story_id)
    return {"removed": story_id}


@router.get("/meta", response_model=CacheMeta)
async def offline_cache_meta(services: Services = Depends(get_services)) -> CacheMeta:
    return await services.offline_cache().get_cache_meta()
