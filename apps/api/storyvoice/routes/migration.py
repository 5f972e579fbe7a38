from typing import Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from ..dependencies import Services, UserSession, get_services, get_user_session
from ..schemas import LocalDataSummary, MigrationResult

router = APIRouter(prefix="/api/v1/migration", tags=["migration"])


class MigrationStatus(BaseModel):
    complete: bool
    completed_at: Optional[str] = None


@router.get("/local-data", response_model=LocalDataSummary)
async def detect_local_data(
    session: UserSession = Depends(get_user_session),
    services: Services = Depends(get_services),
) -> LocalDataSummary:
    return await services.migration_engine(session.access_token).detect_local_data(session.user_id)


@router.post("", response_model=MigrationResult)
async def migrate_local_data(
    summary: Optional[LocalDataSummary] = Body(None),
    session: UserSession = Depends(get_user_session),
    services: Services = Depends(get_services),
) -> MigrationResult:
    """Upload device-only records. Without a body the cache is scanned first."""

    engine = services.migration_engine(session.access_token)
    if summary is None:
        summary = await engine.detect_local_data(session.user_id)
    return await engine.migrate_local_data_to_cloud(session.user_id, summary)


@router.get("/status", response_model=MigrationStatus)
async def migration_status(
    session: UserSession = Depends(get_user_session),
    services: Services = Depends(get_services),
) -> MigrationStatus:
    engine = services.migration_engine(session.access_token)
    return MigrationStatus(
        complete=await engine.is_migration_complete(session.user_id),
        completed_at=await engine.get_migration_timestamp(),
    )
