from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_feature_flags
from app.core.config import FeatureFlags
from app.core.db import get_session
from app.models.service import ServicePublic
from app.services.catalog_service import get_service, list_active_services

router = APIRouter(prefix="/services", tags=["services"])


@router.get("", response_model=list[ServicePublic])
async def list_services(
    session: AsyncSession = Depends(get_session),
    flags: FeatureFlags = Depends(get_feature_flags),
) -> list[ServicePublic]:
    services = await list_active_services(session, flags)
    return [ServicePublic.model_validate(s) for s in services]


@router.get("/{service_id}", response_model=ServicePublic)
async def read_service(
    service_id: int,
    session: AsyncSession = Depends(get_session),
) -> ServicePublic:
    return ServicePublic.model_validate(await get_service(session, service_id))
