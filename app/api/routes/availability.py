from datetime import UTC, date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.schemas.appointment import AvailableSlotsResponse
from app.core.db import get_session
from app.models.availability import AvailabilityWindowPublic
from app.services.availability_service import list_windows
from app.services.slot_service import get_available_slots_for_date

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("", response_model=list[AvailabilityWindowPublic])
async def list_availability(
    session: AsyncSession = Depends(get_session),
) -> list[AvailabilityWindowPublic]:
    windows = await list_windows(session)
    return [AvailabilityWindowPublic.model_validate(w) for w in windows]


@router.get("/slots", response_model=AvailableSlotsResponse)
async def available_slots(
    service_id: int = Query(...),
    date_param: date = Query(..., alias="date"),
    session: AsyncSession = Depends(get_session),
) -> AvailableSlotsResponse:
    """Bookable start times for the service on the given UTC day."""
    service, slots = await get_available_slots_for_date(session, service_id, date_param)
    return AvailableSlotsResponse(
        date=date_param.isoformat(),
        service_id=service.id,
        duration_minutes=service.duration_minutes,
        slots=[s.replace(tzinfo=UTC) for s in slots],
    )
