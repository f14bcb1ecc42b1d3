import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_payment_provider, require_admin
from app.api.schemas.appointment import RefundRequest, RefundResponse, WindowDeletedResponse
from app.core.db import get_session
from app.models.appointment import AppointmentAdminPublic, AppointmentPublic
from app.models.availability import AvailabilityWindowCreate, AvailabilityWindowPublic
from app.models.service import ServiceCreate, ServicePublic, ServiceUpdate
from app.services.appointment_service import (
    complete_appointment,
    list_all_appointments_with_details,
    refund_appointment,
)
from app.services.availability_service import create_window, delete_window
from app.services.catalog_service import create_service, delete_service, update_service
from app.services.payment_service import PaymentProvider

logger = logging.getLogger(__name__)

# All admin routes require an authenticated ADMIN user
router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/services", response_model=ServicePublic, status_code=status.HTTP_201_CREATED)
async def add_service(
    body: ServiceCreate,
    session: AsyncSession = Depends(get_session),
) -> ServicePublic:
    return ServicePublic.model_validate(await create_service(session, body))


@router.put("/services/{service_id}", response_model=ServicePublic)
async def edit_service(
    service_id: int,
    body: ServiceUpdate,
    session: AsyncSession = Depends(get_session),
) -> ServicePublic:
    return ServicePublic.model_validate(await update_service(session, service_id, body))


@router.delete("/services/{service_id}")
async def remove_service(
    service_id: int,
    session: AsyncSession = Depends(get_session),
) -> dict:
    deleted = await delete_service(session, service_id)
    return {"ok": True, "deleted": deleted, "deactivated": not deleted}


@router.post("/availability", response_model=AvailabilityWindowPublic, status_code=status.HTTP_201_CREATED)
async def add_availability(
    body: AvailabilityWindowCreate,
    session: AsyncSession = Depends(get_session),
) -> AvailabilityWindowPublic:
    return AvailabilityWindowPublic.model_validate(await create_window(session, body))


@router.delete("/availability/{window_id}", response_model=WindowDeletedResponse)
async def remove_availability(
    window_id: int,
    session: AsyncSession = Depends(get_session),
) -> WindowDeletedResponse:
    canceled = await delete_window(session, window_id)
    return WindowDeletedResponse(canceled_appointments=canceled)


@router.post("/refund", response_model=RefundResponse)
async def refund(
    body: RefundRequest,
    session: AsyncSession = Depends(get_session),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> RefundResponse:
    outcome = await refund_appointment(session, body.appointment_id, provider, body.amount_cents)
    logger.info(
        "Refunded %d cents for appointment %d (full=%s)",
        outcome.amount_cents,
        body.appointment_id,
        outcome.full,
    )
    return RefundResponse(
        appointment=AppointmentPublic.model_validate(outcome.appointment),
        refund_id=outcome.refund_id,
        amount_cents=outcome.amount_cents,
        full=outcome.full,
    )


@router.post("/appointments/{appointment_id}/complete", response_model=AppointmentPublic)
async def mark_completed(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
) -> AppointmentPublic:
    return AppointmentPublic.model_validate(await complete_appointment(session, appointment_id))


@router.get("/appointments", response_model=list[AppointmentAdminPublic])
async def list_all_appointments(
    session: AsyncSession = Depends(get_session),
) -> list[AppointmentAdminPublic]:
    rows = await list_all_appointments_with_details(session)
    return [
        AppointmentAdminPublic(
            **AppointmentPublic.model_validate(a).model_dump(),
            user_email=u.email,
            user_full_name=u.full_name,
            service_title=s.title,
        )
        for a, u, s in rows
    ]
