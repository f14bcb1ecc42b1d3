import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_notifier, get_payment_provider
from app.api.schemas.appointment import (
    BookAppointmentRequest,
    BookingResponse,
    CancellationResponse,
    PayWithSavedMethodRequest,
)
from app.core.config import settings
from app.core.db import get_session
from app.models.appointment import (
    Appointment,
    AppointmentEventPublic,
    AppointmentPublic,
    AppointmentWithService,
)
from app.models.service import ServicePublic
from app.models.user import User
from app.services.appointment_service import (
    CancellationResult,
    cancel_appointment,
    create_appointment,
    list_appointments_for_user,
    list_events,
    pay_with_saved_method,
)
from app.services.best_effort import attempt
from app.services.catalog_service import get_service
from app.services.email_service import Notifier, build_booking_canceled_message
from app.services.payment_service import PaymentProvider

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])


def _to_public(a: Appointment) -> AppointmentPublic:
    return AppointmentPublic.model_validate(a)


def _to_cancellation_response(result: CancellationResult) -> CancellationResponse:
    return CancellationResponse(
        appointment=_to_public(result.appointment),
        status=result.status,
        deposit_forfeited=result.deposit_forfeited,
        refunded=result.refunded,
        refund_amount_cents=result.refund_amount_cents,
        simulated=result.simulated,
        already_closed=result.already_closed,
        message=result.message,
    )


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> BookingResponse:
    result = await create_appointment(
        session, current_user, body.service_id, body.start_utc, provider
    )
    return BookingResponse(appointment=_to_public(result.appointment), checkout_url=result.checkout_url)


@router.get("", response_model=list[AppointmentWithService])
async def list_my_appointments(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[AppointmentWithService]:
    rows = await list_appointments_for_user(session, current_user.id)
    return [
        AppointmentWithService(
            **_to_public(a).model_dump(),
            service=ServicePublic.model_validate(s) if s is not None else None,
        )
        for a, s in rows
    ]


@router.post("/{appointment_id}/pay", response_model=AppointmentPublic)
async def pay_for_appointment(
    appointment_id: int,
    body: PayWithSavedMethodRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> AppointmentPublic:
    appointment = await pay_with_saved_method(
        session, appointment_id, current_user, body.payment_method_id, provider
    )
    return _to_public(appointment)


@router.post("/{appointment_id}/cancel", response_model=CancellationResponse)
async def cancel_my_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
) -> CancellationResponse:
    result = await cancel_appointment(
        session,
        appointment_id,
        current_user,
        provider,
        window_hours=settings.cancellation_window_hours,
    )
    if not result.already_closed:
        service = await get_service(session, result.appointment.service_id)
        subject, body = build_booking_canceled_message(
            service.title,
            result.appointment.start_utc,
            None if result.simulated else result.refund_amount_cents,
        )
        background_tasks.add_task(
            attempt, "Sending cancellation email", notifier.send, current_user.email, subject, body
        )
    return _to_cancellation_response(result)


@router.get("/{appointment_id}/events", response_model=list[AppointmentEventPublic])
async def appointment_history(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(get_current_user),
) -> list[AppointmentEventPublic]:
    events = await list_events(session, appointment_id, current_user)
    return [AppointmentEventPublic.model_validate(e) for e in events]
