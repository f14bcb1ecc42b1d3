import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    Conflict,
    NotFound,
    PaymentFailed,
    PaymentUnavailable,
    PermissionDenied,
    ValidationFailed,
)
from app.models.appointment import (
    INACTIVE_STATUSES,
    OPEN_STATUSES,
    REFUNDABLE_STATUSES,
    Appointment,
    AppointmentEvent,
    AppointmentStatus,
)
from app.models.service import Service
from app.models.user import User
from app.services.conflict_service import find_conflicting_appointment
from app.services.payment_service import PaymentProvider
from app.services.time_ranges import hours_between, to_naive_utc, utc_naive_now

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    appointment: Appointment
    checkout_url: str | None = None


@dataclass
class CancellationResult:
    appointment: Appointment
    deposit_forfeited: bool = False
    refunded: bool = False
    refund_amount_cents: int = 0
    # True when the refund could not reach the payment provider and was only recorded
    simulated: bool = False
    already_closed: bool = False
    message: str = ""

    @property
    def status(self) -> AppointmentStatus:
        return self.appointment.status


@dataclass
class RefundOutcome:
    appointment: Appointment
    refund_id: str
    amount_cents: int
    full: bool


class CancellationDecision(str, Enum):
    FORFEIT = "forfeit"
    CANCEL = "cancel"
    REFUND = "refund"


def decide_cancellation(
    start_utc: datetime, now: datetime, window_hours: int, has_payment: bool
) -> CancellationDecision:
    """Owner cancellation policy.

    Inside the window (hours until start <= window_hours) the deposit is forfeited.
    Exactly window_hours ahead still forfeits; refunds need strictly more notice.
    """
    if hours_between(now, start_utc) <= window_hours:
        return CancellationDecision.FORFEIT
    if not has_payment:
        return CancellationDecision.CANCEL
    return CancellationDecision.REFUND


async def _record_event(
    session: AsyncSession,
    appointment_id: int,
    event: str,
    from_status: AppointmentStatus | None,
    to_status: AppointmentStatus,
    detail: str | None = None,
) -> None:
    session.add(
        AppointmentEvent(
            appointment_id=appointment_id,
            event=event,
            from_status=from_status,
            to_status=to_status,
            detail=detail,
        )
    )
    await session.flush()


async def _transition(
    session: AsyncSession,
    appointment: Appointment,
    *,
    allowed_from: tuple[AppointmentStatus, ...],
    to_status: AppointmentStatus,
    event: str,
    detail: str | None = None,
    **values,
) -> bool:
    """Move `appointment` to `to_status` if it is still in one of `allowed_from`.

    A single conditional UPDATE, so two concurrent requests cannot both apply the same
    transition. Returns False (and reloads the row) when another request got there first.
    """
    from_status = appointment.status
    result = await session.execute(
        update(Appointment)
        .where(Appointment.id == appointment.id, Appointment.status.in_(allowed_from))
        .values(status=to_status, updated_at=utc_naive_now(), **values)
        .execution_options(synchronize_session=False)
    )
    await session.refresh(appointment)
    if result.rowcount != 1:
        return False
    await _record_event(session, appointment.id, event, from_status, to_status, detail)
    return True


async def get_appointment(session: AsyncSession, appointment_id: int) -> Appointment:
    appointment = await session.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound("Appointment not found")
    return appointment


async def _get_owned(session: AsyncSession, appointment_id: int, user: User) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if appointment.user_id != user.id:
        raise PermissionDenied("Appointment belongs to another user")
    return appointment


async def create_appointment(
    session: AsyncSession,
    user: User,
    service_id: int,
    start: datetime,
    provider: PaymentProvider,
    now: datetime | None = None,
) -> BookingResult:
    now = now or utc_naive_now()
    start = to_naive_utc(start)
    service = await session.get(Service, service_id)
    if service is None or not service.is_active:
        raise NotFound("Service not found")
    if service.duration_minutes <= 0:
        raise ValidationFailed("Service has no valid duration")
    if start <= now:
        raise ValidationFailed("Cannot book a time in the past")
    end = start + timedelta(minutes=service.duration_minutes)

    if await find_conflicting_appointment(session, start, end):
        raise Conflict("Time slot is not available")

    needs_deposit = service.deposit_cents > 0
    if needs_deposit and not provider.available:
        raise PaymentUnavailable("Payments are not available, and this service requires a deposit")

    appointment = Appointment(
        user_id=user.id,
        service_id=service.id,
        start_utc=start,
        end_utc=end,
        status=AppointmentStatus.PENDING,
    )
    session.add(appointment)
    await session.flush()
    await session.refresh(appointment)
    await _record_event(session, appointment.id, "created", None, AppointmentStatus.PENDING)

    if not needs_deposit:
        await _transition(
            session,
            appointment,
            allowed_from=(AppointmentStatus.PENDING,),
            to_status=AppointmentStatus.CONFIRMED,
            event="confirmed",
            detail="no deposit required",
        )
        return BookingResult(appointment=appointment)

    # A provider failure here propagates and the request session rolls the booking back.
    checkout = await provider.create_checkout_session(
        amount_cents=service.deposit_cents,
        appointment_id=appointment.id,
        title=service.title,
        description=service.description,
        customer_email=user.email,
    )
    appointment.payment_session_reference = checkout.id
    session.add(appointment)
    await session.flush()
    logger.info("Appointment %s created, checkout session %s", appointment.id, checkout.id)
    return BookingResult(appointment=appointment, checkout_url=checkout.url)


async def pay_with_saved_method(
    session: AsyncSession,
    appointment_id: int,
    user: User,
    payment_method_reference: str,
    provider: PaymentProvider,
) -> Appointment:
    """Charge the deposit against a saved card and confirm the appointment."""
    appointment = await _get_owned(session, appointment_id, user)
    if appointment.status != AppointmentStatus.PENDING:
        raise Conflict(f"Appointment is {appointment.status.value}, not awaiting payment")
    service = await session.get(Service, appointment.service_id)
    deposit = service.deposit_cents if service else 0
    if deposit <= 0:
        raise ValidationFailed("No deposit is due for this appointment")
    if not provider.available:
        raise PaymentUnavailable("Payments are not configured")

    customer = await provider.ensure_customer(user.email, user.payment_customer_reference)
    if customer != user.payment_customer_reference:
        user.payment_customer_reference = customer
        session.add(user)

    payment = await provider.charge_saved_method(
        amount_cents=deposit,
        customer_reference=customer,
        payment_method_reference=payment_method_reference,
        appointment_id=appointment.id,
    )
    if not payment.succeeded:
        raise PaymentFailed(f"Payment was not completed (status: {payment.status})")
    if payment.amount_cents != deposit:
        raise PaymentFailed(
            f"Charged amount {payment.amount_cents} does not match deposit {deposit}"
        )

    changed = await _transition(
        session,
        appointment,
        allowed_from=(AppointmentStatus.PENDING,),
        to_status=AppointmentStatus.CONFIRMED,
        event="payment_succeeded",
        detail="saved payment method",
        payment_reference=payment.reference,
    )
    if not changed:
        logger.warning(
            "Payment %s captured for appointment %s but it is now %s",
            payment.reference,
            appointment.id,
            appointment.status.value,
        )
        raise Conflict(f"Appointment is {appointment.status.value}, not awaiting payment")
    return appointment


async def confirm_payment(
    session: AsyncSession,
    appointment_id: int,
    payment_reference: str | None,
    session_reference: str | None,
) -> tuple[Appointment | None, bool]:
    """Apply a payment-succeeded notification. Returns (appointment, status_changed).

    Safe to call any number of times for the same appointment: only the first call
    moves PENDING to CONFIRMED.
    """
    appointment = await session.get(Appointment, appointment_id)
    if appointment is None:
        return None, False

    references = {}
    if payment_reference:
        references["payment_reference"] = payment_reference
    if session_reference:
        references["payment_session_reference"] = session_reference

    changed = await _transition(
        session,
        appointment,
        allowed_from=(AppointmentStatus.PENDING,),
        to_status=AppointmentStatus.CONFIRMED,
        event="payment_succeeded",
        detail="hosted checkout",
        **references,
    )
    if changed:
        return appointment, True

    if appointment.status == AppointmentStatus.CONFIRMED:
        logger.info("Duplicate payment notification for appointment %s ignored", appointment.id)
        return appointment, False

    # Paid after it was closed; keep the status but remember the payment so it can be refunded.
    logger.warning(
        "Payment received for appointment %s in status %s; status left unchanged",
        appointment.id,
        appointment.status.value,
    )
    if payment_reference and not appointment.payment_reference:
        appointment.payment_reference = payment_reference
        if session_reference and not appointment.payment_session_reference:
            appointment.payment_session_reference = session_reference
        session.add(appointment)
        await session.flush()
    return appointment, False


async def _close_for_cancellation(
    session: AsyncSession,
    appointment: Appointment,
    to_status: AppointmentStatus,
    event: str,
    detail: str,
) -> bool:
    changed = await _transition(
        session,
        appointment,
        allowed_from=OPEN_STATUSES,
        to_status=to_status,
        event=event,
        detail=detail,
    )
    if not changed:
        logger.warning(
            "Appointment %s changed to %s while canceling", appointment.id, appointment.status.value
        )
    return changed


async def cancel_appointment(
    session: AsyncSession,
    appointment_id: int,
    user: User,
    provider: PaymentProvider,
    *,
    window_hours: int = 24,
    now: datetime | None = None,
) -> CancellationResult:
    now = now or utc_naive_now()
    appointment = await _get_owned(session, appointment_id, user)

    if appointment.status in INACTIVE_STATUSES:
        return CancellationResult(
            appointment=appointment,
            already_closed=True,
            message=f"Appointment is already {appointment.status.value.lower()}",
        )
    if appointment.status == AppointmentStatus.COMPLETED:
        raise Conflict("Completed appointments cannot be canceled")
    if now >= appointment.start_utc:
        raise Conflict("Cannot cancel an appointment that has already started")

    service = await session.get(Service, appointment.service_id)
    deposit = service.deposit_cents if service else 0
    decision = decide_cancellation(
        appointment.start_utc, now, window_hours, has_payment=bool(appointment.payment_reference)
    )

    if decision is CancellationDecision.FORFEIT:
        if not await _close_for_cancellation(
            session,
            appointment,
            AppointmentStatus.CANCELED,
            "canceled",
            f"within {window_hours}h of start; deposit forfeited",
        ):
            return CancellationResult(appointment=appointment, already_closed=True)
        return CancellationResult(
            appointment=appointment,
            deposit_forfeited=deposit > 0,
            message=f"Canceled within {window_hours} hours of start; the deposit is not refunded",
        )

    if decision is CancellationDecision.CANCEL:
        if not await _close_for_cancellation(
            session, appointment, AppointmentStatus.CANCELED, "canceled", "no payment on record"
        ):
            return CancellationResult(appointment=appointment, already_closed=True)
        return CancellationResult(appointment=appointment, message="Canceled; nothing to refund")

    simulated = False
    amount = deposit
    refund_id = None
    if provider.available:
        try:
            settlement = await provider.get_settlement(appointment.payment_reference)
            # Nothing is refundable until the payment settles; earlier partial refunds count.
            amount = min(deposit, settlement.refundable_cents) if settlement.captured_cents > 0 else 0
            if amount > 0:
                refund = await provider.refund(appointment.payment_reference, amount)
                refund_id = refund.id
        except PaymentUnavailable:
            logger.warning("Refund for appointment %s simulated: provider unreachable", appointment.id)
            simulated = True
            amount = deposit
    else:
        logger.warning("Refund for appointment %s simulated: payments not configured", appointment.id)
        simulated = True

    if amount <= 0:
        if not await _close_for_cancellation(
            session, appointment, AppointmentStatus.CANCELED, "canceled", "payment not settled"
        ):
            return CancellationResult(appointment=appointment, already_closed=True)
        return CancellationResult(
            appointment=appointment, message="Canceled; the payment had not settled, nothing refunded"
        )

    detail = f"refunded {amount} cents" + (" (simulated)" if simulated else f" ({refund_id})")
    if not await _close_for_cancellation(
        session, appointment, AppointmentStatus.REFUNDED, "refunded", detail
    ):
        return CancellationResult(appointment=appointment, already_closed=True)
    message = "Canceled and deposit refunded"
    if simulated:
        message += " (simulated: payment provider unavailable, no money was moved)"
    return CancellationResult(
        appointment=appointment,
        refunded=True,
        refund_amount_cents=amount,
        simulated=simulated,
        message=message,
    )


async def refund_appointment(
    session: AsyncSession,
    appointment_id: int,
    provider: PaymentProvider,
    amount_cents: int | None = None,
) -> RefundOutcome:
    """Admin refund. A refund covering everything captured marks the appointment REFUNDED;
    a partial refund leaves the status as it is.

    CANCELED appointments are refundable too, which covers deposits paid after the
    appointment was closed.
    """
    appointment = await get_appointment(session, appointment_id)
    if appointment.status not in REFUNDABLE_STATUSES:
        raise Conflict(f"Appointment is already {appointment.status.value}")
    if not appointment.payment_reference:
        raise ValidationFailed("No payment to refund")
    if amount_cents is not None and amount_cents <= 0:
        raise ValidationFailed("Refund amount must be a positive number of cents")
    if not provider.available:
        raise PaymentUnavailable("Payments are not configured for refunds in this environment")

    settlement = await provider.get_settlement(appointment.payment_reference)
    if settlement.captured_cents <= 0:
        raise ValidationFailed("Payment has not settled yet; nothing to refund")
    ceiling = settlement.refundable_cents
    if ceiling <= 0:
        raise Conflict("Payment has already been fully refunded")
    amount = ceiling if amount_cents is None else amount_cents
    if amount > ceiling:
        raise ValidationFailed(f"Refund amount exceeds the refundable amount of {ceiling} cents")

    refund = await provider.refund(appointment.payment_reference, amount)
    full = settlement.refunded_cents + amount >= settlement.captured_cents
    if full:
        changed = await _transition(
            session,
            appointment,
            allowed_from=REFUNDABLE_STATUSES,
            to_status=AppointmentStatus.REFUNDED,
            event="refunded",
            detail=f"admin refund {refund.id} for {amount} cents",
        )
        if not changed:
            logger.warning(
                "Refund %s issued but appointment %s is now %s",
                refund.id,
                appointment.id,
                appointment.status.value,
            )
    else:
        await _record_event(
            session,
            appointment.id,
            "partial_refund",
            appointment.status,
            appointment.status,
            f"admin refund {refund.id} for {amount} of {settlement.captured_cents} cents",
        )
    return RefundOutcome(appointment=appointment, refund_id=refund.id, amount_cents=amount, full=full)


async def complete_appointment(
    session: AsyncSession, appointment_id: int, now: datetime | None = None
) -> Appointment:
    now = now or utc_naive_now()
    appointment = await get_appointment(session, appointment_id)
    if appointment.status != AppointmentStatus.CONFIRMED:
        raise Conflict(f"Only confirmed appointments can be completed (status: {appointment.status.value})")
    if now < appointment.end_utc:
        raise Conflict("Appointment has not ended yet")
    if not await _transition(
        session,
        appointment,
        allowed_from=(AppointmentStatus.CONFIRMED,),
        to_status=AppointmentStatus.COMPLETED,
        event="completed",
    ):
        raise Conflict(f"Appointment is {appointment.status.value}")
    return appointment


async def cancel_appointments_within(
    session: AsyncSession, start: datetime, end: datetime, reason: str
) -> int:
    """Cancel every open appointment lying entirely inside [start, end). Returns the count."""
    result = await session.execute(
        select(Appointment).where(
            Appointment.start_utc >= start,
            Appointment.end_utc <= end,
            Appointment.status.in_(OPEN_STATUSES),
        )
    )
    canceled = 0
    for appointment in result.scalars().all():
        if await _transition(
            session,
            appointment,
            allowed_from=OPEN_STATUSES,
            to_status=AppointmentStatus.CANCELED,
            event="canceled_by_admin",
            detail=reason,
        ):
            canceled += 1
    return canceled


async def list_appointments_for_user(
    session: AsyncSession, user_id: int
) -> list[tuple[Appointment, Service | None]]:
    result = await session.execute(
        select(Appointment, Service)
        .join(Service, Service.id == Appointment.service_id, isouter=True)
        .where(Appointment.user_id == user_id)
        .order_by(Appointment.start_utc)
    )
    return [(a, s) for a, s in result.all()]


async def list_all_appointments_with_details(
    session: AsyncSession,
) -> list[tuple[Appointment, User, Service]]:
    result = await session.execute(
        select(Appointment, User, Service)
        .join(User, User.id == Appointment.user_id)
        .join(Service, Service.id == Appointment.service_id)
        .order_by(Appointment.start_utc.desc())
    )
    return [(a, u, s) for a, u, s in result.all()]


async def list_events(session: AsyncSession, appointment_id: int, user: User) -> list[AppointmentEvent]:
    appointment = await get_appointment(session, appointment_id)
    if appointment.user_id != user.id and not user.is_admin:
        raise PermissionDenied("Appointment belongs to another user")
    result = await session.execute(
        select(AppointmentEvent)
        .where(AppointmentEvent.appointment_id == appointment_id)
        .order_by(AppointmentEvent.id)
    )
    return list(result.scalars().all())
