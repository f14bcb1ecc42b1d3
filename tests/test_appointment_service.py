from datetime import date, datetime, timedelta
from itertools import combinations

import pytest
from sqlalchemy import func, select

from app.core.errors import Conflict, NotFound, PaymentFailed, PaymentUnavailable, PermissionDenied, ValidationFailed
from app.models.appointment import Appointment, AppointmentStatus
from app.services.appointment_service import (
    CancellationDecision,
    cancel_appointment,
    complete_appointment,
    confirm_payment,
    create_appointment,
    decide_cancellation,
    list_events,
    pay_with_saved_method,
    refund_appointment,
)
from app.services.availability_service import delete_window
from app.services.payment_service import DisabledPaymentProvider, Settlement
from app.services.slot_service import get_available_slots_for_date
from app.services.time_ranges import overlaps

from conftest import make_appointment, make_service, make_user, make_window

DAY = date(2025, 6, 1)
BOOKING_TIME = datetime(2025, 5, 20, 12, 0)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 6, 1, hour, minute)


# --- cancellation policy ---


def test_policy_forfeits_inside_window() -> None:
    start = at(10)
    assert decide_cancellation(start, start - timedelta(hours=2), 24, has_payment=True) is CancellationDecision.FORFEIT


def test_policy_exactly_at_window_forfeits() -> None:
    start = at(10)
    now = start - timedelta(hours=24)
    assert decide_cancellation(start, now, 24, has_payment=True) is CancellationDecision.FORFEIT


def test_policy_just_outside_window_refunds() -> None:
    start = at(10)
    now = start - timedelta(hours=24, seconds=1)
    assert decide_cancellation(start, now, 24, has_payment=True) is CancellationDecision.REFUND
    assert decide_cancellation(start, now, 24, has_payment=False) is CancellationDecision.CANCEL


# --- create ---


async def test_booking_scenario_end_to_end(session, provider) -> None:
    customer = await make_user(session)
    other = await make_user(session, email="other@example.com")
    service = await make_service(session, duration=60, deposit=1000)
    await make_window(session, at(9), at(12))

    _, slots = await get_available_slots_for_date(session, service.id, DAY)
    assert slots == [at(9), at(10), at(11)]

    booking = await create_appointment(session, customer, service.id, at(10), provider, now=BOOKING_TIME)
    assert booking.appointment.status == AppointmentStatus.PENDING
    assert booking.appointment.end_utc == at(11)
    assert booking.checkout_url == "https://checkout.test/cs_test_1"
    assert booking.appointment.payment_session_reference == "cs_test_1"
    assert provider.checkouts[0]["amount_cents"] == 1000
    assert provider.checkouts[0]["appointment_id"] == booking.appointment.id

    with pytest.raises(Conflict):
        await create_appointment(session, other, service.id, at(10), provider, now=BOOKING_TIME)

    await confirm_payment(session, booking.appointment.id, "pi_1", "cs_test_1")
    result = await cancel_appointment(
        session, booking.appointment.id, customer, provider, now=datetime(2025, 5, 30, 9, 0)
    )
    assert result.status == AppointmentStatus.REFUNDED
    assert result.refunded is True
    assert result.refund_amount_cents == 1000
    assert result.simulated is False
    assert provider.refunds == [("pi_1", 1000)]

    # The refunded booking released its slot; book it again and cancel late.
    again = await create_appointment(session, customer, service.id, at(10), provider, now=BOOKING_TIME)
    await confirm_payment(session, again.appointment.id, "pi_2", "cs_test_2")
    late = await cancel_appointment(session, again.appointment.id, customer, provider, now=at(8))
    assert late.status == AppointmentStatus.CANCELED
    assert late.deposit_forfeited is True
    assert late.refunded is False
    assert late.refund_amount_cents == 0
    assert len(provider.refunds) == 1


async def test_create_rejects_unknown_service(session, provider) -> None:
    user = await make_user(session)
    with pytest.raises(NotFound):
        await create_appointment(session, user, 404, at(10), provider, now=BOOKING_TIME)


async def test_create_rejects_inactive_service(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, is_active=False)
    with pytest.raises(NotFound):
        await create_appointment(session, user, service.id, at(10), provider, now=BOOKING_TIME)


async def test_create_rejects_past_start(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session)
    with pytest.raises(ValidationFailed):
        await create_appointment(session, user, service.id, at(10), provider, now=at(11))


async def test_create_overlapping_partial_interval_conflicts(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, duration=60)
    await create_appointment(session, user, service.id, at(10), provider, now=BOOKING_TIME)

    with pytest.raises(Conflict):
        await create_appointment(session, user, service.id, at(10, 30), provider, now=BOOKING_TIME)
    adjacent = await create_appointment(session, user, service.id, at(11), provider, now=BOOKING_TIME)
    assert adjacent.appointment.start_utc == at(11)


async def test_canceled_booking_does_not_block(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session)
    await make_appointment(session, user, service, at(10), status=AppointmentStatus.CANCELED)

    booking = await create_appointment(session, user, service.id, at(10), provider, now=BOOKING_TIME)
    assert booking.appointment.status == AppointmentStatus.PENDING


async def test_deposit_required_but_payments_disabled(session) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)

    with pytest.raises(PaymentUnavailable):
        await create_appointment(session, user, service.id, at(10), DisabledPaymentProvider(), now=BOOKING_TIME)
    count = await session.scalar(select(func.count()).select_from(Appointment))
    assert count == 0


async def test_checkout_failure_leaves_no_booking_after_rollback(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    provider.unreachable = True

    with pytest.raises(PaymentUnavailable):
        await create_appointment(session, user, service.id, at(10), provider, now=BOOKING_TIME)
    await session.rollback()
    count = await session.scalar(select(func.count()).select_from(Appointment))
    assert count == 0


async def test_zero_deposit_books_without_payment(session) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=0, price=0)

    booking = await create_appointment(session, user, service.id, at(10), DisabledPaymentProvider(), now=BOOKING_TIME)

    assert booking.checkout_url is None
    assert booking.appointment.status == AppointmentStatus.CONFIRMED
    events = await list_events(session, booking.appointment.id, user)
    assert [e.event for e in events] == ["created", "confirmed"]


async def test_sequential_bookings_never_overlap(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, duration=60)
    for offset in range(0, 6 * 60, 15):
        try:
            await create_appointment(
                session, user, service.id, at(9) + timedelta(minutes=offset), provider, now=BOOKING_TIME
            )
        except Conflict:
            pass

    result = await session.execute(select(Appointment))
    active = [a for a in result.scalars().all() if a.is_active]
    assert len(active) == 6
    for a, b in combinations(active, 2):
        assert not overlaps(a.start_utc, a.end_utc, b.start_utc, b.end_utc)


# --- saved card payment ---


async def test_pay_with_saved_method_confirms(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1500)
    appointment = await make_appointment(session, user, service, at(10))

    paid = await pay_with_saved_method(session, appointment.id, user, "pm_card", provider)

    assert paid.status == AppointmentStatus.CONFIRMED
    assert paid.payment_reference == "pi_saved_1"
    assert user.payment_customer_reference == "cus_1"
    assert provider.charges[0]["amount_cents"] == 1500
    assert provider.charges[0]["payment_method_reference"] == "pm_card"


async def test_pay_with_saved_method_amount_mismatch(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1500)
    appointment = await make_appointment(session, user, service, at(10))
    provider.charge_amount = 1000

    with pytest.raises(PaymentFailed):
        await pay_with_saved_method(session, appointment.id, user, "pm_card", provider)


async def test_pay_with_saved_method_not_succeeded(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1500)
    appointment = await make_appointment(session, user, service, at(10))
    provider.charge_status = "requires_action"

    with pytest.raises(PaymentFailed):
        await pay_with_saved_method(session, appointment.id, user, "pm_card", provider)


async def test_pay_with_saved_method_requires_pending(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1500)
    appointment = await make_appointment(session, user, service, at(10), status=AppointmentStatus.CONFIRMED)

    with pytest.raises(Conflict):
        await pay_with_saved_method(session, appointment.id, user, "pm_card", provider)


async def test_pay_with_saved_method_only_owner(session, provider) -> None:
    owner = await make_user(session)
    stranger = await make_user(session, email="stranger@example.com")
    service = await make_service(session, deposit=1500)
    appointment = await make_appointment(session, owner, service, at(10))

    with pytest.raises(PermissionDenied):
        await pay_with_saved_method(session, appointment.id, stranger, "pm_card", provider)


# --- confirmation ---


async def test_confirm_payment_is_idempotent(session) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10))

    first, changed_first = await confirm_payment(session, appointment.id, "pi_1", "cs_1")
    second, changed_second = await confirm_payment(session, appointment.id, "pi_1", "cs_1")

    assert changed_first is True
    assert changed_second is False
    assert first.status == second.status == AppointmentStatus.CONFIRMED
    assert second.payment_reference == "pi_1"
    assert second.payment_session_reference == "cs_1"
    events = await list_events(session, appointment.id, user)
    assert [e.event for e in events] == ["payment_succeeded"]


async def test_confirm_payment_after_cancel_keeps_status(session) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10), status=AppointmentStatus.CANCELED)

    result, changed = await confirm_payment(session, appointment.id, "pi_late", "cs_late")

    assert changed is False
    assert result.status == AppointmentStatus.CANCELED
    assert result.payment_reference == "pi_late"


async def test_confirm_payment_unknown_appointment(session) -> None:
    assert await confirm_payment(session, 12345, "pi_1", None) == (None, False)


# --- owner cancellation ---


async def test_cancel_exactly_24h_before_forfeits(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(session, user, service, at(10), payment_reference="pi_1")

    result = await cancel_appointment(session, appointment.id, user, provider, now=at(10) - timedelta(hours=24))

    assert result.status == AppointmentStatus.CANCELED
    assert result.deposit_forfeited is True
    assert provider.refunds == []


async def test_cancel_without_payment_outside_window(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(session, user, service, at(10))

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.status == AppointmentStatus.CANCELED
    assert result.refunded is False
    assert result.deposit_forfeited is False
    assert provider.refunds == []


async def test_cancel_refunds_at_most_captured(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(
        session, user, service, at(10), status=AppointmentStatus.CONFIRMED, payment_reference="pi_small"
    )
    provider.settlements["pi_small"] = Settlement(captured_cents=600, authorized_cents=1000)

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.status == AppointmentStatus.REFUNDED
    assert result.refund_amount_cents == 600
    assert provider.refunds == [("pi_small", 600)]


async def test_cancel_with_unsettled_payment_cancels_without_refund(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(session, user, service, at(10), payment_reference="pi_auth")
    provider.settlements["pi_auth"] = Settlement(captured_cents=0, authorized_cents=1000)

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.status == AppointmentStatus.CANCELED
    assert result.refunded is False
    assert provider.refunds == []


async def test_cancel_after_partial_admin_refund_refunds_only_the_rest(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(
        session, user, service, at(10), status=AppointmentStatus.CONFIRMED, payment_reference="pi_x"
    )
    await refund_appointment(session, appointment.id, provider, amount_cents=500)

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.status == AppointmentStatus.REFUNDED
    assert result.refund_amount_cents == 500
    assert provider.refunds == [("pi_x", 500), ("pi_x", 500)]
    assert sum(amount for _, amount in provider.refunds) <= 1000


async def test_cancel_after_full_admin_refund_moves_no_money(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(
        session, user, service, at(10), status=AppointmentStatus.CONFIRMED, payment_reference="pi_x"
    )
    provider.settlements["pi_x"] = Settlement(captured_cents=1000, authorized_cents=1000, refunded_cents=1000)

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.status == AppointmentStatus.CANCELED
    assert result.refunded is False
    assert provider.refunds == []


async def test_cancel_refund_simulated_when_provider_unreachable(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(session, user, service, at(10), payment_reference="pi_1")
    provider.unreachable = True

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.status == AppointmentStatus.REFUNDED
    assert result.refunded is True
    assert result.simulated is True
    assert result.refund_amount_cents == 1000
    assert "simulated" in result.message


async def test_cancel_refund_simulated_when_payments_disabled(session) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(session, user, service, at(10), payment_reference="pi_1")

    result = await cancel_appointment(
        session, appointment.id, user, DisabledPaymentProvider(), now=datetime(2025, 5, 28)
    )

    assert result.status == AppointmentStatus.REFUNDED
    assert result.simulated is True


@pytest.mark.parametrize("status", [AppointmentStatus.CANCELED, AppointmentStatus.REFUNDED])
async def test_cancel_is_idempotent_for_closed_appointments(session, provider, status) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10), status=status, payment_reference="pi_1")

    result = await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))

    assert result.already_closed is True
    assert result.status == status
    assert provider.refunds == []


async def test_cancel_completed_is_rejected(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10), status=AppointmentStatus.COMPLETED)

    with pytest.raises(Conflict):
        await cancel_appointment(session, appointment.id, user, provider, now=datetime(2025, 5, 28))


async def test_cancel_after_start_is_rejected(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10))

    with pytest.raises(Conflict):
        await cancel_appointment(session, appointment.id, user, provider, now=at(10))


async def test_cancel_by_someone_else_is_rejected(session, provider) -> None:
    owner = await make_user(session)
    stranger = await make_user(session, email="stranger@example.com")
    service = await make_service(session)
    appointment = await make_appointment(session, owner, service, at(10))

    with pytest.raises(PermissionDenied):
        await cancel_appointment(session, appointment.id, stranger, provider, now=datetime(2025, 5, 28))


async def test_cancel_unknown_appointment(session, provider) -> None:
    user = await make_user(session)
    with pytest.raises(NotFound):
        await cancel_appointment(session, 999, user, provider, now=datetime(2025, 5, 28))


# --- admin refund ---


async def _paid_appointment(session):
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(
        session, user, service, at(10), status=AppointmentStatus.CONFIRMED, payment_reference="pi_paid"
    )
    return user, appointment


async def test_refund_more_than_captured_is_rejected(session, provider) -> None:
    _, appointment = await _paid_appointment(session)

    with pytest.raises(ValidationFailed):
        await refund_appointment(session, appointment.id, provider, amount_cents=1001)
    assert provider.refunds == []
    assert appointment.status == AppointmentStatus.CONFIRMED


async def test_refund_of_full_capture_marks_refunded(session, provider) -> None:
    _, appointment = await _paid_appointment(session)

    outcome = await refund_appointment(session, appointment.id, provider, amount_cents=1000)

    assert outcome.full is True
    assert outcome.appointment.status == AppointmentStatus.REFUNDED
    assert provider.refunds == [("pi_paid", 1000)]


async def test_partial_refund_keeps_status(session, provider) -> None:
    user, appointment = await _paid_appointment(session)

    outcome = await refund_appointment(session, appointment.id, provider, amount_cents=400)

    assert outcome.full is False
    assert outcome.appointment.status == AppointmentStatus.CONFIRMED
    events = await list_events(session, appointment.id, user)
    assert events[-1].event == "partial_refund"

    rest = await refund_appointment(session, appointment.id, provider)
    assert rest.amount_cents == 600
    assert rest.full is True
    assert rest.appointment.status == AppointmentStatus.REFUNDED


async def test_refund_without_amount_refunds_everything(session, provider) -> None:
    _, appointment = await _paid_appointment(session)

    outcome = await refund_appointment(session, appointment.id, provider)

    assert outcome.amount_cents == 1000
    assert outcome.appointment.status == AppointmentStatus.REFUNDED


@pytest.mark.parametrize("amount", [0, -100])
async def test_refund_amount_must_be_positive(session, provider, amount) -> None:
    _, appointment = await _paid_appointment(session)

    with pytest.raises(ValidationFailed):
        await refund_appointment(session, appointment.id, provider, amount_cents=amount)


async def test_refund_requires_settled_payment(session, provider) -> None:
    _, appointment = await _paid_appointment(session)
    provider.settlements["pi_paid"] = Settlement(captured_cents=0, authorized_cents=1000)

    with pytest.raises(ValidationFailed):
        await refund_appointment(session, appointment.id, provider, amount_cents=500)


async def test_refund_requires_payment_reference(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10))

    with pytest.raises(ValidationFailed):
        await refund_appointment(session, appointment.id, provider)


async def test_late_payment_on_canceled_appointment_can_be_refunded(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(session, user, service, at(10), status=AppointmentStatus.CANCELED)
    await confirm_payment(session, appointment.id, "pi_late", "cs_late")

    outcome = await refund_appointment(session, appointment.id, provider)

    assert outcome.full is True
    assert outcome.amount_cents == 1000
    assert outcome.appointment.status == AppointmentStatus.REFUNDED
    assert provider.refunds == [("pi_late", 1000)]


async def test_partial_refund_of_canceled_appointment_keeps_canceled(session, provider) -> None:
    user = await make_user(session)
    service = await make_service(session, deposit=1000)
    appointment = await make_appointment(
        session, user, service, at(10), status=AppointmentStatus.CANCELED, payment_reference="pi_late"
    )

    outcome = await refund_appointment(session, appointment.id, provider, amount_cents=300)

    assert outcome.full is False
    assert outcome.appointment.status == AppointmentStatus.CANCELED


@pytest.mark.parametrize("status", [AppointmentStatus.REFUNDED, AppointmentStatus.COMPLETED])
async def test_refund_rejected_for_refunded_or_completed(session, provider, status) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(
        session, user, service, at(10), status=status, payment_reference="pi_1"
    )

    with pytest.raises(Conflict):
        await refund_appointment(session, appointment.id, provider)


async def test_refund_needs_configured_payments(session) -> None:
    _, appointment = await _paid_appointment(session)

    with pytest.raises(PaymentUnavailable):
        await refund_appointment(session, appointment.id, DisabledPaymentProvider())


# --- availability removal and completion ---


async def test_removing_window_cancels_covered_appointments(session) -> None:
    user = await make_user(session)
    service = await make_service(session)
    window = await make_window(session, at(9), at(12))
    pending = await make_appointment(session, user, service, at(9))
    confirmed = await make_appointment(session, user, service, at(10), status=AppointmentStatus.CONFIRMED)
    straddling = await make_appointment(session, user, service, at(11, 30))
    already = await make_appointment(session, user, service, at(11), status=AppointmentStatus.CANCELED)

    canceled = await delete_window(session, window.id)

    assert canceled == 2
    assert pending.status == AppointmentStatus.CANCELED
    assert confirmed.status == AppointmentStatus.CANCELED
    assert straddling.status == AppointmentStatus.PENDING
    assert already.status == AppointmentStatus.CANCELED


async def test_removing_unknown_window(session) -> None:
    with pytest.raises(NotFound):
        await delete_window(session, 42)


async def test_complete_after_end(session) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10), status=AppointmentStatus.CONFIRMED)

    with pytest.raises(Conflict):
        await complete_appointment(session, appointment.id, now=at(10, 30))
    completed = await complete_appointment(session, appointment.id, now=at(11))

    assert completed.status == AppointmentStatus.COMPLETED


async def test_complete_requires_confirmed(session) -> None:
    user = await make_user(session)
    service = await make_service(session)
    appointment = await make_appointment(session, user, service, at(10))

    with pytest.raises(Conflict):
        await complete_appointment(session, appointment.id, now=at(12))


async def test_history_visible_to_owner_only(session, provider) -> None:
    owner = await make_user(session)
    stranger = await make_user(session, email="stranger@example.com")
    service = await make_service(session)
    booking = await create_appointment(session, owner, service.id, at(10), provider, now=BOOKING_TIME)

    events = await list_events(session, booking.appointment.id, owner)
    assert [(e.event, e.from_status, e.to_status) for e in events] == [
        ("created", None, AppointmentStatus.PENDING)
    ]
    with pytest.raises(PermissionDenied):
        await list_events(session, booking.appointment.id, stranger)
