"""Applies asynchronous payment notifications to appointments.

The provider delivers at least once, so every entry point here is idempotent and never
raises for bad references: the caller must still acknowledge the notification.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.appointment import Appointment
from app.models.service import Service
from app.models.user import User
from app.services.appointment_service import confirm_payment
from app.services.best_effort import attempt
from app.services.email_service import Notifier, build_booking_confirmed_message
from app.services.payment_service import PaymentProvider

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


def parse_appointment_reference(raw: object) -> int | None:
    """Appointment id from a client reference; None unless it is a positive integer."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


async def save_payment_method(
    session: AsyncSession,
    provider: PaymentProvider,
    user: User,
    payment_reference: str,
    email: str | None = None,
) -> None:
    """Keep the card used for this payment on the user's customer record for reuse."""
    if not provider.available:
        logger.info("Payments not configured; skipping payment method save")
        return
    payment_method = await provider.payment_method_for_payment(payment_reference)
    customer = await provider.ensure_customer(email or user.email, user.payment_customer_reference)
    if customer != user.payment_customer_reference:
        user.payment_customer_reference = customer
        session.add(user)
    if payment_method:
        await provider.attach_payment_method(customer, payment_method)


async def send_confirmation(
    session: AsyncSession, notifier: Notifier, appointment: Appointment, user: User | None
) -> None:
    if user is None:
        logger.warning("Appointment %s has no owner to notify", appointment.id)
        return
    service = await session.get(Service, appointment.service_id)
    subject, body = build_booking_confirmed_message(
        service.title if service else "your appointment", appointment.start_utc, user.full_name
    )
    await notifier.send(user.email, subject, body)


async def on_payment_completed(
    session: AsyncSession,
    appointment_reference: object,
    payment_reference: str | None,
    session_reference: str | None,
    provider: PaymentProvider,
    notifier: Notifier,
    customer_email: str | None = None,
) -> Appointment | None:
    """Confirm the referenced appointment once; follow-up side effects are best effort."""
    appointment_id = parse_appointment_reference(appointment_reference)
    if appointment_id is None:
        logger.warning("Invalid appointment reference in payment notification: %r", appointment_reference)
        return None

    appointment, changed = await confirm_payment(
        session, appointment_id, payment_reference, session_reference
    )
    if appointment is None:
        logger.warning("Payment notification for unknown appointment %s", appointment_id)
        return None
    if not changed:
        return appointment
    logger.info("Appointment confirmed: %s", appointment.id)

    user = await session.get(User, appointment.user_id)
    if user is not None and payment_reference:
        await attempt(
            f"Saving payment method for appointment {appointment.id}",
            save_payment_method,
            session,
            provider,
            user,
            payment_reference,
            customer_email,
        )
    await attempt(
        f"Sending confirmation for appointment {appointment.id}",
        send_confirmation,
        session,
        notifier,
        appointment,
        user,
    )
    return appointment


async def handle_event(
    session: AsyncSession, event: dict, provider: PaymentProvider, notifier: Notifier
) -> Appointment | None:
    event_type = event.get("type")
    if event_type != CHECKOUT_COMPLETED:
        logger.debug("Ignoring payment event %s", event_type)
        return None
    data = event.get("data")
    checkout = data.get("object") if isinstance(data, dict) else None
    if not isinstance(checkout, dict):
        logger.warning("Malformed %s event %s ignored", event_type, event.get("id"))
        return None
    customer_details = checkout.get("customer_details")
    if not isinstance(customer_details, dict):
        customer_details = {}
    return await on_payment_completed(
        session,
        checkout.get("client_reference_id"),
        checkout.get("payment_intent"),
        checkout.get("id"),
        provider,
        notifier,
        customer_email=customer_details.get("email"),
    )
