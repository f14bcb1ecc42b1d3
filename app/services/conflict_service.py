from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.appointment import INACTIVE_STATUSES, Appointment
from app.services.time_ranges import overlaps


def has_conflict(start: datetime, end: datetime, appointments: Iterable[Appointment]) -> bool:
    """True if [start, end) overlaps an active appointment.

    COMPLETED appointments still count; only CANCELED and REFUNDED release their range.
    """
    return any(
        overlaps(start, end, a.start_utc, a.end_utc)
        for a in appointments
        if a.is_active
    )


async def find_conflicting_appointment(
    session: AsyncSession, start: datetime, end: datetime
) -> Appointment | None:
    """Read the live appointment set for an active booking overlapping [start, end).

    The check and the later insert are separate statements, so two concurrent requests
    for overlapping ranges can both pass. This window is accepted, not closed here.
    """
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.start_utc < end,
            Appointment.end_utc > start,
            Appointment.status.not_in(INACTIVE_STATUSES),
        )
        .limit(1)
    )
    return result.scalars().first()
