from collections.abc import Iterable
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, ValidationFailed
from app.models.appointment import INACTIVE_STATUSES, Appointment
from app.models.availability import AvailabilityWindow
from app.models.service import Service
from app.services.conflict_service import has_conflict
from app.services.time_ranges import clip, day_bounds


def generate_slots(
    duration_minutes: int,
    d: date,
    windows: Iterable[AvailabilityWindow],
    appointments: Iterable[Appointment],
) -> list[datetime]:
    """Bookable start times on the UTC day `d` for a service lasting `duration_minutes`.

    Each window is clipped to the day and tiled from its clipped start at a stride of the
    service duration; a slot must end by the window end. Slots overlapping an active
    appointment are dropped. Overlapping windows would offer the same start twice, so the
    result is deduplicated and sorted.
    """
    if duration_minutes <= 0:
        raise ValidationFailed("Service duration must be positive")
    day_start, day_end = day_bounds(d)
    step = timedelta(minutes=duration_minutes)
    booked = [a for a in appointments if a.is_active]

    starts: set[datetime] = set()
    for window in windows:
        clipped = clip(window.start_utc, window.end_utc, day_start, day_end)
        if clipped is None:
            continue
        current, window_end = clipped
        while current + step <= window_end:
            if not has_conflict(current, current + step, booked):
                starts.add(current)
            current += step
    return sorted(starts)


async def get_windows_for_day(session: AsyncSession, d: date) -> list[AvailabilityWindow]:
    day_start, day_end = day_bounds(d)
    result = await session.execute(
        select(AvailabilityWindow)
        .where(AvailabilityWindow.start_utc < day_end, AvailabilityWindow.end_utc > day_start)
        .order_by(AvailabilityWindow.start_utc)
    )
    return list(result.scalars().all())


async def get_active_appointments_for_day(session: AsyncSession, d: date) -> list[Appointment]:
    day_start, day_end = day_bounds(d)
    result = await session.execute(
        select(Appointment).where(
            Appointment.start_utc < day_end,
            Appointment.end_utc > day_start,
            Appointment.status.not_in(INACTIVE_STATUSES),
        )
    )
    return list(result.scalars().all())


async def get_available_slots_for_date(
    session: AsyncSession, service_id: int, d: date
) -> tuple[Service, list[datetime]]:
    service = await session.get(Service, service_id)
    if service is None or not service.is_active:
        raise NotFound("Service not found")
    windows = await get_windows_for_day(session, d)
    if not windows:
        return service, []
    appointments = await get_active_appointments_for_day(session, d)
    return service, generate_slots(service.duration_minutes, d, windows, appointments)
