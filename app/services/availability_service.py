import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound
from app.models.availability import AvailabilityWindow, AvailabilityWindowCreate
from app.services.appointment_service import cancel_appointments_within
from app.services.time_ranges import to_naive_utc

logger = logging.getLogger(__name__)


async def list_windows(session: AsyncSession) -> list[AvailabilityWindow]:
    result = await session.execute(select(AvailabilityWindow).order_by(AvailabilityWindow.start_utc))
    return list(result.scalars().all())


async def create_window(session: AsyncSession, data: AvailabilityWindowCreate) -> AvailabilityWindow:
    window = AvailabilityWindow(start_utc=to_naive_utc(data.start_utc), end_utc=to_naive_utc(data.end_utc))
    session.add(window)
    await session.flush()
    await session.refresh(window)
    return window


async def delete_window(session: AsyncSession, window_id: int) -> int:
    """Remove a window and cancel the open appointments it covered. Returns how many."""
    window = await session.get(AvailabilityWindow, window_id)
    if window is None:
        raise NotFound("Availability window not found")
    canceled = await cancel_appointments_within(
        session, window.start_utc, window.end_utc, reason=f"availability window {window_id} removed"
    )
    await session.delete(window)
    await session.flush()
    if canceled:
        logger.info("Availability window %d removed; canceled %d appointment(s)", window_id, canceled)
    return canceled
