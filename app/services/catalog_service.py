from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import FeatureFlags
from app.core.errors import NotFound
from app.models.appointment import Appointment
from app.models.service import Service, ServiceCreate, ServiceUpdate

DEMO_EMAIL_DOMAIN = "meechlocs.test"
DEMO_SERVICE_TITLES = ("Wash & Style", "Color Treatment", "Cut & Trim")
_PLACEHOLDER_IMAGE_HOST = "via.placeholder.com"


def is_demo_email(email: str | None) -> bool:
    return (email or "").strip().lower().endswith(f"@{DEMO_EMAIL_DOMAIN}")


def is_demo_service(service: Service) -> bool:
    if service.title in DEMO_SERVICE_TITLES:
        return True
    return any(isinstance(url, str) and _PLACEHOLDER_IMAGE_HOST in url for url in service.images or [])


async def list_active_services(session: AsyncSession, flags: FeatureFlags) -> list[Service]:
    result = await session.execute(
        select(Service).where(Service.is_active == True).order_by(Service.created_at.desc(), Service.id.desc())  # noqa: E712
    )
    services = list(result.scalars().all())
    if flags.hide_demo_content:
        services = [s for s in services if not is_demo_service(s)]
    return services


async def get_service(session: AsyncSession, service_id: int) -> Service:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFound("Service not found")
    return service


async def create_service(session: AsyncSession, data: ServiceCreate) -> Service:
    service = Service.model_validate(data)
    session.add(service)
    await session.flush()
    await session.refresh(service)
    return service


async def update_service(session: AsyncSession, service_id: int, data: ServiceUpdate) -> Service:
    service = await get_service(session, service_id)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(service, key, value)
    session.add(service)
    await session.flush()
    await session.refresh(service)
    return service


async def delete_service(session: AsyncSession, service_id: int) -> bool:
    """Delete a service, or deactivate it when appointments reference it.

    Returns True if the row was removed, False if it was only deactivated.
    """
    service = await get_service(session, service_id)
    result = await session.execute(
        select(Appointment.id).where(Appointment.service_id == service_id).limit(1)
    )
    if result.first() is not None:
        service.is_active = False
        session.add(service)
        await session.flush()
        return False
    await session.delete(service)
    await session.flush()
    return True
