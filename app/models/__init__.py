from app.models.user import User, UserCreate, UserPublic, UserRole
from app.models.service import Service, ServiceCreate, ServicePublic, ServiceUpdate
from app.models.availability import (
    AvailabilityWindow,
    AvailabilityWindowCreate,
    AvailabilityWindowPublic,
)
from app.models.appointment import (
    Appointment,
    AppointmentAdminPublic,
    AppointmentEvent,
    AppointmentEventPublic,
    AppointmentPublic,
    AppointmentStatus,
    AppointmentWithService,
)

__all__ = [
    "User",
    "UserCreate",
    "UserPublic",
    "UserRole",
    "Service",
    "ServiceCreate",
    "ServicePublic",
    "ServiceUpdate",
    "AvailabilityWindow",
    "AvailabilityWindowCreate",
    "AvailabilityWindowPublic",
    "Appointment",
    "AppointmentAdminPublic",
    "AppointmentEvent",
    "AppointmentEventPublic",
    "AppointmentPublic",
    "AppointmentStatus",
    "AppointmentWithService",
]
