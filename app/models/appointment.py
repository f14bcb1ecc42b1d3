from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from app.models.service import ServicePublic
from app.services.time_ranges import utc_naive_now


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"
    COMPLETED = "COMPLETED"


# Canceled and refunded appointments no longer hold their time range.
INACTIVE_STATUSES = (AppointmentStatus.CANCELED, AppointmentStatus.REFUNDED)
OPEN_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)
# An admin may still refund a canceled appointment, e.g. a deposit that arrived late.
REFUNDABLE_STATUSES = (*OPEN_STATUSES, AppointmentStatus.CANCELED)


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    service_id: int = Field(foreign_key="services.id", index=True)
    start_utc: datetime = Field(index=True)
    end_utc: datetime = Field(index=True)
    status: AppointmentStatus = Field(default=AppointmentStatus.PENDING, index=True)
    payment_reference: str | None = Field(default=None, index=True)
    payment_session_reference: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES


class AppointmentEvent(SQLModel, table=True):
    """Append-only history of status changes for one appointment."""

    __tablename__ = "appointment_events"
    id: int | None = Field(default=None, primary_key=True)
    appointment_id: int = Field(foreign_key="appointments.id", index=True)
    event: str
    from_status: AppointmentStatus | None = None
    to_status: AppointmentStatus
    detail: str | None = None
    created_at: datetime = Field(default_factory=utc_naive_now)


class AppointmentPublic(SQLModel):
    id: int
    user_id: int
    service_id: int
    start_utc: datetime
    end_utc: datetime
    status: AppointmentStatus
    payment_reference: str | None = None
    payment_session_reference: str | None = None
    created_at: datetime


class AppointmentWithService(AppointmentPublic):
    service: ServicePublic | None = None


class AppointmentAdminPublic(AppointmentPublic):
    user_email: str
    user_full_name: str | None = None
    service_title: str


class AppointmentEventPublic(SQLModel):
    id: int
    appointment_id: int
    event: str
    from_status: AppointmentStatus | None = None
    to_status: AppointmentStatus
    detail: str | None = None
    created_at: datetime
