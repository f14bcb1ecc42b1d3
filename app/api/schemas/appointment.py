from datetime import datetime

from pydantic import BaseModel, Field

from app.models.appointment import AppointmentPublic, AppointmentStatus


class AvailableSlotsResponse(BaseModel):
    date: str  # YYYY-MM-DD
    service_id: int
    duration_minutes: int
    slots: list[datetime]  # UTC start instants, ascending


class BookAppointmentRequest(BaseModel):
    service_id: int
    start_utc: datetime


class BookingResponse(BaseModel):
    appointment: AppointmentPublic
    checkout_url: str | None = None


class PayWithSavedMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)


class CancellationResponse(BaseModel):
    appointment: AppointmentPublic
    status: AppointmentStatus
    deposit_forfeited: bool
    refunded: bool
    refund_amount_cents: int
    simulated: bool
    already_closed: bool
    message: str


class RefundRequest(BaseModel):
    appointment_id: int
    amount_cents: int | None = None


class RefundResponse(BaseModel):
    appointment: AppointmentPublic
    refund_id: str
    amount_cents: int
    full: bool


class WindowDeletedResponse(BaseModel):
    ok: bool = True
    canceled_appointments: int


class SavedCardPublic(BaseModel):
    id: str
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None


class SavedCardsResponse(BaseModel):
    methods: list[SavedCardPublic]
