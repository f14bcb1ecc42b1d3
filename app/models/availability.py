from datetime import datetime

from pydantic import model_validator
from sqlmodel import Field, SQLModel

from app.services.time_ranges import utc_naive_now


class AvailabilityWindow(SQLModel, table=True):
    """A block of time during which bookings are offered. Windows may overlap."""

    __tablename__ = "availability_windows"
    id: int | None = Field(default=None, primary_key=True)
    start_utc: datetime = Field(index=True)
    end_utc: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)


class AvailabilityWindowCreate(SQLModel):
    start_utc: datetime
    end_utc: datetime

    @model_validator(mode="after")
    def _start_before_end(self) -> "AvailabilityWindowCreate":
        if self.start_utc >= self.end_utc:
            raise ValueError("start_utc must be before end_utc")
        return self


class AvailabilityWindowPublic(SQLModel):
    id: int
    start_utc: datetime
    end_utc: datetime
