from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.services.time_ranges import utc_naive_now


class Service(SQLModel, table=True):
    __tablename__ = "services"
    id: int | None = Field(default=None, primary_key=True)
    title: str
    description: str | None = None
    duration_minutes: int
    price_cents: int
    # 0 <= deposit_cents <= price_cents is expected but not enforced
    deposit_cents: int = 0
    images: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)


class ServiceCreate(SQLModel):
    title: str = Field(min_length=1)
    description: str | None = None
    duration_minutes: int = Field(gt=0)
    price_cents: int = Field(ge=0)
    deposit_cents: int = Field(default=0, ge=0)
    images: list[str] = Field(default_factory=list)
    is_active: bool = True


class ServiceUpdate(SQLModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    price_cents: int | None = Field(default=None, ge=0)
    deposit_cents: int | None = Field(default=None, ge=0)
    images: list[str] | None = None
    is_active: bool | None = None


class ServicePublic(SQLModel):
    id: int
    title: str
    description: str | None = None
    duration_minutes: int
    price_cents: int
    deposit_cents: int
    images: list[str]
    is_active: bool
    created_at: datetime
