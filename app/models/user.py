from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from app.services.time_ranges import utc_naive_now


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserBase(SQLModel):
    email: str = Field(unique=True, index=True)
    full_name: str | None = None
    is_guest: bool = False


class User(UserBase, table=True):
    __tablename__ = "users"
    id: int | None = Field(default=None, primary_key=True)
    hashed_password: str | None = None
    role: UserRole = Field(default=UserRole.USER)
    verified_at: datetime | None = None
    # Pending email verification code (bcrypt hash) and when it stops being accepted
    verification_code_hash: str | None = None
    verification_expires_at: datetime | None = None
    # Customer id at the payment provider, set the first time a card is saved
    payment_customer_reference: str | None = None
    created_at: datetime = Field(default_factory=utc_naive_now)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class UserCreate(SQLModel):
    email: str
    password: str
    full_name: str | None = None
    is_guest: bool = False


class UserPublic(SQLModel):
    id: int
    email: str
    full_name: str | None = None
    role: UserRole
    is_guest: bool
