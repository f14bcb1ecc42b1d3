import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import FeatureFlags, settings
from app.core.errors import Conflict, PermissionDenied, ValidationFailed
from app.core.security import create_access_token, hash_password, verify_password
from app.models.user import User, UserCreate, UserPublic
from app.services.catalog_service import is_demo_email
from app.services.time_ranges import utc_naive_now

VERIFICATION_CODE_TTL = timedelta(minutes=10)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def create_user(session: AsyncSession, data: UserCreate) -> User:
    user = User(
        email=data.email.strip().lower(),
        full_name=data.full_name,
        hashed_password=hash_password(data.password),
        is_guest=data.is_guest,
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


def user_to_public(user: User) -> UserPublic:
    return UserPublic(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        is_guest=user.is_guest,
    )


def make_access_token(user: User) -> tuple[str, int]:
    access = create_access_token(user.id, user.role.value)
    return access, settings.access_token_expire_minutes * 60


def _reject_demo_account(email: str, flags: FeatureFlags) -> None:
    if flags.hide_demo_content and is_demo_email(email):
        raise PermissionDenied("Account is disabled")


async def login_user(
    session: AsyncSession, email: str, password: str, flags: FeatureFlags
) -> tuple[User, str, int] | None:
    _reject_demo_account(email, flags)
    user = await get_user_by_email(session, email)
    if not user or not user.hashed_password:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if flags.require_email_verification and not user.is_guest and not user.verified_at:
        raise PermissionDenied("Email not verified")
    access, expires_in = make_access_token(user)
    return user, access, expires_in


def generate_verification_code() -> str:
    return str(100000 + secrets.randbelow(900000))


async def start_email_verification(session: AsyncSession, user: User, now: datetime | None = None) -> str:
    """Issue a new code for `user`, replacing any pending one. Only the hash is stored."""
    code = generate_verification_code()
    user.verification_code_hash = hash_password(code)
    user.verification_expires_at = (now or utc_naive_now()) + VERIFICATION_CODE_TTL
    session.add(user)
    await session.flush()
    return code


@dataclass
class SignupResult:
    user: User
    access_token: str | None = None
    expires_in: int | None = None
    # Set instead of a token when the account must verify its email first
    verification_code: str | None = None


async def signup_user(
    session: AsyncSession,
    email: str,
    password: str,
    flags: FeatureFlags,
    full_name: str | None = None,
) -> SignupResult:
    _reject_demo_account(email, flags)
    if await get_user_by_email(session, email):
        raise Conflict("An account with this email already exists")
    user = await create_user(session, UserCreate(email=email, password=password, full_name=full_name))
    if flags.require_email_verification:
        code = await start_email_verification(session, user)
        return SignupResult(user=user, verification_code=code)
    access, expires_in = make_access_token(user)
    return SignupResult(user=user, access_token=access, expires_in=expires_in)


async def resend_verification(
    session: AsyncSession, email: str, now: datetime | None = None
) -> tuple[User, str] | None:
    """New code for an unverified account; None when there is nothing to verify."""
    user = await get_user_by_email(session, email)
    if user is None or user.verified_at is not None or user.is_guest:
        return None
    return user, await start_email_verification(session, user, now)


async def verify_email(
    session: AsyncSession, email: str, code: str, now: datetime | None = None
) -> tuple[User, str, int]:
    now = now or utc_naive_now()
    user = await get_user_by_email(session, email)
    if user is None or not user.verification_code_hash or user.verification_expires_at is None:
        raise ValidationFailed("No pending verification for this email")
    if now > user.verification_expires_at:
        raise ValidationFailed("Verification code expired")
    if not verify_password(code.strip(), user.verification_code_hash):
        raise PermissionDenied("Invalid verification code")
    user.verified_at = now
    user.verification_code_hash = None
    user.verification_expires_at = None
    session.add(user)
    await session.flush()
    access, expires_in = make_access_token(user)
    return user, access, expires_in
