import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user, get_feature_flags, get_notifier
from app.api.schemas.auth import (
    LoginRequest,
    ResendVerificationRequest,
    SignupRequest,
    SignupResponse,
    TokenResponse,
    VerificationSentResponse,
    VerifyEmailRequest,
)
from app.core.config import FeatureFlags, settings
from app.core.db import get_session
from app.core.errors import DeliveryUnavailable
from app.models.user import User, UserPublic
from app.services.auth_service import (
    VERIFICATION_CODE_TTL,
    login_user,
    resend_verification,
    signup_user,
    user_to_public,
    verify_email,
)
from app.services.email_service import Notifier, build_verification_code_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _require_delivery(notifier: Notifier) -> None:
    if settings.is_production and not notifier.enabled:
        raise DeliveryUnavailable("Email delivery is not configured")


async def _send_code(notifier: Notifier, email: str, code: str) -> str | None:
    """Email the code. Returns it when email is not configured, for manual relay in development."""
    subject, body = build_verification_code_message(
        code, settings.site_name, int(VERIFICATION_CODE_TTL.total_seconds() // 60)
    )
    await notifier.send(email, subject, body)
    return None if notifier.enabled else code


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    session: AsyncSession = Depends(get_session),
    flags: FeatureFlags = Depends(get_feature_flags),
) -> TokenResponse:
    result = await login_user(session, body.email, body.password, flags)
    if not result:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    _, access, expires_in = result
    return TokenResponse(access_token=access, expires_in=expires_in)


@router.post("/signup", response_model=SignupResponse, status_code=status.HTTP_201_CREATED)
async def signup(
    body: SignupRequest,
    session: AsyncSession = Depends(get_session),
    flags: FeatureFlags = Depends(get_feature_flags),
    notifier: Notifier = Depends(get_notifier),
) -> SignupResponse:
    if flags.require_email_verification:
        _require_delivery(notifier)
    result = await signup_user(session, body.email, body.password, flags, body.full_name)
    logger.info("New account %s", result.user.id)
    if result.verification_code:
        dev_code = await _send_code(notifier, result.user.email, result.verification_code)
        return SignupResponse(verification_required=True, dev_code=dev_code)
    return SignupResponse(access_token=result.access_token, expires_in=result.expires_in)


@router.post("/verify", response_model=TokenResponse)
async def verify(
    body: VerifyEmailRequest,
    session: AsyncSession = Depends(get_session),
) -> TokenResponse:
    _, access, expires_in = await verify_email(session, body.email, body.code)
    return TokenResponse(access_token=access, expires_in=expires_in)


@router.post("/verify/resend", response_model=VerificationSentResponse)
async def resend(
    body: ResendVerificationRequest,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
) -> VerificationSentResponse:
    """Same answer whether or not the account exists."""
    _require_delivery(notifier)
    pending = await resend_verification(session, body.email)
    if pending is None:
        return VerificationSentResponse()
    user, code = pending
    return VerificationSentResponse(dev_code=await _send_code(notifier, user.email, code))


@router.get("/me", response_model=UserPublic)
async def me(current_user: User = Depends(get_current_user)) -> UserPublic:
    return user_to_public(current_user)
