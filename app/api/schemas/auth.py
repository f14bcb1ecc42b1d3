from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    full_name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class SignupResponse(BaseModel):
    # Token fields are empty while the email still has to be verified
    access_token: str | None = None
    token_type: str = "bearer"
    expires_in: int | None = None
    verification_required: bool = False
    dev_code: str | None = None  # only when email is not configured outside production


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1)


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class VerificationSentResponse(BaseModel):
    ok: bool = True
    dev_code: str | None = None
