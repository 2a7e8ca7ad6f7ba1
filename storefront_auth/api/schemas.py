from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from storefront_auth.service.passwords import password_problems
from storefront_auth.storage.models import Identity, LoginSession

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")
_RESET_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")

MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 100


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters used for look-alike spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _clean_email(value: str) -> str:
    value = _normalize_unicode(value or "").strip().lower()
    if len(value) > 254 or not _EMAIL_PATTERN.match(value):
        raise ValueError("Invalid email format")
    return value


def _clean_otp(value: str) -> str:
    value = (value or "").strip()
    if not _OTP_PATTERN.match(value):
        raise ValueError("OTP must be 6 digits")
    return value


def _check_password(value: str) -> str:
    problems = password_problems(value)
    if problems:
        raise ValueError("Password must contain " + ", ".join(problems))
    return value


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "account_locked",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


EmailAddress = Annotated[str, AfterValidator(_clean_email)]
OtpCode = Annotated[str, AfterValidator(_clean_otp)]
NewPassword = Annotated[str, Field(max_length=MAX_PASSWORD_LENGTH), AfterValidator(_check_password)]


# requests
class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_max_length=1024)


class RegisterRequest(_Request):
    email: EmailAddress
    username: str
    password: NewPassword
    first_name: Optional[str] = Field(None, max_length=MAX_NAME_LENGTH)
    last_name: Optional[str] = Field(None, max_length=MAX_NAME_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = _normalize_unicode(value or "").strip()
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "Username must be 3-32 characters of letters, digits, '.', '_' or '-'"
            )
        return value

    @field_validator("first_name", "last_name")
    @classmethod
    def _clean_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = _normalize_unicode(value).strip()
        return value or None


class LoginRequest(_Request):
    email: EmailAddress
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    two_factor_code: Optional[str] = None

    @field_validator("two_factor_code")
    @classmethod
    def _blank_code_is_missing(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class RefreshRequest(_Request):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(_Request):
    refresh_token: Optional[str] = None
    session_token: Optional[str] = None


class EmailRequest(_Request):
    email: EmailAddress


class VerifyOtpRequest(EmailRequest):
    otp: OtpCode


class ForgotPasswordRequest(EmailRequest):
    method: Literal["token", "otp"] = "token"


class ResetPasswordRequest(_Request):
    token: str
    new_password: NewPassword

    @field_validator("token")
    @classmethod
    def _validate_token(cls, value: str) -> str:
        value = (value or "").strip().lower()
        if not _RESET_TOKEN_PATTERN.match(value):
            raise ValueError("Invalid reset token format")
        return value


class ResetPasswordWithOtpRequest(VerifyOtpRequest):
    new_password: NewPassword


class ChangePasswordRequest(_Request):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: NewPassword

class TwoFactorCodeRequest(_Request):
    code: OtpCode


# responses
class IdentityView(BaseModel):
    id: str
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_admin: bool = False
    email_verified: bool = False
    two_factor_enabled: bool = False

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityView":
        return cls(
            id=identity.id,
            email=identity.email,
            username=identity.username,
            first_name=identity.first_name,
            last_name=identity.last_name,
            is_admin=identity.is_admin,
            email_verified=identity.email_verified,
            two_factor_enabled=identity.two_factor.is_enabled,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    message: str
    identity: IdentityView
    tokens: Optional[TokenPairResponse] = None
    session_token: Optional[str] = None
    two_factor_required: bool = False


class MessageResponse(BaseModel):
    message: str


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str


class SessionView(BaseModel):
    session_token: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    last_active_at: datetime
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: LoginSession) -> "SessionView":
        return cls(
            session_token=session.session_token,
            device_info=session.device_info,
            ip_address=session.ip_address,
            last_active_at=session.last_active_at,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionView]
