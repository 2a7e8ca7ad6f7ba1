from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorStatus(str, Enum):
    DISABLED = "disabled"
    PENDING = "pending_confirmation"
    ENABLED = "enabled"


@dataclass(frozen=True)
class TwoFactorState:
    """Enrollment state of an identity's TOTP second factor.

    A disabled state never carries a secret. A pending or enabled state
    without one means the stored secret could not be decrypted, and no code
    verifies against it.
    """

    status: TwoFactorStatus = TwoFactorStatus.DISABLED
    secret: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status == TwoFactorStatus.DISABLED and self.secret is not None:
            raise ValueError("disabled two-factor state cannot carry a secret")

    @classmethod
    def disabled(cls) -> "TwoFactorState":
        return cls(TwoFactorStatus.DISABLED, None)

    @classmethod
    def pending(cls, secret: str) -> "TwoFactorState":
        return cls(TwoFactorStatus.PENDING, secret)

    @classmethod
    def enabled(cls, secret: str) -> "TwoFactorState":
        return cls(TwoFactorStatus.ENABLED, secret)

    @property
    def is_enabled(self) -> bool:
        return self.status == TwoFactorStatus.ENABLED

    @property
    def is_pending(self) -> bool:
        return self.status == TwoFactorStatus.PENDING


@dataclass(frozen=True)
class OtpRecord:
    code: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Identity:
    id: str
    email: str
    username: str
    password_hash: str
    password_algo: str = "argon2id"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_admin: bool = False
    two_factor: TwoFactorState = field(default_factory=TwoFactorState.disabled)
    failed_login_attempts: int = 0
    account_locked: bool = False
    lockout_until: Optional[datetime] = None
    email_verified: bool = False
    otp: Optional[OtpRecord] = None
    failed_otp_attempts: int = 0
    last_password_change: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    anonymized_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        """Locked with no expiry means locked until explicitly cleared."""
        if not self.account_locked:
            return False
        return self.lockout_until is None or self.lockout_until > now

    @property
    def is_anonymized(self) -> bool:
        return self.anonymized_at is not None


@dataclass
class RefreshToken:
    identity_id: str
    token: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class LoginSession:
    identity_id: str
    session_token: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    last_active_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class PasswordResetToken:
    identity_id: str
    token: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        return not self.used and self.expires_at > now
