"""Common storage utilities shared between memory and postgres implementations.

Both backends implement :class:`CredentialStore`; the auth services only
ever talk to that protocol.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from storefront_auth.logging import get_logger
from storefront_auth.storage.models import (
    Identity,
    LoginSession,
    PasswordResetToken,
    RefreshToken,
    TwoFactorState,
)

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def anonymized_email(identity_id: str) -> str:
    """Placeholder address that keeps the unique email column satisfied."""
    return f"deleted-{identity_id}@anonymized.invalid"


def anonymized_username(identity_id: str) -> str:
    return f"deleted-{identity_id}"


class SecretBox:
    """Fernet envelope for TOTP secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize secret cipher without key material")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def seal(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def open(self, sealed: Optional[str]) -> Optional[str]:
        if not sealed:
            return sealed
        try:
            return self._fernet.decrypt(sealed.encode()).decode()
        except InvalidToken:
            logger.error("two_factor_secret_decrypt_failed")
            return None

    def seal_state(self, state: TwoFactorState) -> TwoFactorState:
        if state.secret is None:
            return state
        return TwoFactorState(state.status, self.seal(state.secret))

    def open_state(self, state: TwoFactorState) -> TwoFactorState:
        if state.secret is None:
            return state
        return TwoFactorState(state.status, self.open(state.secret))


class CredentialStore(Protocol):
    # identities
    def create_identity(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_admin: bool = False,
        created_at: Optional[datetime] = None,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity_by_username(self, username: str) -> Optional[Identity]: ...

    def update_password(
        self, identity_id: str, password_hash: str, password_algo: str, changed_at: datetime
    ) -> None: ...

    def set_admin(self, identity_id: str, is_admin: bool) -> Optional[Identity]: ...

    def mark_email_verified(self, identity_id: str) -> Optional[Identity]: ...

    def record_login(self, identity_id: str, at: datetime) -> None: ...

    def set_two_factor(self, identity_id: str, state: TwoFactorState) -> None: ...

    def anonymize_identity(self, identity_id: str, at: datetime) -> Optional[Identity]: ...

    # lockout
    def increment_failed_logins(self, identity_id: str) -> int: ...

    def record_login_probe(self, email: str, at: datetime) -> int: ...

    def lock_identity(self, identity_id: str, until: Optional[datetime]) -> None: ...

    def reset_failed_logins(self, identity_id: str) -> None: ...

    # one-time passcodes
    def set_otp(self, identity_id: str, code: str, expires_at: datetime) -> None: ...

    def consume_otp(self, identity_id: str, code: str, now: datetime) -> bool: ...

    def increment_failed_otp(self, identity_id: str) -> int: ...

    def clear_otp(self, identity_id: str) -> None: ...

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        token: str,
        now: datetime,
        build_replacement: Callable[[RefreshToken], RefreshToken],
    ) -> Optional[tuple[RefreshToken, RefreshToken]]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_identity_refresh_tokens(self, identity_id: str) -> int: ...

    # login sessions
    def create_login_session(self, record: LoginSession) -> LoginSession: ...

    def get_login_session(self, session_token: str, now: datetime) -> Optional[LoginSession]: ...

    def touch_login_session(self, session_token: str, now: datetime) -> Optional[LoginSession]: ...

    def delete_login_session(self, session_token: str) -> bool: ...

    def delete_identity_sessions(self, identity_id: str) -> int: ...

    def list_login_sessions(self, identity_id: str, now: datetime) -> List[LoginSession]: ...

    # password reset
    def create_password_reset_token(self, record: PasswordResetToken) -> PasswordResetToken: ...

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def invalidate_password_reset_tokens(self, identity_id: str) -> int: ...

    # maintenance
    def purge_expired(self, now: datetime, probe_cutoff: datetime) -> dict[str, int]: ...
