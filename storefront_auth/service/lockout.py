from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Callable

from storefront_auth.config import Settings
from storefront_auth.logging import audit_event, get_logger
from storefront_auth.service.errors import AccountLockedError
from storefront_auth.storage.common import CredentialStore, normalize_email
from storefront_auth.storage.models import Identity, utcnow

logger = get_logger(__name__)


def _email_hash(email: str) -> str:
    return hashlib.sha256(normalize_email(email).encode()).hexdigest()


class LockoutPolicy:
    """Per-identity failed-login counter with a timed lock.

    Active -> Locked(until) after ``max_failed_logins`` consecutive failures;
    back to Active when the lock expires, an admin unlocks, or a login succeeds.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_failures = settings.max_failed_logins
        self.lockout = timedelta(minutes=settings.lockout_minutes)
        self._clock = clock

    def ensure_not_locked(self, identity: Identity) -> None:
        """Raise :class:`AccountLockedError` while a lock is in force.

        An expired lock is lifted here so the counter starts from zero again.
        """

        now = self._clock()
        if identity.is_locked(now):
            raise AccountLockedError(identity.lockout_until or now)
        if identity.account_locked:
            self.store.reset_failed_logins(identity.id)
            identity.account_locked = False
            identity.lockout_until = None
            identity.failed_login_attempts = 0
            logger.info("account_lock_expired", identity_id=identity.id)

    def record_failure(self, identity: Identity, *, reason: str = "password") -> int:
        """Count one failure; locks and raises on the failure that hits the limit."""

        attempts = self.store.increment_failed_logins(identity.id)
        logger.info(
            "login_failure_recorded", identity_id=identity.id, attempts=attempts, reason=reason
        )
        if attempts >= self.max_failures:
            until = self._clock() + self.lockout
            self.store.lock_identity(identity.id, until)
            audit_event(
                "account_locked",
                identity_id=identity.id,
                attempts=attempts,
                reason=reason,
                locked_until=until.isoformat(),
            )
            raise AccountLockedError(until)
        return attempts

    def record_unknown(self, email: str) -> int:
        """Track failures against an address with no account, without creating one."""

        attempts = self.store.record_login_probe(email, self._clock())
        if attempts >= self.max_failures and attempts % self.max_failures == 0:
            audit_event("login_probe_threshold", email_hash=_email_hash(email), attempts=attempts)
        return attempts

    def record_success(self, identity: Identity) -> None:
        # reset even when the snapshot looks clean; it may predate a concurrent failure
        self.store.reset_failed_logins(identity.id)
        identity.failed_login_attempts = 0
        identity.account_locked = False
        identity.lockout_until = None

    def unlock(self, identity_id: str) -> None:
        self.store.reset_failed_logins(identity_id)
        audit_event("account_unlocked", identity_id=identity_id)
