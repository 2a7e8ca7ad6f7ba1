from __future__ import annotations

import hmac
from datetime import datetime, timedelta
from typing import Callable

from storefront_auth.config import Settings
from storefront_auth.logging import audit_event, get_logger
from storefront_auth.service.generators import SecretGenerator
from storefront_auth.storage.common import CredentialStore
from storefront_auth.storage.models import Identity, utcnow

logger = get_logger(__name__)


class OtpVerificationService:
    """Six-digit email codes for address verification and password recovery.

    One outstanding code per identity: issuing replaces any earlier code and a
    successful verification clears it. After ``otp_max_attempts`` wrong
    guesses the outstanding code is burned and a new one must be requested.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        generator: SecretGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self.max_attempts = settings.otp_max_attempts
        self.generator = generator or SecretGenerator()
        self._clock = clock

    def generate(self) -> str:
        return self.generator.otp_code()

    def issue(self, identity: Identity) -> str:
        code = self.generate()
        expires_at = self._clock() + self.ttl
        self.store.set_otp(identity.id, code, expires_at)
        logger.info("otp_issued", identity_id=identity.id, expires_at=expires_at.isoformat())
        return code

    def verify(self, identity: Identity, code: str) -> bool:
        current = self.store.get_identity(identity.id)
        if not current or not current.otp or not code:
            return False
        now = self._clock()
        record = current.otp
        if record.is_expired(now):
            logger.info("otp_expired", identity_id=identity.id)
            return False
        if not hmac.compare_digest(record.code.encode(), code.strip().encode()):
            self._record_miss(identity.id)
            return False
        # a concurrent verification may already have consumed the code
        consumed = self.store.consume_otp(identity.id, record.code, now)
        if consumed:
            identity.otp = None
            identity.failed_otp_attempts = 0
            logger.info("otp_verified", identity_id=identity.id)
        return consumed

    def _record_miss(self, identity_id: str) -> None:
        attempts = self.store.increment_failed_otp(identity_id)
        if attempts >= self.max_attempts:
            self.store.clear_otp(identity_id)
            audit_event("otp_burned", identity_id=identity_id, attempts=attempts)
        else:
            logger.info("otp_mismatch", identity_id=identity_id, attempts=attempts)
