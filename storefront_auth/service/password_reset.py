from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

from storefront_auth.config import Settings
from storefront_auth.logging import audit_event, get_logger
from storefront_auth.service.errors import TokenInvalidError
from storefront_auth.service.generators import SecretGenerator
from storefront_auth.service.passwords import PasswordService
from storefront_auth.service.sessions import SessionRegistry
from storefront_auth.service.tokens import TokenService
from storefront_auth.storage.common import CredentialStore
from storefront_auth.storage.models import Identity, PasswordResetToken, utcnow

logger = get_logger(__name__)


class PasswordResetService:
    """Single-use, time-boxed reset tokens.

    By default issuing a token leaves earlier unused tokens valid; set
    ``PASSWORD_RESET_SINGLE_ACTIVE`` to invalidate them on each issue.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: PasswordService,
        tokens: TokenService,
        sessions: SessionRegistry,
        generator: SecretGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=settings.password_reset_ttl_minutes)
        self.single_active = settings.password_reset_single_active
        self.passwords = passwords
        self.tokens = tokens
        self.sessions = sessions
        self.generator = generator or SecretGenerator()
        self._clock = clock

    def issue(self, identity: Identity) -> PasswordResetToken:
        if self.single_active:
            superseded = self.store.invalidate_password_reset_tokens(identity.id)
            if superseded:
                logger.info("password_reset_tokens_superseded", identity_id=identity.id, count=superseded)
        now = self._clock()
        record = PasswordResetToken(
            identity_id=identity.id,
            token=self.generator.token_hex(),
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.store.create_password_reset_token(record)
        logger.info("password_reset_requested", identity_id=identity.id)
        return record

    def consume(self, token: str, new_password: str) -> str:
        """Redeem ``token`` and set ``new_password``; returns the identity id."""

        record = self.store.consume_password_reset_token(token, self._clock())
        if record is None:
            raise TokenInvalidError("reset_token_unusable")
        self.apply_new_password(record.identity_id, new_password, method="token")
        return record.identity_id

    def apply_new_password(
        self,
        identity_id: str,
        new_password: str,
        *,
        method: str,
        event: str = "password_reset_completed",
    ) -> None:
        """Store the new hash and sign the identity out everywhere."""

        password_hash, algo = self.passwords.hash(new_password)
        self.store.update_password(identity_id, password_hash, algo, self._clock())
        refresh_revoked = self.tokens.revoke_all(identity_id)
        sessions_revoked = self.sessions.revoke_all(identity_id)
        audit_event(
            event,
            identity_id=identity_id,
            method=method,
            refresh_tokens_revoked=refresh_revoked,
            sessions_revoked=sessions_revoked,
        )
