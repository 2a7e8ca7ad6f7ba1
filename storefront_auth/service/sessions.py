from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.generators import SecretGenerator
from storefront_auth.storage.common import CredentialStore
from storefront_auth.storage.models import LoginSession, utcnow

logger = get_logger(__name__)


def describe_device(user_agent: Optional[str]) -> str:
    """Coarse device label for the signed-in devices list; not a security signal."""

    if not user_agent:
        return "Unknown Device"
    if "Mobile" in user_agent:
        return "Mobile Device"
    if "Tablet" in user_agent or "iPad" in user_agent:
        return "Tablet"
    return "Desktop"


class SessionRegistry:
    """Human-visible signed-in devices, independent of token rotation."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        generator: SecretGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(days=settings.session_ttl_days)
        self.generator = generator or SecretGenerator()
        self._clock = clock

    def create(
        self, identity_id: str, user_agent: Optional[str] = None, ip_address: Optional[str] = None
    ) -> LoginSession:
        now = self._clock()
        session = LoginSession(
            identity_id=identity_id,
            session_token=self.generator.token_hex(),
            expires_at=now + self.ttl,
            device_info=describe_device(user_agent),
            ip_address=ip_address,
            last_active_at=now,
            created_at=now,
        )
        self.store.create_login_session(session)
        logger.info("login_session_created", identity_id=identity_id, device=session.device_info)
        return session

    def touch(self, session_token: str) -> Optional[LoginSession]:
        return self.store.touch_login_session(session_token, self._clock())

    def get(self, session_token: str) -> Optional[LoginSession]:
        return self.store.get_login_session(session_token, self._clock())

    def revoke(self, session_token: str) -> bool:
        return self.store.delete_login_session(session_token)

    def revoke_all(self, identity_id: str) -> int:
        revoked = self.store.delete_identity_sessions(identity_id)
        logger.info("login_sessions_revoked", identity_id=identity_id, count=revoked)
        return revoked

    def list_active(self, identity_id: str) -> List[LoginSession]:
        return self.store.list_login_sessions(identity_id, self._clock())
