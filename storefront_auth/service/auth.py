from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from storefront_auth.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    ForgotPasswordRequest,
    IdentityView,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ResetPasswordWithOtpRequest,
    SessionListResponse,
    SessionView,
    TokenPairResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    VerifyOtpRequest,
)
from storefront_auth.config import Settings
from storefront_auth.logging import audit_event, get_logger
from storefront_auth.service.email import NotificationKind, Notifier
from storefront_auth.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
    TransientStoreError,
    ValidationError,
)
from storefront_auth.service.generators import SecretGenerator
from storefront_auth.service.lockout import LockoutPolicy
from storefront_auth.service.otp import OtpVerificationService
from storefront_auth.service.password_reset import PasswordResetService
from storefront_auth.service.passwords import PasswordService
from storefront_auth.service.rate_limit import RateLimiter
from storefront_auth.service.sessions import SessionRegistry, describe_device
from storefront_auth.service.tokens import TokenKind, TokenPair, TokenService
from storefront_auth.service.two_factor import TwoFactorService
from storefront_auth.storage.common import CredentialStore
from storefront_auth.storage.errors import ConstraintViolation, StoreUnavailable
from storefront_auth.storage.models import Identity, utcnow

logger = get_logger(__name__)

RequestT = TypeVar("RequestT", bound=BaseModel)

GENERIC_RESET_ACK = "If an account exists for that email, password reset instructions have been sent"
GENERIC_OTP_ACK = "If an account exists for that email, a new verification code has been sent"
INVALID_OTP_MESSAGE = "Invalid or expired OTP"
INVALID_2FA_MESSAGE = "Invalid two-factor authentication code"


@dataclass
class AuthContext:
    identity_id: str
    email: str
    is_admin: bool
    token_id: str


def _token_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


class AuthOrchestrator:
    """Register, login, refresh, logout, verification, recovery and 2FA flows.

    Each flow consults the rate limiter, validates its request record before
    touching the store, then delegates to the component services. Outbound
    email is dispatched in the background and never fails the flow.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        limiter: RateLimiter,
        notifier: Notifier,
        passwords: PasswordService | None = None,
        generator: SecretGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.limiter = limiter
        self.notifier = notifier
        self.passwords = passwords or PasswordService()
        self.generator = generator or SecretGenerator()
        self._clock = clock
        self.tokens = TokenService(store, settings, generator=self.generator, clock=clock)
        self.lockout = LockoutPolicy(store, settings, clock=clock)
        self.two_factor = TwoFactorService(store, settings, generator=self.generator, clock=clock)
        self.otp = OtpVerificationService(store, settings, generator=self.generator, clock=clock)
        self.sessions = SessionRegistry(store, settings, generator=self.generator, clock=clock)
        self.resets = PasswordResetService(
            store,
            settings,
            passwords=self.passwords,
            tokens=self.tokens,
            sessions=self.sessions,
            generator=self.generator,
            clock=clock,
        )
        self._pending_notifications: set[asyncio.Task] = set()
        self._decoy_hash: Optional[str] = None

    # plumbing
    @contextlib.contextmanager
    def _store_guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            logger.error("credential_store_unavailable", operation=operation, error=str(exc))
            raise TransientStoreError(
                "Service temporarily unavailable, please retry"
            ) from exc

    @staticmethod
    def _parse(model: Type[RequestT], **data: Any) -> RequestT:
        try:
            return model(**data)
        except PydanticValidationError as exc:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise ValidationError("Validation error", detail={"errors": errors}) from None

    async def _limit(self, route: str, client_ip: Optional[str]) -> None:
        with self._store_guard(f"rate_limit:{route}"):
            await self.limiter.check(client_ip, route, self.settings.limit_for(route))

    def _notify(self, kind: NotificationKind, recipient: str, context: Mapping[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(
            self._deliver(kind, recipient, dict(context))
        )
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(self, kind: NotificationKind, recipient: str, context: dict) -> None:
        try:
            delivered = await asyncio.to_thread(self.notifier.send, kind, recipient, context)
        except Exception as exc:
            # delivery problems never reach the auth flow
            logger.error("notification_failed", kind=kind.value, error=str(exc))
            return
        if not delivered:
            logger.warning("notification_not_delivered", kind=kind.value)

    async def drain_notifications(self) -> None:
        """Wait for in-flight notifications; used on shutdown and in tests."""

        if self._pending_notifications:
            await asyncio.gather(*list(self._pending_notifications), return_exceptions=True)

    def _burn_password_check(self, password: str) -> None:
        """Spend a hash verification on unknown emails so response time does not reveal them."""

        if self._decoy_hash is None:
            self._decoy_hash, _ = self.passwords.hash(self.generator.token_hex(16))
        self.passwords.verify(self._decoy_hash, "argon2id", password)

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if not identity or identity.is_anonymized:
            raise NotFoundError("User not found")
        return identity

    def _start_session(
        self, identity: Identity, client_ip: Optional[str], user_agent: Optional[str]
    ) -> tuple[TokenPair, str]:
        pair = self.tokens.issue_pair(
            identity, device_info=describe_device(user_agent), ip_address=client_ip
        )
        session = self.sessions.create(identity.id, user_agent, client_ip)
        return pair, session.session_token

    # flows
    async def register(
        self,
        email: str,
        username: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResponse:
        await self._limit("register", client_ip)
        req = self._parse(
            RegisterRequest,
            email=email,
            username=username,
            password=password,
            first_name=first_name,
            last_name=last_name,
        )
        with self._store_guard("register"):
            if self.store.get_identity_by_email(req.email) or self.store.get_identity_by_username(
                req.username
            ):
                raise ConflictError("User with this email or username already exists")
            password_hash, algo = self.passwords.hash(req.password)
            try:
                identity = self.store.create_identity(
                    req.email,
                    req.username,
                    password_hash,
                    password_algo=algo,
                    first_name=req.first_name,
                    last_name=req.last_name,
                    created_at=self._clock(),
                )
            except ConstraintViolation as exc:
                # lost a race with a concurrent registration
                raise ConflictError(
                    "User with this email or username already exists", detail=exc.detail
                ) from None
            pair, session_token = self._start_session(identity, client_ip, user_agent)
            code = self.otp.issue(identity)
        logger.info("identity_registered", identity_id=identity.id)
        self._notify(
            NotificationKind.EMAIL_VERIFICATION_OTP,
            identity.email,
            {
                "code": code,
                "first_name": identity.first_name,
                "expires_in_minutes": self.settings.otp_ttl_minutes,
            },
        )
        return AuthResponse(
            message="Registration successful. Check your email for a verification code.",
            identity=IdentityView.from_identity(identity),
            tokens=_token_response(pair),
            session_token=session_token,
        )

    async def login(
        self,
        email: str,
        password: str,
        two_factor_code: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResponse:
        await self._limit("login", client_ip)
        req = self._parse(
            LoginRequest, email=email, password=password, two_factor_code=two_factor_code
        )
        with self._store_guard("login"):
            identity = self.store.get_identity_by_email(req.email)
            if not identity or identity.is_anonymized:
                self._burn_password_check(req.password)
                self.lockout.record_unknown(req.email)
                raise InvalidCredentialsError()
            self.lockout.ensure_not_locked(identity)

            if not self.passwords.verify(identity.password_hash, identity.password_algo, req.password):
                self.lockout.record_failure(identity)
                raise InvalidCredentialsError()

            if identity.two_factor.is_enabled:
                if not req.two_factor_code:
                    logger.info("two_factor_required", identity_id=identity.id)
                    return AuthResponse(
                        message="Two-factor authentication required",
                        identity=IdentityView.from_identity(identity),
                        two_factor_required=True,
                    )
                if not self.two_factor.verify(identity, req.two_factor_code):
                    audit_event("two_factor_login_failed", identity_id=identity.id)
                    self.lockout.record_failure(identity, reason="two_factor")
                    raise InvalidCredentialsError(INVALID_2FA_MESSAGE)

            now = self._clock()
            self.lockout.record_success(identity)
            if self.passwords.needs_rehash(identity.password_hash):
                new_hash, algo = self.passwords.hash(req.password)
                self.store.update_password(
                    identity.id,
                    new_hash,
                    algo,
                    identity.last_password_change or identity.created_at,
                )
                logger.info("password_rehashed", identity_id=identity.id)
            self.store.record_login(identity.id, now)
            pair, session_token = self._start_session(identity, client_ip, user_agent)
        logger.info("login_succeeded", identity_id=identity.id, device=describe_device(user_agent))
        if self.settings.login_alerts_enabled:
            self._notify(
                NotificationKind.SECURITY_ALERT,
                identity.email,
                {
                    "first_name": identity.first_name,
                    "message": f"Successful login from {client_ip or 'unknown IP'} at {now.isoformat()}",
                },
            )
        return AuthResponse(
            message="Login successful",
            identity=IdentityView.from_identity(identity),
            tokens=_token_response(pair),
            session_token=session_token,
        )

    async def refresh(
        self, refresh_token: str, *, client_ip: Optional[str] = None
    ) -> TokenPairResponse:
        await self._limit("refresh", client_ip)
        req = self._parse(RefreshRequest, refresh_token=refresh_token)
        with self._store_guard("refresh"):
            _, pair = self.tokens.rotate(req.refresh_token)
        return _token_response(pair)

    async def logout(
        self, refresh_token: Optional[str] = None, session_token: Optional[str] = None
    ) -> MessageResponse:
        req = self._parse(LogoutRequest, refresh_token=refresh_token, session_token=session_token)
        with self._store_guard("logout"):
            if req.refresh_token:
                self.tokens.revoke(req.refresh_token)
            if req.session_token:
                self.sessions.revoke(req.session_token)
        return MessageResponse(message="Logged out successfully")

    async def authenticate(self, access_token: str) -> AuthContext:
        """Resolve a bearer access token to the identity it was issued for."""

        payload = self.tokens.verify(access_token, TokenKind.ACCESS)
        if payload is None:
            raise TokenInvalidError("access_token_invalid")
        with self._store_guard("authenticate"):
            identity = self.store.get_identity(payload["sub"])
        if not identity or identity.is_anonymized:
            raise TokenInvalidError("identity_missing")
        if identity.is_locked(self._clock()):
            raise TokenInvalidError("identity_locked")
        return AuthContext(
            identity_id=identity.id,
            email=identity.email,
            is_admin=identity.is_admin,
            token_id=payload["jti"],
        )

    # email verification
    async def verify_email_otp(
        self, email: str, otp: str, *, client_ip: Optional[str] = None
    ) -> MessageResponse:
        await self._limit("verify_otp", client_ip)
        req = self._parse(VerifyOtpRequest, email=email, otp=otp)
        with self._store_guard("verify_email_otp"):
            identity = self.store.get_identity_by_email(req.email)
            if not identity or identity.is_anonymized:
                raise TokenInvalidError("identity_missing", INVALID_OTP_MESSAGE)
            if identity.email_verified:
                return MessageResponse(message="Email already verified")
            if not self.otp.verify(identity, req.otp):
                raise TokenInvalidError("otp_rejected", INVALID_OTP_MESSAGE)
            self.store.mark_email_verified(identity.id)
        logger.info("email_verified", identity_id=identity.id)
        return MessageResponse(message="Email verified successfully")

    async def resend_otp(self, email: str, *, client_ip: Optional[str] = None) -> MessageResponse:
        await self._limit("resend_otp", client_ip)
        req = self._parse(EmailRequest, email=email)
        with self._store_guard("resend_otp"):
            identity = self.store.get_identity_by_email(req.email)
            if not identity or identity.is_anonymized or identity.email_verified:
                return MessageResponse(message=GENERIC_OTP_ACK)
            code = self.otp.issue(identity)
        self._notify(
            NotificationKind.EMAIL_VERIFICATION_OTP,
            identity.email,
            {
                "code": code,
                "first_name": identity.first_name,
                "expires_in_minutes": self.settings.otp_ttl_minutes,
            },
        )
        return MessageResponse(message=GENERIC_OTP_ACK)

    # password recovery
    async def forgot_password(
        self, email: str, method: str = "token", *, client_ip: Optional[str] = None
    ) -> MessageResponse:
        await self._limit("forgot_password", client_ip)
        req = self._parse(ForgotPasswordRequest, email=email, method=method)
        with self._store_guard("forgot_password"):
            identity = self.store.get_identity_by_email(req.email)
            if not identity or identity.is_anonymized:
                logger.info("password_reset_unknown_email", method=req.method)
                return MessageResponse(message=GENERIC_RESET_ACK)
            if req.method == "otp":
                code = self.otp.issue(identity)
                kind = NotificationKind.PASSWORD_RESET_OTP
                context = {"code": code, "expires_in_minutes": self.settings.otp_ttl_minutes}
            else:
                record = self.resets.issue(identity)
                kind = NotificationKind.PASSWORD_RESET_LINK
                context = {
                    "token": record.token,
                    "expires_in_minutes": self.settings.password_reset_ttl_minutes,
                }
        self._notify(kind, identity.email, {"first_name": identity.first_name, **context})
        return MessageResponse(message=GENERIC_RESET_ACK)

    async def reset_password(
        self, token: str, new_password: str, *, client_ip: Optional[str] = None
    ) -> MessageResponse:
        await self._limit("reset_password", client_ip)
        req = self._parse(ResetPasswordRequest, token=token, new_password=new_password)
        with self._store_guard("reset_password"):
            self.resets.consume(req.token, req.new_password)
        return MessageResponse(message="Password reset successfully")

    async def reset_password_with_otp(
        self, email: str, otp: str, new_password: str, *, client_ip: Optional[str] = None
    ) -> MessageResponse:
        await self._limit("reset_password", client_ip)
        req = self._parse(
            ResetPasswordWithOtpRequest, email=email, otp=otp, new_password=new_password
        )
        with self._store_guard("reset_password_with_otp"):
            identity = self.store.get_identity_by_email(req.email)
            if not identity or identity.is_anonymized:
                raise TokenInvalidError("identity_missing", INVALID_OTP_MESSAGE)
            if not self.otp.verify(identity, req.otp):
                raise TokenInvalidError("otp_rejected", INVALID_OTP_MESSAGE)
            self.resets.apply_new_password(identity.id, req.new_password, method="otp")
        return MessageResponse(message="Password reset successfully")

    async def change_password(
        self,
        identity_id: str,
        current_password: str,
        new_password: str,
        *,
        client_ip: Optional[str] = None,
    ) -> MessageResponse:
        """Replace the password of a signed-in identity; every session must sign in again."""

        await self._limit("change_password", client_ip)
        req = self._parse(
            ChangePasswordRequest, current_password=current_password, new_password=new_password
        )
        with self._store_guard("change_password"):
            identity = self._require_identity(identity_id)
            self.lockout.ensure_not_locked(identity)
            if not self.passwords.verify(
                identity.password_hash, identity.password_algo, req.current_password
            ):
                self.lockout.record_failure(identity, reason="change_password")
                raise InvalidCredentialsError("Current password is incorrect")
            self.resets.apply_new_password(
                identity.id, req.new_password, method="change", event="password_changed"
            )
        self._notify(
            NotificationKind.SECURITY_ALERT,
            identity.email,
            {"first_name": identity.first_name, "message": "Password changed successfully"},
        )
        return MessageResponse(message="Password changed successfully")

    # two-factor
    async def begin_two_factor(self, identity_id: str) -> TwoFactorSetupResponse:
        with self._store_guard("begin_two_factor"):
            identity = self._require_identity(identity_id)
            details = self.two_factor.begin_enrollment(identity)
        return TwoFactorSetupResponse(
            secret=details.secret, otpauth_uri=details.otpauth_uri, qr_code=details.qr_code
        )

    async def confirm_two_factor(self, identity_id: str, code: str) -> MessageResponse:
        req = self._parse(TwoFactorCodeRequest, code=code)
        with self._store_guard("confirm_two_factor"):
            identity = self._require_identity(identity_id)
            if not self.two_factor.confirm(identity, req.code):
                audit_event("two_factor_confirm_rejected", identity_id=identity.id)
                raise ValidationError(INVALID_2FA_MESSAGE)
        self._notify(
            NotificationKind.TWO_FACTOR_ENABLED, identity.email, {"first_name": identity.first_name}
        )
        return MessageResponse(message="Two-factor authentication enabled")

    async def disable_two_factor(self, identity_id: str, code: str) -> MessageResponse:
        req = self._parse(TwoFactorCodeRequest, code=code)
        with self._store_guard("disable_two_factor"):
            identity = self._require_identity(identity_id)
            if not self.two_factor.disable(identity, req.code):
                audit_event("two_factor_disable_rejected", identity_id=identity.id)
                raise ValidationError(INVALID_2FA_MESSAGE)
        audit_event("two_factor_disabled", identity_id=identity.id)
        return MessageResponse(message="Two-factor authentication disabled")

    # sessions and account administration
    async def list_sessions(self, identity_id: str) -> SessionListResponse:
        with self._store_guard("list_sessions"):
            sessions = self.sessions.list_active(identity_id)
        return SessionListResponse(sessions=[SessionView.from_session(s) for s in sessions])

    async def touch_session(self, session_token: str) -> Optional[SessionView]:
        with self._store_guard("touch_session"):
            session = self.sessions.touch(session_token)
        return SessionView.from_session(session) if session else None

    async def revoke_session(self, identity_id: str, session_token: str) -> MessageResponse:
        with self._store_guard("revoke_session"):
            session = self.sessions.get(session_token)
            if not session or session.identity_id != identity_id:
                raise NotFoundError("Session not found")
            self.sessions.revoke(session_token)
        return MessageResponse(message="Session revoked")

    async def unlock_account(self, identity_id: str) -> MessageResponse:
        with self._store_guard("unlock_account"):
            self._require_identity(identity_id)
            self.lockout.unlock(identity_id)
        return MessageResponse(message="Account unlocked")

    async def delete_account(self, identity_id: str) -> MessageResponse:
        """Anonymize and lock the identity, then revoke every credential it holds."""

        with self._store_guard("delete_account"):
            self._require_identity(identity_id)
            self.store.anonymize_identity(identity_id, self._clock())
            refresh_revoked = self.tokens.revoke_all(identity_id)
            sessions_revoked = self.sessions.revoke_all(identity_id)
            self.store.invalidate_password_reset_tokens(identity_id)
        audit_event(
            "account_deleted",
            identity_id=identity_id,
            refresh_tokens_revoked=refresh_revoked,
            sessions_revoked=sessions_revoked,
        )
        return MessageResponse(message="Account deleted")

    async def sweep_expired(self) -> dict[str, int]:
        now = self._clock()
        with self._store_guard("sweep_expired"):
            counts = self.store.purge_expired(now, now - self.lockout.lockout)
            counts["rate_windows"] = await self.limiter.purge()
        logger.info("expired_credentials_swept", **counts)
        return counts
