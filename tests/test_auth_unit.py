"""Flow-level tests for AuthOrchestrator against the in-memory store."""

from datetime import timedelta

import pyotp
import pytest

from storefront_auth.service.auth import GENERIC_OTP_ACK, GENERIC_RESET_ACK, AuthOrchestrator
from storefront_auth.service.email import NotificationKind
from storefront_auth.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    RateLimitedError,
    TokenInvalidError,
    TransientStoreError,
    ValidationError,
)
from storefront_auth.storage.errors import StoreUnavailable
from storefront_auth.storage.memory import MemoryStore

PASSWORD = "Sup3rSecret"
NEW_PASSWORD = "N3wSecretPass"
DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0"
MOBILE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148"
ARABIC_INDIC_CODE = "\u0661\u0662\u0663\u0664\u0665\u0666"


async def _register(orchestrator, email="shopper@example.com", username="shopper", **kwargs):
    kwargs.setdefault("client_ip", "203.0.113.7")
    kwargs.setdefault("user_agent", DESKTOP_UA)
    return await orchestrator.register(email, username, PASSWORD, "Ada", "Lovelace", **kwargs)


def _wrong_totp(secret, now):
    totp = pyotp.TOTP(secret)
    valid = {totp.at(int(now.timestamp()) + step * 30) for step in range(-2, 3)}
    return next(c for c in ("000000", "111111", "222222", "333333", "444444", "555555") if c not in valid)


class TestRegistration:
    async def test_register_returns_tokens_and_session(self, orchestrator, store):
        result = await _register(orchestrator)

        assert result.identity.email == "shopper@example.com"
        assert result.identity.email_verified is False
        assert result.tokens.token_type == "bearer"
        assert result.session_token and len(result.session_token) == 64
        assert store.get_identity_by_email("shopper@example.com").otp is not None

    async def test_register_sends_verification_code(self, orchestrator, store, notifier):
        await _register(orchestrator)
        await orchestrator.drain_notifications()

        sent = notifier.of_kind(NotificationKind.EMAIL_VERIFICATION_OTP)
        assert len(sent) == 1
        _, recipient, context = sent[0]
        assert recipient == "shopper@example.com"
        assert context["code"] == store.get_identity_by_email(recipient).otp.code

    async def test_duplicate_email_conflicts_case_insensitively(self, orchestrator):
        await _register(orchestrator)

        with pytest.raises(ConflictError):
            await _register(orchestrator, email="Shopper@Example.COM", username="other")

    async def test_duplicate_username_conflicts(self, orchestrator):
        await _register(orchestrator)

        with pytest.raises(ConflictError):
            await _register(orchestrator, email="second@example.com")

    async def test_invalid_input_rejected_before_store(self, orchestrator, store):
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.register("not-an-email", "ab", "weak")

        fields = {err["field"] for err in excinfo.value.detail["errors"]}
        assert {"email", "username", "password"} <= fields
        assert store.identities == {}

    async def test_rate_limit_applies_before_validation(self, orchestrator):
        for _ in range(5):
            with pytest.raises(ValidationError):
                await orchestrator.register("bad", "x", "y", client_ip="198.51.100.1")

        with pytest.raises(RateLimitedError) as excinfo:
            await orchestrator.register("bad", "x", "y", client_ip="198.51.100.1")
        assert excinfo.value.retry_after > 0

    async def test_notification_failure_does_not_fail_registration(self, store, settings, limiter, passwords, clock):
        class BrokenNotifier:
            def send(self, kind, recipient, context):
                raise RuntimeError("smtp down")

        orchestrator = AuthOrchestrator(
            store, settings, limiter=limiter, notifier=BrokenNotifier(), passwords=passwords, clock=clock
        )
        result = await _register(orchestrator)
        await orchestrator.drain_notifications()

        assert result.tokens is not None


class TestLogin:
    async def test_login_after_register(self, orchestrator, store, clock):
        await _register(orchestrator)
        clock.advance(minutes=1)

        result = await orchestrator.login("shopper@example.com", PASSWORD, user_agent=MOBILE_UA)

        assert result.message == "Login successful"
        assert result.tokens is not None
        assert store.get_identity_by_email("shopper@example.com").last_login_at == clock.now

    async def test_unknown_email_and_wrong_password_look_the_same(self, orchestrator):
        await _register(orchestrator)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await orchestrator.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await orchestrator.login("shopper@example.com", "Wr0ngPassword")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    async def test_unknown_email_does_not_create_identity(self, orchestrator, store):
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("nobody@example.com", PASSWORD)

        assert store.get_identity_by_email("nobody@example.com") is None
        assert store.login_probes["nobody@example.com"][0] == 1

    async def test_fifth_failure_locks_account(self, orchestrator):
        await _register(orchestrator)

        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login("shopper@example.com", "Wr0ngPassword")
        with pytest.raises(AccountLockedError):
            await orchestrator.login("shopper@example.com", "Wr0ngPassword")

        # the right password does not help while locked
        with pytest.raises(AccountLockedError) as excinfo:
            await orchestrator.login("shopper@example.com", PASSWORD)
        assert "locked_until" in excinfo.value.detail

    async def test_lock_expires_after_lockout_window(self, orchestrator, store, clock):
        await _register(orchestrator)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login("shopper@example.com", "Wr0ngPassword")
        with pytest.raises(AccountLockedError):
            await orchestrator.login("shopper@example.com", "Wr0ngPassword")

        clock.advance(minutes=31)
        result = await orchestrator.login("shopper@example.com", PASSWORD)

        assert result.tokens is not None
        identity = store.get_identity_by_email("shopper@example.com")
        assert identity.failed_login_attempts == 0
        assert identity.account_locked is False

    async def test_success_resets_failure_counter(self, orchestrator, store):
        await _register(orchestrator)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login("shopper@example.com", "Wr0ngPassword")

        await orchestrator.login("shopper@example.com", PASSWORD)

        assert store.get_identity_by_email("shopper@example.com").failed_login_attempts == 0

    async def test_admin_unlock(self, orchestrator):
        registered = await _register(orchestrator)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.login("shopper@example.com", "Wr0ngPassword")
        with pytest.raises(AccountLockedError):
            await orchestrator.login("shopper@example.com", "Wr0ngPassword")

        await orchestrator.unlock_account(registered.identity.id)
        result = await orchestrator.login("shopper@example.com", PASSWORD)

        assert result.tokens is not None

    async def test_store_outage_is_transient(self, settings, limiter, notifier, passwords, clock):
        class UnreachableStore(MemoryStore):
            def get_identity_by_email(self, email):
                raise StoreUnavailable("connection refused")

        orchestrator = AuthOrchestrator(
            UnreachableStore(), settings, limiter=limiter, notifier=notifier, passwords=passwords, clock=clock
        )

        with pytest.raises(TransientStoreError) as excinfo:
            await orchestrator.login("shopper@example.com", PASSWORD)
        assert excinfo.value.status_code == 503


class TestRefreshAndLogout:
    async def test_refresh_token_rotates_exactly_once(self, orchestrator):
        registered = await _register(orchestrator)
        old = registered.tokens.refresh_token

        rotated = await orchestrator.refresh(old)

        assert rotated.refresh_token != old
        assert rotated.access_token != registered.tokens.access_token
        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(old)
        # the replacement keeps working
        again = await orchestrator.refresh(rotated.refresh_token)
        assert again.refresh_token != rotated.refresh_token

    async def test_non_ascii_signature_is_invalid_token(self, orchestrator):
        registered = await _register(orchestrator)
        head, body, _ = registered.tokens.refresh_token.split(".")

        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(f"{head}.{body}.\u00e9\u00e9\u00e9")
        head, body, _ = registered.tokens.access_token.split(".")
        with pytest.raises(TokenInvalidError):
            await orchestrator.authenticate(f"{head}.{body}.\u00e9\u00e9\u00e9")

    async def test_access_token_cannot_refresh(self, orchestrator):
        registered = await _register(orchestrator)

        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(registered.tokens.access_token)

    async def test_logout_revokes_refresh_token_and_session(self, orchestrator, store):
        registered = await _register(orchestrator)

        result = await orchestrator.logout(
            refresh_token=registered.tokens.refresh_token, session_token=registered.session_token
        )

        assert result.message == "Logged out successfully"
        assert store.refresh_tokens == {}
        assert store.login_sessions == {}
        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(registered.tokens.refresh_token)

    async def test_authenticate_access_token(self, orchestrator, clock):
        registered = await _register(orchestrator)

        ctx = await orchestrator.authenticate(registered.tokens.access_token)
        assert ctx.identity_id == registered.identity.id
        assert ctx.email == "shopper@example.com"
        assert ctx.is_admin is False

        clock.advance(minutes=16)
        with pytest.raises(TokenInvalidError):
            await orchestrator.authenticate(registered.tokens.access_token)

    async def test_refresh_token_is_not_an_access_token(self, orchestrator):
        registered = await _register(orchestrator)

        with pytest.raises(TokenInvalidError):
            await orchestrator.authenticate(registered.tokens.refresh_token)


class TestEmailVerification:
    async def test_verify_email_with_code(self, orchestrator, store):
        await _register(orchestrator)
        code = store.get_identity_by_email("shopper@example.com").otp.code

        first = await orchestrator.verify_email_otp("shopper@example.com", code)
        second = await orchestrator.verify_email_otp("shopper@example.com", code)

        assert first.message == "Email verified successfully"
        assert second.message == "Email already verified"
        identity = store.get_identity_by_email("shopper@example.com")
        assert identity.email_verified is True
        assert identity.otp is None

    async def test_expired_code_rejected(self, orchestrator, store, clock):
        await _register(orchestrator)
        code = store.get_identity_by_email("shopper@example.com").otp.code

        clock.advance(minutes=10)
        with pytest.raises(TokenInvalidError) as excinfo:
            await orchestrator.verify_email_otp("shopper@example.com", code)
        assert excinfo.value.message == "Invalid or expired OTP"

    async def test_code_burned_after_max_misses(self, orchestrator, store):
        await _register(orchestrator)
        code = store.get_identity_by_email("shopper@example.com").otp.code
        wrong = "100000" if code != "100000" else "100001"

        for _ in range(5):
            with pytest.raises(TokenInvalidError):
                await orchestrator.verify_email_otp("shopper@example.com", wrong)

        with pytest.raises(TokenInvalidError):
            await orchestrator.verify_email_otp("shopper@example.com", code)
        assert store.get_identity_by_email("shopper@example.com").email_verified is False

    async def test_resend_replaces_code(self, orchestrator, store, notifier):
        await _register(orchestrator)
        first = store.get_identity_by_email("shopper@example.com").otp.code

        result = await orchestrator.resend_otp("shopper@example.com")
        await orchestrator.drain_notifications()

        assert result.message == GENERIC_OTP_ACK
        second = store.get_identity_by_email("shopper@example.com").otp.code
        assert len(notifier.of_kind(NotificationKind.EMAIL_VERIFICATION_OTP)) == 2
        if first != second:
            with pytest.raises(TokenInvalidError):
                await orchestrator.verify_email_otp("shopper@example.com", first)
        await orchestrator.verify_email_otp("shopper@example.com", second)

    async def test_resend_for_unknown_email_is_silent(self, orchestrator, notifier):
        result = await orchestrator.resend_otp("nobody@example.com")
        await orchestrator.drain_notifications()

        assert result.message == GENERIC_OTP_ACK
        assert notifier.sent == []


class TestPasswordRecovery:
    async def test_reset_with_token_revokes_everything(self, orchestrator, store, notifier):
        registered = await _register(orchestrator)

        ack = await orchestrator.forgot_password("shopper@example.com")
        await orchestrator.drain_notifications()
        assert ack.message == GENERIC_RESET_ACK
        token = notifier.of_kind(NotificationKind.PASSWORD_RESET_LINK)[0][2]["token"]

        result = await orchestrator.reset_password(token, NEW_PASSWORD)

        assert result.message == "Password reset successfully"
        assert store.refresh_tokens == {}
        assert store.login_sessions == {}
        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(registered.tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("shopper@example.com", PASSWORD)
        assert (await orchestrator.login("shopper@example.com", NEW_PASSWORD)).tokens is not None

    async def test_reset_token_is_single_use(self, orchestrator, notifier):
        await _register(orchestrator)
        await orchestrator.forgot_password("shopper@example.com")
        await orchestrator.drain_notifications()
        token = notifier.of_kind(NotificationKind.PASSWORD_RESET_LINK)[0][2]["token"]

        await orchestrator.reset_password(token, NEW_PASSWORD)
        with pytest.raises(TokenInvalidError):
            await orchestrator.reset_password(token, "Th1rdPassword")

    async def test_forgot_password_unknown_email_is_silent(self, orchestrator, notifier):
        ack = await orchestrator.forgot_password("nobody@example.com")
        await orchestrator.drain_notifications()

        assert ack.message == GENERIC_RESET_ACK
        assert notifier.sent == []

    async def test_malformed_reset_token_is_validation_error(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.reset_password("not-a-token", NEW_PASSWORD)

    async def test_weak_new_password_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.reset_password("a" * 64, "short")

    async def test_reset_with_otp(self, orchestrator, store, notifier):
        registered = await _register(orchestrator)

        await orchestrator.forgot_password("shopper@example.com", method="otp")
        await orchestrator.drain_notifications()
        code = notifier.of_kind(NotificationKind.PASSWORD_RESET_OTP)[0][2]["code"]

        await orchestrator.reset_password_with_otp("shopper@example.com", code, NEW_PASSWORD)

        with pytest.raises(TokenInvalidError):
            await orchestrator.refresh(registered.tokens.refresh_token)
        assert (await orchestrator.login("shopper@example.com", NEW_PASSWORD)).tokens is not None
        with pytest.raises(TokenInvalidError):
            await orchestrator.reset_password_with_otp("shopper@example.com", code, "Th1rdPassword")


class TestChangePassword:
    async def test_change_password_signs_out_everywhere(self, orchestrator, store, notifier, clock):
        registered = await _register(orchestrator)
        clock.advance(minutes=5)

        result = await orchestrator.change_password(registered.identity.id, PASSWORD, NEW_PASSWORD)
        await orchestrator.drain_notifications()

        assert result.message == "Password changed successfully"
        assert store.refresh_tokens == {}
        assert store.login_sessions == {}
        assert store.get_identity(registered.identity.id).last_password_change == clock.now
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("shopper@example.com", PASSWORD)
        assert (await orchestrator.login("shopper@example.com", NEW_PASSWORD)).tokens is not None
        alerts = notifier.of_kind(NotificationKind.SECURITY_ALERT)
        assert alerts[0][2]["message"] == "Password changed successfully"

    async def test_wrong_current_password_counts_as_failure(self, orchestrator, store):
        registered = await _register(orchestrator)

        with pytest.raises(InvalidCredentialsError) as excinfo:
            await orchestrator.change_password(registered.identity.id, "Wr0ngPassword", NEW_PASSWORD)

        assert excinfo.value.message == "Current password is incorrect"
        assert store.get_identity(registered.identity.id).failed_login_attempts == 1
        assert len(store.refresh_tokens) == 1

    async def test_repeated_wrong_current_password_locks(self, orchestrator):
        registered = await _register(orchestrator)

        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await orchestrator.change_password(
                    registered.identity.id, "Wr0ngPassword", NEW_PASSWORD
                )
        with pytest.raises(AccountLockedError):
            await orchestrator.change_password(registered.identity.id, "Wr0ngPassword", NEW_PASSWORD)
        with pytest.raises(AccountLockedError):
            await orchestrator.change_password(registered.identity.id, PASSWORD, NEW_PASSWORD)

    async def test_weak_new_password_rejected_before_store(self, orchestrator, store):
        registered = await _register(orchestrator)

        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.change_password(registered.identity.id, PASSWORD, "weak")

        fields = {err["field"] for err in excinfo.value.detail["errors"]}
        assert fields == {"new_password"}
        assert store.get_identity(registered.identity.id).failed_login_attempts == 0

    async def test_unknown_identity(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.change_password("missing", PASSWORD, NEW_PASSWORD)


class TestTwoFactor:
    async def _enable(self, orchestrator, clock):
        registered = await _register(orchestrator)
        setup = await orchestrator.begin_two_factor(registered.identity.id)
        code = pyotp.TOTP(setup.secret).at(int(clock.now.timestamp()))
        await orchestrator.confirm_two_factor(registered.identity.id, code)
        return registered, setup.secret

    async def test_setup_returns_provisioning_material(self, orchestrator, store):
        registered = await _register(orchestrator)

        setup = await orchestrator.begin_two_factor(registered.identity.id)

        assert len(setup.secret) == 32
        assert setup.otpauth_uri.startswith("otpauth://totp/")
        assert setup.qr_code.startswith("data:image/svg+xml;base64,")
        assert store.get_identity(registered.identity.id).two_factor.is_pending

    async def test_login_requires_second_factor(self, orchestrator, clock):
        await self._enable(orchestrator, clock)

        result = await orchestrator.login("shopper@example.com", PASSWORD)

        assert result.two_factor_required is True
        assert result.tokens is None
        assert result.session_token is None

    async def test_login_with_valid_code(self, orchestrator, clock):
        _, secret = await self._enable(orchestrator, clock)
        clock.advance(seconds=30)

        result = await orchestrator.login(
            "shopper@example.com", PASSWORD, pyotp.TOTP(secret).at(int(clock.now.timestamp()))
        )

        assert result.tokens is not None
        assert result.identity.two_factor_enabled is True

    async def test_login_with_wrong_code_counts_as_failure(self, orchestrator, store, clock):
        _, secret = await self._enable(orchestrator, clock)

        with pytest.raises(InvalidCredentialsError) as excinfo:
            await orchestrator.login("shopper@example.com", PASSWORD, _wrong_totp(secret, clock.now))

        assert excinfo.value.message == "Invalid two-factor authentication code"
        assert store.get_identity_by_email("shopper@example.com").failed_login_attempts == 1

    async def test_login_with_non_ascii_digits_counts_as_failure(self, orchestrator, store, clock):
        await self._enable(orchestrator, clock)

        with pytest.raises(InvalidCredentialsError) as excinfo:
            await orchestrator.login("shopper@example.com", PASSWORD, ARABIC_INDIC_CODE)

        assert excinfo.value.message == "Invalid two-factor authentication code"
        assert store.get_identity_by_email("shopper@example.com").failed_login_attempts == 1

    async def test_confirm_with_non_ascii_digits_is_rejected(self, orchestrator, store):
        registered = await _register(orchestrator)
        await orchestrator.begin_two_factor(registered.identity.id)

        with pytest.raises(ValidationError):
            await orchestrator.confirm_two_factor(registered.identity.id, ARABIC_INDIC_CODE)

        assert store.get_identity(registered.identity.id).two_factor.is_pending

    async def test_failed_confirmation_keeps_enrollment_pending(self, orchestrator, store, clock):
        registered = await _register(orchestrator)
        setup = await orchestrator.begin_two_factor(registered.identity.id)

        with pytest.raises(ValidationError):
            await orchestrator.confirm_two_factor(
                registered.identity.id, _wrong_totp(setup.secret, clock.now)
            )

        state = store.get_identity(registered.identity.id).two_factor
        assert state.is_pending
        assert state.secret == setup.secret

    async def test_enable_twice_conflicts(self, orchestrator, clock):
        registered, _ = await self._enable(orchestrator, clock)

        with pytest.raises(ConflictError):
            await orchestrator.begin_two_factor(registered.identity.id)

    async def test_disable_with_code(self, orchestrator, store, clock):
        registered, secret = await self._enable(orchestrator, clock)

        await orchestrator.disable_two_factor(
            registered.identity.id, pyotp.TOTP(secret).at(int(clock.now.timestamp()))
        )

        assert not store.get_identity(registered.identity.id).two_factor.is_enabled
        result = await orchestrator.login("shopper@example.com", PASSWORD)
        assert result.two_factor_required is False

    async def test_enabled_notification_sent(self, orchestrator, notifier, clock):
        await self._enable(orchestrator, clock)
        await orchestrator.drain_notifications()

        assert len(notifier.of_kind(NotificationKind.TWO_FACTOR_ENABLED)) == 1


class TestSessionsAndAccounts:
    async def test_list_sessions_newest_first(self, orchestrator, clock):
        registered = await _register(orchestrator)
        clock.advance(minutes=1)
        await orchestrator.login("shopper@example.com", PASSWORD, user_agent=MOBILE_UA)

        listing = await orchestrator.list_sessions(registered.identity.id)

        assert [s.device_info for s in listing.sessions] == ["Mobile Device", "Desktop"]

    async def test_revoke_foreign_session_not_found(self, orchestrator):
        first = await _register(orchestrator)
        second = await _register(orchestrator, email="other@example.com", username="other")

        with pytest.raises(NotFoundError):
            await orchestrator.revoke_session(second.identity.id, first.session_token)

        await orchestrator.revoke_session(first.identity.id, first.session_token)
        assert (await orchestrator.list_sessions(first.identity.id)).sessions == []

    async def test_touch_session_updates_last_active(self, orchestrator, clock):
        registered = await _register(orchestrator)
        clock.advance(minutes=5)

        view = await orchestrator.touch_session(registered.session_token)

        assert view.last_active_at == clock.now
        assert await orchestrator.touch_session("0" * 64) is None

    async def test_delete_account_anonymizes_and_revokes(self, orchestrator, store):
        registered = await _register(orchestrator)

        await orchestrator.delete_account(registered.identity.id)

        identity = store.get_identity(registered.identity.id)
        assert identity.is_anonymized
        assert identity.email != "shopper@example.com"
        assert store.refresh_tokens == {}
        assert store.login_sessions == {}
        with pytest.raises(InvalidCredentialsError):
            await orchestrator.login("shopper@example.com", PASSWORD)
        with pytest.raises(TokenInvalidError):
            await orchestrator.authenticate(registered.tokens.access_token)
        with pytest.raises(NotFoundError):
            await orchestrator.delete_account(registered.identity.id)

    async def test_sweep_expired(self, orchestrator, clock):
        await _register(orchestrator)
        clock.advance(days=31)

        counts = await orchestrator.sweep_expired()

        assert counts["refresh_tokens"] == 1
        assert counts["login_sessions"] == 1
        assert counts["rate_windows"] == 1
        assert counts["password_reset_tokens"] == 0
