from __future__ import annotations

import hmac
import json
import os
import secrets
import tempfile
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from storefront_auth.logging import get_logger
from storefront_auth.storage.common import (
    SecretBox,
    anonymized_email,
    anonymized_username,
    normalize_email,
)
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.models import (
    Identity,
    LoginSession,
    OtpRecord,
    PasswordResetToken,
    RefreshToken,
    TwoFactorState,
    TwoFactorStatus,
    utcnow,
)


class MemoryStore:
    """In-process credential store for single-instance deployments and tests.

    Every compound operation (rotation, reset consumption, counter updates)
    runs under one re-entrant lock, which gives the same compare-and-delete
    guarantees the Postgres store gets from transactions.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.login_sessions: Dict[str, LoginSession] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # email -> (count, last_seen) for failed logins against unknown addresses
        self.login_probes: Dict[str, tuple[int, datetime]] = {}
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root and not mfa_encryption_key:
            raise RuntimeError("mfa_encryption_key is required when persisting state")
        self._box = SecretBox(mfa_encryption_key or secrets.token_urlsafe(32))
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

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
    ) -> Identity:
        normalized = normalize_email(email)
        with self._data_lock:
            for existing in self.identities.values():
                if existing.email == normalized:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
            identity = Identity(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                password_hash=password_hash,
                password_algo=password_algo,
                first_name=first_name,
                last_name=last_name,
                is_admin=is_admin,
                created_at=created_at or utcnow(),
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return self._export(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return self._export(identity) if identity else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.email == normalized), None
            )
            return self._export(identity) if identity else None

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.username == username), None
            )
            return self._export(identity) if identity else None

    def update_password(
        self, identity_id: str, password_hash: str, password_algo: str, changed_at: datetime
    ) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.password_hash = password_hash
            identity.password_algo = password_algo
            identity.last_password_change = changed_at
            self._persist_state()

    def set_admin(self, identity_id: str, is_admin: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.is_admin = is_admin
            self._persist_state()
            return self._export(identity)

    def mark_email_verified(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.email_verified = True
            self._persist_state()
            return self._export(identity)

    def record_login(self, identity_id: str, at: datetime) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.last_login_at = at
            self._persist_state()

    def set_two_factor(self, identity_id: str, state: TwoFactorState) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.two_factor = self._box.seal_state(state)
            self._persist_state()

    def anonymize_identity(self, identity_id: str, at: datetime) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.email = anonymized_email(identity_id)
            identity.username = anonymized_username(identity_id)
            identity.first_name = None
            identity.last_name = None
            identity.password_hash = ""
            identity.two_factor = TwoFactorState.disabled()
            identity.otp = None
            identity.account_locked = True
            identity.lockout_until = None
            identity.anonymized_at = at
            self._persist_state()
            return self._export(identity)

    # lockout
    def increment_failed_logins(self, identity_id: str) -> int:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.failed_login_attempts += 1
            self._persist_state()
            return identity.failed_login_attempts

    def record_login_probe(self, email: str, at: datetime) -> int:
        normalized = normalize_email(email)
        with self._data_lock:
            count, _ = self.login_probes.get(normalized, (0, at))
            self.login_probes[normalized] = (count + 1, at)
            return count + 1

    def lock_identity(self, identity_id: str, until: Optional[datetime]) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.account_locked = True
            identity.lockout_until = until
            self._persist_state()

    def reset_failed_logins(self, identity_id: str) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.failed_login_attempts = 0
            identity.account_locked = False
            identity.lockout_until = None
            self._persist_state()

    # one-time passcodes
    def set_otp(self, identity_id: str, code: str, expires_at: datetime) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.otp = OtpRecord(code=code, expires_at=expires_at)
            identity.failed_otp_attempts = 0
            self._persist_state()

    def consume_otp(self, identity_id: str, code: str, now: datetime) -> bool:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity or not identity.otp:
                return False
            record = identity.otp
            if record.is_expired(now):
                return False
            if not hmac.compare_digest(record.code.encode(), code.encode()):
                return False
            identity.otp = None
            identity.failed_otp_attempts = 0
            self._persist_state()
            return True

    def increment_failed_otp(self, identity_id: str) -> int:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.failed_otp_attempts += 1
            self._persist_state()
            return identity.failed_otp_attempts

    def clear_otp(self, identity_id: str) -> None:
        with self._data_lock:
            identity = self._require(identity_id)
            identity.otp = None
            identity.failed_otp_attempts = 0
            self._persist_state()

    # refresh tokens
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self._require(record.identity_id)
            self.refresh_tokens[record.token] = replace(record)
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if not record or record.is_expired(now):
                return None
            return replace(record)

    def rotate_refresh_token(
        self,
        token: str,
        now: datetime,
        build_replacement: Callable[[RefreshToken], RefreshToken],
    ) -> Optional[tuple[RefreshToken, RefreshToken]]:
        with self._data_lock:
            consumed = self.refresh_tokens.pop(token, None)
            if consumed is None:
                return None
            if consumed.is_expired(now):
                self._persist_state()
                return None
            replacement = build_replacement(replace(consumed))
            self.refresh_tokens[replacement.token] = replace(replacement)
            self._persist_state()
            return consumed, replacement

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_identity_refresh_tokens(self, identity_id: str) -> int:
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.identity_id == identity_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # login sessions
    def create_login_session(self, record: LoginSession) -> LoginSession:
        with self._data_lock:
            if record.session_token in self.login_sessions:
                raise ConstraintViolation("session token already exists", {"field": "session_token"})
            self._require(record.identity_id)
            self.login_sessions[record.session_token] = replace(record)
            self._persist_state()
            return replace(record)

    def get_login_session(self, session_token: str, now: datetime) -> Optional[LoginSession]:
        with self._data_lock:
            record = self.login_sessions.get(session_token)
            if not record or record.is_expired(now):
                return None
            return replace(record)

    def touch_login_session(self, session_token: str, now: datetime) -> Optional[LoginSession]:
        with self._data_lock:
            record = self.login_sessions.get(session_token)
            if not record or record.is_expired(now):
                return None
            record.last_active_at = now
            self._persist_state()
            return replace(record)

    def delete_login_session(self, session_token: str) -> bool:
        with self._data_lock:
            removed = self.login_sessions.pop(session_token, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_identity_sessions(self, identity_id: str) -> int:
        with self._data_lock:
            stale = [
                t for t, sess in self.login_sessions.items() if sess.identity_id == identity_id
            ]
            for token in stale:
                self.login_sessions.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_login_sessions(self, identity_id: str, now: datetime) -> List[LoginSession]:
        with self._data_lock:
            active = [
                replace(sess)
                for sess in self.login_sessions.values()
                if sess.identity_id == identity_id and not sess.is_expired(now)
            ]
        return sorted(active, key=lambda s: s.last_active_at, reverse=True)

    # password reset
    def create_password_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            if record.token in self.reset_tokens:
                raise ConstraintViolation("reset token already exists", {"field": "token"})
            self._require(record.identity_id)
            self.reset_tokens[record.token] = replace(record)
            self._persist_state()
            return replace(record)

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            if not record or not record.is_usable(now):
                return None
            record.used = True
            self._persist_state()
            return replace(record)

    def invalidate_password_reset_tokens(self, identity_id: str) -> int:
        with self._data_lock:
            count = 0
            for record in self.reset_tokens.values():
                if record.identity_id == identity_id and not record.used:
                    record.used = True
                    count += 1
            if count:
                self._persist_state()
            return count

    # maintenance
    def purge_expired(self, now: datetime, probe_cutoff: datetime) -> dict[str, int]:
        with self._data_lock:
            expired_refresh = [t for t, r in self.refresh_tokens.items() if r.is_expired(now)]
            for token in expired_refresh:
                self.refresh_tokens.pop(token, None)
            expired_sessions = [t for t, s in self.login_sessions.items() if s.is_expired(now)]
            for token in expired_sessions:
                self.login_sessions.pop(token, None)
            dead_resets = [t for t, r in self.reset_tokens.items() if not r.is_usable(now)]
            for token in dead_resets:
                self.reset_tokens.pop(token, None)
            stale_probes = [e for e, (_, seen) in self.login_probes.items() if seen <= probe_cutoff]
            for email in stale_probes:
                self.login_probes.pop(email, None)
            counts = {
                "refresh_tokens": len(expired_refresh),
                "login_sessions": len(expired_sessions),
                "password_reset_tokens": len(dead_resets),
                "login_probes": len(stale_probes),
            }
            if any(counts.values()):
                self._persist_state()
            return counts

    # helpers
    def _require(self, identity_id: str) -> Identity:
        identity = self.identities.get(identity_id)
        if not identity:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return identity

    def _export(self, identity: Identity) -> Identity:
        """Detached copy with the two-factor secret decrypted."""
        return replace(identity, two_factor=self._box.open_state(identity.two_factor))

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_record(self, record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _serialize_identity(self, identity: Identity) -> dict:
        data = self._serialize_record(identity)
        data["two_factor"] = {
            "status": identity.two_factor.status.value,
            "secret": identity.two_factor.secret,
        }
        data["otp"] = (
            {
                "code": identity.otp.code,
                "expires_at": self._serialize_datetime(identity.otp.expires_at),
            }
            if identity.otp
            else None
        )
        return data

    def _deserialize_identity(self, data: dict) -> Identity:
        two_factor = data.pop("two_factor", None) or {}
        otp = data.pop("otp", None)
        for key in ("lockout_until", "last_password_change", "last_login_at", "created_at", "anonymized_at"):
            data[key] = self._deserialize_datetime(data.get(key))
        return Identity(
            **data,
            two_factor=TwoFactorState(
                TwoFactorStatus(two_factor.get("status", TwoFactorStatus.DISABLED.value)),
                two_factor.get("secret"),
            ),
            otp=(
                OtpRecord(otp["code"], self._deserialize_datetime(otp["expires_at"]))
                if otp
                else None
            ),
        )

    def _deserialize_dated(self, cls, data: dict, keys: tuple[str, ...]):
        for key in keys:
            data[key] = self._deserialize_datetime(data.get(key))
        return cls(**data)

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "refresh_tokens": [self._serialize_record(r) for r in self.refresh_tokens.values()],
            "login_sessions": [self._serialize_record(s) for s in self.login_sessions.values()],
            "reset_tokens": [self._serialize_record(r) for r in self.reset_tokens.values()],
        }
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix="credential_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist credential state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            raw["id"]: self._deserialize_identity(raw) for raw in data.get("identities", [])
        }
        self.refresh_tokens = {
            raw["token"]: self._deserialize_dated(RefreshToken, raw, ("expires_at", "created_at"))
            for raw in data.get("refresh_tokens", [])
        }
        self.login_sessions = {
            raw["session_token"]: self._deserialize_dated(
                LoginSession, raw, ("expires_at", "last_active_at", "created_at")
            )
            for raw in data.get("login_sessions", [])
        }
        self.reset_tokens = {
            raw["token"]: self._deserialize_dated(
                PasswordResetToken, raw, ("expires_at", "created_at")
            )
            for raw in data.get("reset_tokens", [])
        }
        self.logger.info(
            "credential_state_loaded",
            identities=len(self.identities),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
