from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from storefront_auth.logging import get_logger
from storefront_auth.storage.common import (
    SecretBox,
    anonymized_email,
    anonymized_username,
    normalize_email,
)
from storefront_auth.storage.errors import ConstraintViolation, StoreUnavailable
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

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store.

    Compound operations are single statements or run inside one transaction
    so concurrent requests cannot consume the same refresh or reset token.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._box = SecretBox(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc)) from exc

    def ensure_schema(self) -> None:
        """Apply the bundled schema; every statement is idempotent."""

        ddl = SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # row mapping
    def _identity_from_row(self, row: dict) -> Identity:
        status = TwoFactorStatus(row.get("two_factor_status") or TwoFactorStatus.DISABLED.value)
        secret = row.get("two_factor_secret")
        otp = None
        if row.get("otp_code") and row.get("otp_expires_at"):
            otp = OtpRecord(code=row["otp_code"], expires_at=row["otp_expires_at"])
        return Identity(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_admin=bool(row.get("is_admin")),
            two_factor=self._box.open_state(TwoFactorState(status, secret)),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            account_locked=bool(row.get("account_locked")),
            lockout_until=row.get("lockout_until"),
            email_verified=bool(row.get("email_verified")),
            otp=otp,
            failed_otp_attempts=row.get("failed_otp_attempts") or 0,
            last_password_change=row.get("last_password_change"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            anonymized_at=row.get("anonymized_at"),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            identity_id=str(row["identity_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> LoginSession:
        return LoginSession(
            identity_id=str(row["identity_id"]),
            session_token=row["session_token"],
            expires_at=row["expires_at"],
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
            last_active_at=row.get("last_active_at") or utcnow(),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _reset_from_row(row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            identity_id=str(row["identity_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            used=bool(row.get("used")),
            created_at=row.get("created_at") or utcnow(),
        )

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
        identity_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO identity (id, email, username, password_hash, password_algo,
                                          first_name, last_name, is_admin, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity_id,
                        normalize_email(email),
                        username,
                        password_hash,
                        password_algo,
                        first_name,
                        last_name,
                        is_admin,
                        created_at or utcnow(),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        if not _is_uuid(identity_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM identity WHERE id = %s", (identity_id,)).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM identity WHERE username = %s", (username,)
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def update_password(
        self, identity_id: str, password_hash: str, password_algo: str, changed_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE identity
                SET password_hash = %s, password_algo = %s, last_password_change = %s
                WHERE id = %s
                """,
                (password_hash, password_algo, changed_at, identity_id),
            )

    def set_admin(self, identity_id: str, is_admin: bool) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE identity SET is_admin = %s WHERE id = %s RETURNING *",
                (is_admin, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def mark_email_verified(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE identity SET email_verified = TRUE WHERE id = %s RETURNING *",
                (identity_id,),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def record_login(self, identity_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE identity SET last_login_at = %s WHERE id = %s", (at, identity_id)
            )

    def set_two_factor(self, identity_id: str, state: TwoFactorState) -> None:
        sealed = self._box.seal_state(state)
        with self._connect() as conn:
            conn.execute(
                "UPDATE identity SET two_factor_status = %s, two_factor_secret = %s WHERE id = %s",
                (sealed.status.value, sealed.secret, identity_id),
            )

    def anonymize_identity(self, identity_id: str, at: datetime) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity
                SET email = %s, username = %s, first_name = NULL, last_name = NULL,
                    password_hash = '', two_factor_status = 'disabled', two_factor_secret = NULL,
                    otp_code = NULL, otp_expires_at = NULL,
                    account_locked = TRUE, lockout_until = NULL, anonymized_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (anonymized_email(identity_id), anonymized_username(identity_id), at, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # lockout
    def increment_failed_logins(self, identity_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity SET failed_login_attempts = failed_login_attempts + 1
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (identity_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return row["failed_login_attempts"]

    def record_login_probe(self, email: str, at: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO login_probe (email, attempts, last_seen) VALUES (%s, 1, %s)
                ON CONFLICT (email) DO UPDATE
                SET attempts = login_probe.attempts + 1, last_seen = EXCLUDED.last_seen
                RETURNING attempts
                """,
                (normalize_email(email), at),
            ).fetchone()
        return row["attempts"]

    def lock_identity(self, identity_id: str, until: Optional[datetime]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE identity SET account_locked = TRUE, lockout_until = %s WHERE id = %s",
                (until, identity_id),
            )

    def reset_failed_logins(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE identity
                SET failed_login_attempts = 0, account_locked = FALSE, lockout_until = NULL
                WHERE id = %s
                """,
                (identity_id,),
            )

    # one-time passcodes
    def set_otp(self, identity_id: str, code: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE identity SET otp_code = %s, otp_expires_at = %s, failed_otp_attempts = 0
                WHERE id = %s
                """,
                (code, expires_at, identity_id),
            )

    def consume_otp(self, identity_id: str, code: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity
                SET otp_code = NULL, otp_expires_at = NULL, failed_otp_attempts = 0
                WHERE id = %s AND otp_code = %s AND otp_expires_at > %s
                RETURNING id
                """,
                (identity_id, code, now),
            ).fetchone()
        return row is not None

    def increment_failed_otp(self, identity_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE identity SET failed_otp_attempts = failed_otp_attempts + 1
                WHERE id = %s
                RETURNING failed_otp_attempts
                """,
                (identity_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("identity not found", {"identity_id": identity_id})
        return row["failed_otp_attempts"]

    def clear_otp(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE identity SET otp_code = NULL, otp_expires_at = NULL, failed_otp_attempts = 0
                WHERE id = %s
                """,
                (identity_id,),
            )

    # refresh tokens
    def _insert_refresh_token(self, conn, record: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (token, identity_id, device_info, ip_address, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                record.token,
                record.identity_id,
                record.device_info,
                record.ip_address,
                record.expires_at,
                record.created_at,
            ),
        )

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation("refresh token rejected", {"error": exc.__class__.__name__})
        return record

    def get_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s AND expires_at > %s",
                (token, now),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        token: str,
        now: datetime,
        build_replacement: Callable[[RefreshToken], RefreshToken],
    ) -> Optional[tuple[RefreshToken, RefreshToken]]:
        # the DELETE row lock serialises concurrent rotations of the same token
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s RETURNING *", (token,)
            ).fetchone()
            if not row:
                return None
            consumed = self._refresh_from_row(row)
            if consumed.is_expired(now):
                return None
            replacement = build_replacement(consumed)
            self._insert_refresh_token(conn, replacement)
        return consumed, replacement

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
        return cur.rowcount > 0

    def delete_identity_refresh_tokens(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE identity_id = %s", (identity_id,))
        return cur.rowcount

    # login sessions
    def create_login_session(self, record: LoginSession) -> LoginSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO login_session (session_token, identity_id, device_info, ip_address,
                                               expires_at, last_active_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.session_token,
                        record.identity_id,
                        record.device_info,
                        record.ip_address,
                        record.expires_at,
                        record.last_active_at,
                        record.created_at,
                    ),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation("login session rejected", {"error": exc.__class__.__name__})
        return record

    def get_login_session(self, session_token: str, now: datetime) -> Optional[LoginSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM login_session WHERE session_token = %s AND expires_at > %s",
                (session_token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_login_session(self, session_token: str, now: datetime) -> Optional[LoginSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE login_session SET last_active_at = %s
                WHERE session_token = %s AND expires_at > %s
                RETURNING *
                """,
                (now, session_token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_login_session(self, session_token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM login_session WHERE session_token = %s", (session_token,)
            )
        return cur.rowcount > 0

    def delete_identity_sessions(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM login_session WHERE identity_id = %s", (identity_id,))
        return cur.rowcount

    def list_login_sessions(self, identity_id: str, now: datetime) -> List[LoginSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_session
                WHERE identity_id = %s AND expires_at > %s
                ORDER BY last_active_at DESC
                """,
                (identity_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # password reset
    def create_password_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (token, identity_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (record.token, record.identity_id, record.expires_at, record.used, record.created_at),
                )
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            raise ConstraintViolation("reset token rejected", {"error": exc.__class__.__name__})
        return record

    def consume_password_reset_token(
        self, token: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE
                WHERE token = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        return self._reset_from_row(row) if row else None

    def invalidate_password_reset_tokens(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE password_reset_token SET used = TRUE WHERE identity_id = %s AND used = FALSE",
                (identity_id,),
            )
        return cur.rowcount

    # maintenance
    def purge_expired(self, now: datetime, probe_cutoff: datetime) -> dict[str, int]:
        with self._connect() as conn, conn.transaction():
            refresh = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            sessions = conn.execute("DELETE FROM login_session WHERE expires_at <= %s", (now,))
            resets = conn.execute(
                "DELETE FROM password_reset_token WHERE used = TRUE OR expires_at <= %s", (now,)
            )
            probes = conn.execute("DELETE FROM login_probe WHERE last_seen <= %s", (probe_cutoff,))
        return {
            "refresh_tokens": refresh.rowcount,
            "login_sessions": sessions.rowcount,
            "password_reset_tokens": resets.rowcount,
            "login_probes": probes.rowcount,
        }
