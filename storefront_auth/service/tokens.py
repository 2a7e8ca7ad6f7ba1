from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from storefront_auth.config import Settings
from storefront_auth.logging import audit_event, get_logger
from storefront_auth.service.errors import TokenInvalidError
from storefront_auth.service.generators import SecretGenerator
from storefront_auth.storage.common import CredentialStore
from storefront_auth.storage.models import Identity, RefreshToken, utcnow

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Signed access/refresh tokens with store-backed refresh rotation.

    Access and refresh tokens are HS256 JWTs signed with different secrets
    and tagged with a ``token_type`` claim, so neither can stand in for the
    other. A refresh token is only honoured while its exact string is
    persisted as a :class:`RefreshToken` row.
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
        self.settings = settings
        self.generator = generator or SecretGenerator()
        self._clock = clock
        self._secrets = {
            TokenKind.ACCESS: settings.jwt_secret.encode(),
            TokenKind.REFRESH: settings.refresh_secret.encode(),
        }

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_access_token(self, identity_id: str, email: str, is_admin: bool) -> str:
        token, _ = self._issue_access(identity_id, email, is_admin)
        return token

    def issue_refresh_token(self, identity_id: str, token_id: str) -> str:
        token, _ = self._issue_refresh(identity_id, token_id)
        return token

    def verify(self, token: str, kind: TokenKind) -> Optional[dict[str, Any]]:
        """Return the payload of a valid token of ``kind``; ``None`` for anything else."""

        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token, kind)
        if payload is None:
            return None
        if payload.get("token_type") != kind.value:
            logger.warning("jwt_wrong_token_type", expected=kind.value)
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        return payload

    def issue_pair(
        self,
        identity: Identity,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        """Mint an access/refresh pair and persist the refresh row."""

        record = self._new_refresh_record(identity.id, device_info, ip_address)
        self.store.create_refresh_token(record)
        access_token, access_exp = self._issue_access(identity.id, identity.email, identity.is_admin)
        return TokenPair(
            access_token=access_token,
            refresh_token=record.token,
            access_expires_at=access_exp,
            refresh_expires_at=record.expires_at,
        )

    def rotate(self, old_token: str) -> tuple[Identity, TokenPair]:
        """Exchange a refresh token for a new pair; the old token stops working.

        Raises :class:`TokenInvalidError` when the signature is bad, the row is
        gone (already rotated or revoked) or the owner no longer exists.
        """

        payload = self.verify(old_token, TokenKind.REFRESH)
        if payload is None:
            raise TokenInvalidError("signature_or_claims")
        identity = self.store.get_identity(payload["sub"])
        if not identity or identity.is_anonymized:
            raise TokenInvalidError("identity_missing")

        now = self._clock()
        rotated = self.store.rotate_refresh_token(
            old_token,
            now,
            lambda consumed: self._new_refresh_record(
                consumed.identity_id, consumed.device_info, consumed.ip_address
            ),
        )
        if rotated is None:
            # Signature checks out but the row is gone: replay of a rotated or revoked token
            audit_event(
                "refresh_token_replay",
                identity_id=identity.id,
                jti_hash=hashlib.sha256(payload["jti"].encode()).hexdigest()[:16],
            )
            raise TokenInvalidError("not_found")
        consumed, replacement = rotated
        if consumed.identity_id != identity.id:
            # row and claims disagree; the replacement must not survive
            self.store.delete_refresh_token(replacement.token)
            raise TokenInvalidError("subject_mismatch")

        access_token, access_exp = self._issue_access(identity.id, identity.email, identity.is_admin)
        logger.info("refresh_token_rotated", identity_id=identity.id)
        return identity, TokenPair(
            access_token=access_token,
            refresh_token=replacement.token,
            access_expires_at=access_exp,
            refresh_expires_at=replacement.expires_at,
        )

    def revoke(self, token: str) -> bool:
        return self.store.delete_refresh_token(token)

    def revoke_all(self, identity_id: str) -> int:
        revoked = self.store.delete_identity_refresh_tokens(identity_id)
        logger.info("refresh_tokens_revoked", identity_id=identity_id, count=revoked)
        return revoked

    # internals
    def _new_refresh_record(
        self, identity_id: str, device_info: Optional[str], ip_address: Optional[str]
    ) -> RefreshToken:
        token, expires_at = self._issue_refresh(identity_id, self.generator.token_hex(16))
        return RefreshToken(
            identity_id=identity_id,
            token=token,
            expires_at=expires_at,
            device_info=device_info,
            ip_address=ip_address,
            created_at=self._clock(),
        )

    def _issue_access(self, identity_id: str, email: str, is_admin: bool) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity_id,
            "email": email,
            "is_admin": bool(is_admin),
            "token_type": TokenKind.ACCESS.value,
            "jti": self.generator.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, TokenKind.ACCESS), expires_at

    def _issue_refresh(self, identity_id: str, token_id: str) -> tuple[str, datetime]:
        now = self._clock()
        expires_at = now + self.refresh_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity_id,
            "token_type": TokenKind.REFRESH.value,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload, TokenKind.REFRESH), expires_at

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _decode_jwt(self, token: str, kind: TokenKind) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm before looking at the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload
