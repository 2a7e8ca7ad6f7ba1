from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import ConflictError, ValidationError
from storefront_auth.service.generators import SecretGenerator
from storefront_auth.storage.common import CredentialStore
from storefront_auth.storage.models import Identity, TwoFactorState, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


@dataclass
class EnrollmentDetails:
    secret: str
    otpauth_uri: str
    qr_code: str  # data: URL holding an SVG image


class TwoFactorService:
    """TOTP (RFC 6238, SHA1, 30s, 6 digits) enrollment and verification.

    Disabled -> begin_enrollment -> PendingConfirmation -> confirm -> Enabled.
    A failed confirmation keeps the pending secret so the user can retry.
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
        self.issuer = settings.totp_issuer
        self.valid_window = settings.totp_valid_window
        self.generator = generator or SecretGenerator()
        self._clock = clock

    def begin_enrollment(self, identity: Identity) -> EnrollmentDetails:
        if identity.two_factor.is_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        secret = self.generator.totp_secret()
        self.store.set_two_factor(identity.id, TwoFactorState.pending(secret))
        identity.two_factor = TwoFactorState.pending(secret)
        uri = self.provisioning_uri(secret, identity.email)
        logger.info("two_factor_enrollment_started", identity_id=identity.id)
        return EnrollmentDetails(secret=secret, otpauth_uri=uri, qr_code=self.qr_code_data_url(uri))

    def confirm(self, identity: Identity, code: str) -> bool:
        state = identity.two_factor
        if state.is_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not state.is_pending:
            raise ValidationError("Two-factor enrollment has not been started")
        if not self.verify_code(state.secret, code):
            logger.info("two_factor_confirm_failed", identity_id=identity.id)
            return False
        enabled = TwoFactorState.enabled(state.secret)
        self.store.set_two_factor(identity.id, enabled)
        identity.two_factor = enabled
        logger.info("two_factor_enabled", identity_id=identity.id)
        return True

    def verify(self, identity: Identity, code: str) -> bool:
        """Check a login code against an enabled secret."""

        if not identity.two_factor.is_enabled:
            return False
        return self.verify_code(identity.two_factor.secret, code)

    def disable(self, identity: Identity, code: str) -> bool:
        if not identity.two_factor.is_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if not self.verify_code(identity.two_factor.secret, code):
            return False
        self.store.set_two_factor(identity.id, TwoFactorState.disabled())
        identity.two_factor = TwoFactorState.disabled()
        logger.info("two_factor_disabled", identity_id=identity.id)
        return True

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def qr_code_data_url(uri: str) -> str:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image(image_factory=SvgPathImage)
        stream = io.BytesIO()
        img.save(stream)
        encoded = base64.b64encode(stream.getvalue()).decode("utf-8")
        return f"data:image/svg+xml;base64,{encoded}"

    def verify_code(self, secret: Optional[str], code: str, at: Optional[datetime] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != TOTP_DIGITS or not (code.isascii() and code.isdigit()):
            return False
        timestamp = (at or self._clock()).timestamp()
        for offset in range(-self.valid_window, self.valid_window + 1):
            generated = self.generate_code(secret, timestamp + offset * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated.encode(), code.encode()):
                return True
        return False

    def generate_code(self, secret: str, timestamp: float) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // TOTP_INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)
