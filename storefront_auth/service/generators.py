from __future__ import annotations

import base64
import secrets
from typing import Callable

OTP_SPAN = 900_000
OTP_FLOOR = 100_000
# Largest multiple of OTP_SPAN that fits in 32 bits; draws at or above it are rejected
OTP_ACCEPT_BELOW = (0xFFFFFFFF // OTP_SPAN) * OTP_SPAN


class SecretGenerator:
    """Cryptographically secure tokens, one-time codes and TOTP secrets.

    ``random_bytes`` is injectable so tests can feed deterministic draws.
    """

    def __init__(self, random_bytes: Callable[[int], bytes] = secrets.token_bytes) -> None:
        self._random_bytes = random_bytes

    def token_hex(self, nbytes: int = 32) -> str:
        """Opaque token; 32 bytes gives the 64 hex characters used for every stored token."""
        return self._random_bytes(nbytes).hex()

    def otp_code(self) -> str:
        """Six-digit code uniformly distributed over 100000..999999."""

        while True:
            draw = int.from_bytes(self._random_bytes(4), "big")
            if draw < OTP_ACCEPT_BELOW:
                return str(draw % OTP_SPAN + OTP_FLOOR)

    def totp_secret(self, nbytes: int = 20) -> str:
        return base64.b32encode(self._random_bytes(nbytes)).decode("utf-8").rstrip("=")
