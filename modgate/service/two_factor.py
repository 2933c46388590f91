from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
import time
from typing import Optional
from urllib.parse import quote, urlencode

import segno

from modgate.logging import get_logger

logger = get_logger(__name__)


class TwoFactorChallenge:
    """RFC 6238 time-based one-time codes.

    HMAC-SHA1 with 30 second steps and 6 digits, which is what authenticator
    apps assume when the provisioning URI omits the algorithm.
    """

    def __init__(
        self,
        issuer: str = "Modgate",
        *,
        digits: int = 6,
        interval: int = 30,
        skew_steps: int = 1,
    ) -> None:
        self.issuer = issuer
        self.digits = digits
        self.interval = interval
        self.skew_steps = skew_steps

    def generate_new_secret(self) -> str:
        # 160-bit seed, the size RFC 4226 recommends for SHA1
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}")
        params = urlencode(
            {"secret": secret, "issuer": self.issuer, "digits": self.digits, "period": self.interval}
        )
        return f"otpauth://totp/{label}?{params}"

    def generate_qr_code_image_uri(self, secret: str, account_label: str) -> str:
        """Render the provisioning URI as a PNG data URI for authenticator enrollment."""
        qr = segno.make(self.provisioning_uri(secret, account_label), error="m")
        return qr.png_data_uri(scale=5)

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        normalized = secret.strip().replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            return base64.b32decode(padded)
        except (ValueError, TypeError):
            return None

    def generate_code(self, secret: str, timestamp: Optional[float] = None) -> str:
        key = self._decode_secret(secret)
        if not key:
            logger.warning("totp_secret_invalid")
            return ""
        moment = time.time() if timestamp is None else timestamp
        counter = struct.pack(">Q", int(moment // self.interval))
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def is_otp_valid(
        self, secret: Optional[str], submitted_code: object, *, timestamp: Optional[float] = None
    ) -> bool:
        """Check a submitted code against the current step and one step either side.

        Never raises: missing secrets and non-numeric or wrong-length input are
        simply invalid.
        """
        if not secret or not isinstance(submitted_code, str):
            return False
        code = submitted_code.strip()
        if len(code) != self.digits or not code.isdigit() or not code.isascii():
            return False
        moment = time.time() if timestamp is None else timestamp
        matched = False
        for step in range(-self.skew_steps, self.skew_steps + 1):
            expected = self.generate_code(secret, moment + step * self.interval)
            # Compare every candidate so timing does not reveal which step matched
            if expected and hmac.compare_digest(expected, code):
                matched = True
        return matched
