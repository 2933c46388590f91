"""Tests for TOTP generation and validation."""

import base64
from urllib.parse import parse_qs, urlparse

import pytest

from modgate.service.two_factor import TwoFactorChallenge

# RFC 6238 appendix B seed and vectors (SHA1, truncated to 6 digits)
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode("ascii")


@pytest.fixture
def totp():
    return TwoFactorChallenge("Modgate")


class TestSecretGeneration:
    def test_secret_is_base32_with_160_bits(self, totp):
        secret = totp.generate_new_secret()

        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        assert len(base64.b32decode(padded)) == 20

    def test_secrets_are_unique(self, totp):
        assert totp.generate_new_secret() != totp.generate_new_secret()

    def test_provisioning_uri_is_standard_otpauth(self, totp):
        secret = totp.generate_new_secret()

        uri = totp.provisioning_uri(secret, "alice@example.com")

        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        params = parse_qs(parsed.query)
        assert params["secret"] == [secret]
        assert params["issuer"] == ["Modgate"]

    def test_qr_code_is_png_data_uri(self, totp):
        image = totp.generate_qr_code_image_uri(totp.generate_new_secret(), "alice")

        assert image.startswith("data:image/png;base64,")


class TestCodeValidation:
    """Tests for is_otp_valid."""

    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
    )
    def test_rfc_vectors(self, totp, timestamp, expected):
        assert totp.generate_code(RFC_SECRET, timestamp) == expected

    def test_current_code_is_valid(self, totp):
        secret = totp.generate_new_secret()

        assert totp.is_otp_valid(secret, totp.generate_code(secret)) is True

    def test_adjacent_step_is_accepted(self, totp):
        secret = totp.generate_new_secret()
        now = 1_700_000_000

        previous = totp.generate_code(secret, now - 30)
        following = totp.generate_code(secret, now + 30)

        assert totp.is_otp_valid(secret, previous, timestamp=now)
        assert totp.is_otp_valid(secret, following, timestamp=now)

    def test_two_steps_away_is_rejected(self, totp):
        secret = totp.generate_new_secret()
        now = 1_700_000_000
        stale = totp.generate_code(secret, now - 60)
        window = {totp.generate_code(secret, now + step * 30) for step in (-1, 0, 1)}

        assert totp.is_otp_valid(secret, stale, timestamp=now) is (stale in window)

    def test_code_from_other_secret_is_rejected(self, totp):
        secret = totp.generate_new_secret()
        other = totp.generate_new_secret()
        now = 1_700_000_000
        code = totp.generate_code(other, now)
        window = {totp.generate_code(secret, now + step * 30) for step in (-1, 0, 1)}

        assert totp.is_otp_valid(secret, code, timestamp=now) is (code in window)

    @pytest.mark.parametrize("bad", ["", "12345", "1234567", "12a456", "１２３４５６", None, 123456])
    def test_malformed_input_is_rejected_without_raising(self, totp, bad):
        secret = totp.generate_new_secret()

        assert totp.is_otp_valid(secret, bad) is False

    def test_missing_secret_is_rejected(self, totp):
        assert totp.is_otp_valid(None, "123456") is False
        assert totp.is_otp_valid("", "123456") is False

    def test_garbage_secret_is_rejected(self, totp):
        assert totp.is_otp_valid("not base32 !!", "123456") is False
