"""
Input hardening tests: guest detail sanitization and the helpers behind it.
"""

import pytest
from pydantic import ValidationError

from app.schemas.booking import GuestDetails
from app.utils.sanitization import (
    clean_text,
    contains_xss_patterns,
    is_valid_phone,
    mask_email,
    normalize_phone_e164,
    normalize_unicode,
    sanitize_for_log,
)


class TestXSSPrevention:
    """Markup never reaches a booking"""

    @pytest.mark.parametrize("payload", [
        "<script>alert('xss')</script>",
        "<img src=x onerror=alert(1)>",
        "javascript:alert(1)",
        "<svg onload=alert(1)>",
        "<iframe src='https://evil.example'>",
    ])
    def test_xss_patterns_detected(self, payload):
        assert contains_xss_patterns(payload)

    @pytest.mark.parametrize("text", ["Table by the window", "Birthday, 2 high chairs", ""])
    def test_plain_text_passes(self, text):
        assert not contains_xss_patterns(text)

    def test_markup_stripped_from_names(self):
        guest = GuestDetails(first_name="<script>x</script>Ada", last_name="Lovelace", email="ada@example.com")
        assert guest.first_name == "Ada"

    def test_special_requests_with_script_rejected(self):
        with pytest.raises(ValidationError):
            GuestDetails(name="Ada Lovelace", email="ada@example.com", special_requests="<script>1</script>")


class TestUnicode:
    def test_invisible_characters_removed(self):
        assert normalize_unicode("A\u200bda\u202e") == "Ada"

    def test_fullwidth_normalized(self):
        assert normalize_unicode("Ａｄａ") == "Ada"

    def test_whitespace_collapsed(self):
        assert clean_text("  Ada \n  Lovelace ") == "Ada Lovelace"

    def test_non_latin_names_accepted(self):
        guest = GuestDetails(first_name="Zoë", last_name="Ōkubo", email="zoe@example.com")
        assert guest.full_name == "Zoë Ōkubo"

    def test_apostrophes_and_hyphens(self):
        guest = GuestDetails(first_name="Mary-Jane", last_name="O'Brien", email="mj@example.com")
        assert guest.full_name == "Mary-Jane O'Brien"


class TestPhone:
    @pytest.mark.parametrize("raw,expected", [
        ("+1 (555) 123-4567", "+15551234567"),
        ("0044 20 7946 0958", "+442079460958"),
        ("+44-20-7946-0958", "+442079460958"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone_e164(raw) == expected

    @pytest.mark.parametrize("phone", ["+0123456789", "+12", "12345", "", "+1234567890123456"])
    def test_invalid(self, phone):
        assert not is_valid_phone(phone)

    def test_guest_phone_stored_as_e164(self):
        guest = GuestDetails(name="Ada Lovelace", email="ada@example.com", phone="+1 (555) 123-4567")
        assert guest.phone == "+15551234567"

    def test_blank_phone_is_none(self):
        guest = GuestDetails(name="Ada Lovelace", email="ada@example.com", phone="  ")
        assert guest.phone is None


class TestEmail:
    @pytest.mark.parametrize("email", ["a@b", "ada..l@example.com", "x" * 95 + "@example.com", "ada@"])
    def test_rejected(self, email):
        with pytest.raises(ValidationError):
            GuestDetails(name="Ada Lovelace", email=email)


class TestLogSanitization:
    def test_mask_email(self):
        assert mask_email("ada@example.com") == "a***@example.com"
        assert mask_email(None) == "***"

    def test_secrets_redacted(self):
        rendered = sanitize_for_log("token=abc123 card 4111 1111 1111 1111 mail ada@example.com")

        assert "abc123" not in rendered
        assert "4111" not in rendered
        assert "ada@example.com" not in rendered
