"""
Security & Sanitization Utilities

Helpers for guest-supplied text:
1. XSS stripping and detection
2. Unicode normalization
3. Phone normalization (E.164)
4. Log-safe rendering of values that may carry PII
"""

import re
import unicodedata
from typing import Optional, Any


# ============================================================================
# XSS SANITIZATION
# ============================================================================

def strip_dangerous_tags(content: str) -> str:
    """
    Remove dangerous markup from free text.

    Removes:
    - <script> / <style> blocks
    - Event handlers (onclick=, onerror=, ...)
    - javascript: / vbscript: / data:text/html URLs
    """
    if not content:
        return content

    content = re.sub(r'<script[^>]*>.*?</script>', '', content, flags=re.IGNORECASE | re.DOTALL)
    content = re.sub(r'<style[^>]*>.*?</style>', '', content, flags=re.IGNORECASE | re.DOTALL)
    content = re.sub(r'on\w+\s*=\s*["\'][^"\']*["\']', '', content, flags=re.IGNORECASE)
    content = re.sub(r'on\w+\s*=\s*[^\s>]+', '', content, flags=re.IGNORECASE)
    content = re.sub(r'javascript\s*:', '', content, flags=re.IGNORECASE)
    content = re.sub(r'data\s*:\s*text/html', '', content, flags=re.IGNORECASE)
    content = re.sub(r'vbscript\s*:', '', content, flags=re.IGNORECASE)

    return content


def contains_xss_patterns(value: str) -> bool:
    """
    Detect XSS patterns.

    Returns:
        True if the text looks like markup / script injection
    """
    if not value or not isinstance(value, str):
        return False

    lower_value = value.lower()

    xss_patterns = [
        r'<\s*script',
        r'javascript\s*:',
        r'on\w+\s*=',
        r'<\s*iframe',
        r'<\s*object',
        r'<\s*embed',
        r'<\s*svg.*onload',
        r'<\s*img.*onerror',
    ]

    return any(re.search(pattern, lower_value) for pattern in xss_patterns)


# ============================================================================
# UNICODE NORMALIZATION
# ============================================================================

INVISIBLE_CHARS = (
    '\u200b',  # Zero Width Space
    '\u200c',  # Zero Width Non-Joiner
    '\u200d',  # Zero Width Joiner
    '\u200e',  # Left-to-Right Mark
    '\u200f',  # Right-to-Left Mark
    '\u202a',  # Left-to-Right Embedding
    '\u202b',  # Right-to-Left Embedding
    '\u202c',  # Pop Directional Formatting
    '\u202d',  # Left-to-Right Override
    '\u202e',  # Right-to-Left Override
    '\ufeff',  # BOM
)


def normalize_unicode(value: str) -> str:
    """
    NFKC-normalize and drop invisible characters.

    Fullwidth letters become ASCII, zero-width characters disappear.
    """
    if not value:
        return value

    normalized = unicodedata.normalize('NFKC', value)
    for char in INVISIBLE_CHARS:
        normalized = normalized.replace(char, '')

    return normalized


def clean_text(value: Optional[str]) -> Optional[str]:
    """Normalize, strip markup and collapse whitespace"""
    if value is None:
        return None
    value = strip_dangerous_tags(normalize_unicode(value))
    return ' '.join(value.split())


# ============================================================================
# PHONE
# ============================================================================

E164_PATTERN = re.compile(r'^\+[1-9]\d{6,14}$')


def normalize_phone_e164(phone: str) -> str:
    """
    Normalize a phone number to E.164.

    - "+1 (555) 123-4567" -> "+15551234567"
    - "0044 20 7946 0958" -> "+442079460958"
    - "5551234567" -> "+5551234567" (no country code is assumed)

    Returns "" when nothing usable is left.
    """
    if not phone:
        return ""

    has_plus = phone.strip().startswith('+')
    digits = re.sub(r'\D', '', phone)
    if not digits:
        return ""

    if not has_plus and digits.startswith('00'):
        digits = digits[2:]

    return f"+{digits}"


def is_valid_phone(phone: str) -> bool:
    return bool(phone) and bool(E164_PATTERN.match(phone))


# ============================================================================
# SAFE STRING TRUNCATION
# ============================================================================

def safe_truncate(value: str, max_length: int, suffix: str = "...") -> str:
    if not value or len(value) <= max_length:
        return value

    truncate_at = max_length - len(suffix)
    if truncate_at <= 0:
        return suffix[:max_length]

    return value[:truncate_at] + suffix


# ============================================================================
# LOGGING SANITIZATION
# ============================================================================

def mask_email(email: Optional[str]) -> str:
    """j***@example.com"""
    if not email or '@' not in email:
        return "***"
    local, _, domain = email.partition('@')
    return f"{local[:1]}***@{domain}"


def sanitize_for_log(value: Any, max_length: int = 200) -> str:
    """
    Render a value for logs.

    Redacts:
    - passwords / secrets / tokens
    - card-like 16 digit numbers
    - e-mail addresses
    """
    if value is None:
        return "null"

    str_value = str(value)

    str_value = re.sub(
        r'(password|passwd|pwd|secret|token|api_key)[\"\']?\s*[:=]\s*[\"\']?[^\s\"\']+',
        r'\1: [REDACTED]',
        str_value,
        flags=re.IGNORECASE
    )

    str_value = re.sub(r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b', '[CARD_REDACTED]', str_value)

    str_value = re.sub(
        r'[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}',
        lambda m: mask_email(m.group(0)),
        str_value
    )

    return safe_truncate(str_value, max_length)


__all__ = [
    'strip_dangerous_tags',
    'contains_xss_patterns',
    'normalize_unicode',
    'clean_text',
    'normalize_phone_e164',
    'is_valid_phone',
    'safe_truncate',
    'mask_email',
    'sanitize_for_log',
]
