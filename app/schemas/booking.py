from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from typing import Optional, Any
from datetime import datetime
import re

from ..models.booking import BookingStatus
from ..utils.sanitization import (
    clean_text,
    contains_xss_patterns,
    normalize_phone_e164,
    is_valid_phone,
)


# Letters in any script, separated by spaces, hyphens, apostrophes or dots
NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[\s'.-]+[^\W\d_]+)*\.?$")


class GuestDetails(BaseModel):
    """
    Guest contact details sent with a confirmation.

    Either first_name/last_name or a single `name` must be given.
    Text fields are sanitized before validation.
    """
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    name: Optional[str] = Field(None, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    special_requests: Optional[str] = Field(None, max_length=500)

    @field_validator('first_name', 'last_name', 'name', mode='before')
    @classmethod
    def sanitize_names(cls, v):
        if v is None or not isinstance(v, str):
            return v
        v = clean_text(v)
        return v or None

    @field_validator('first_name', 'last_name', 'name')
    @classmethod
    def validate_name_chars(cls, v):
        if v is not None and not NAME_PATTERN.match(v):
            raise ValueError("Name can only contain letters, spaces, hyphens and apostrophes")
        return v

    @field_validator('email', mode='before')
    @classmethod
    def validate_email_dots(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if len(v) < 5 or len(v) > 100:
                raise ValueError("Email must be between 5 and 100 characters")
            if '..' in v:
                raise ValueError("Email cannot contain consecutive dots")
        return v

    @field_validator('phone', mode='before')
    @classmethod
    def normalize_phone(cls, v):
        """Accept common formatting and store E.164"""
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if not isinstance(v, str):
            raise ValueError("Phone must be a string")
        normalized = normalize_phone_e164(v)
        if not is_valid_phone(normalized):
            raise ValueError("Invalid phone number, use format: +1234567890")
        return normalized

    @field_validator('special_requests', mode='before')
    @classmethod
    def validate_special_requests(cls, v):
        if v is None or not isinstance(v, str):
            return v
        if contains_xss_patterns(v):
            raise ValueError("Special requests contain invalid characters")
        return clean_text(v) or None

    @model_validator(mode='after')
    def require_name(self):
        if len(self.full_name) < 2:
            raise ValueError("Guest name must be at least 2 characters")
        if len(self.full_name) > 200:
            raise ValueError("Guest name is too long")
        return self

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        return self.name or ""


class ConfirmRequest(BaseModel):
    """Widget `confirm` action (guest details are validated by the engine)"""
    model_config = ConfigDict(extra="ignore")

    tenant_id: str = Field(..., min_length=1, max_length=100)
    hold_id: str = Field(..., min_length=1, max_length=36)
    guest_details: Any = None
    idempotency_key: Optional[str] = Field(None, max_length=255)


class StatusTransitionRequest(BaseModel):
    """Dashboard status change"""
    tenant_id: Optional[str] = Field(None, max_length=100)
    target_status: BookingStatus
    actor: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator('actor', 'reason', mode='before')
    @classmethod
    def sanitize_text_fields(cls, v):
        if v is None or not isinstance(v, str):
            return v
        return clean_text(v)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    hold_id: Optional[str] = None
    table_id: Optional[str] = None
    guest_name: str
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    special_requests: Optional[str] = None
    party_size: int
    booking_time: datetime
    ends_at: datetime
    status: str
    confirmation_number: str
    source: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    seated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None


class StatusEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    from_status: Optional[str] = None
    to_status: str
    actor: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
