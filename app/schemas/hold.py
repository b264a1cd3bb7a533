from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class SlotSelection(BaseModel):
    time: datetime
    table_id: Optional[str] = Field(None, max_length=36)


class HoldRequest(BaseModel):
    """Widget `hold` action"""
    model_config = ConfigDict(extra="ignore")

    tenant_id: str = Field(..., min_length=1, max_length=100)
    party_size: int = Field(..., ge=1)
    slot: SlotSelection
    idempotency_key: Optional[str] = Field(None, max_length=255)


class HoldResponse(BaseModel):
    success: bool = True
    hold_id: str
    expires_at: datetime
    slot_time: datetime
    table_id: Optional[str] = None
    party_size: int
