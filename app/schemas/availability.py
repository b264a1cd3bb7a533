from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import date as date_type, datetime, time

from ..models.tenant import AllocationPreference


class TimeWindow(BaseModel):
    start: time
    end: time


class SearchRequest(BaseModel):
    """Widget `search` action"""
    model_config = ConfigDict(extra="ignore")

    tenant_id: str = Field(..., min_length=1, max_length=100)
    party_size: int = Field(..., ge=1)
    date: date_type
    time_window: Optional[TimeWindow] = None
    preference: Optional[AllocationPreference] = None
    limit: Optional[int] = Field(20, ge=1, le=200)


class SlotResponse(BaseModel):
    time: datetime
    ends_at: datetime
    local_time: str
    table_id: Optional[str] = None
    table_name: Optional[str] = None
    capacity: int


class SearchResponse(BaseModel):
    success: bool = True
    slots: List[SlotResponse]
