"""
Pydantic schemas for API request bodies
"""
from typing import Optional

from pydantic import BaseModel, Field


class RateLimitUpdate(BaseModel):
    """Partial update of the governor's window ceilings"""
    requests_per_second: Optional[int] = Field(None, ge=1)
    requests_per_minute: Optional[int] = Field(None, ge=1)
    requests_per_hour: Optional[int] = Field(None, ge=1)
    requests_per_day: Optional[int] = Field(None, ge=1)


class RefreshConfigUpdate(BaseModel):
    """Partial update of the background refresh settings (durations in seconds)"""
    enabled: Optional[bool] = None
    stale_threshold: Optional[float] = Field(None, gt=0)
    priority_threshold: Optional[float] = Field(None, gt=0)
    max_concurrent_refresh: Optional[int] = Field(None, ge=1)
    refresh_interval: Optional[float] = Field(None, gt=0)
    cooldown: Optional[float] = Field(None, ge=0)
    max_retries: Optional[int] = Field(None, ge=1)
