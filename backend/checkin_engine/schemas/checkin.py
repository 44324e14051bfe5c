"""
Pydantic schemas for check-in request/response validation.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class CheckinCreate(BaseModel):
    # Optional here so a missing venue_id is reported as 400, not 422.
    # No length limit: an id that matches no venue is a 404.
    venue_id: Optional[str] = None
    device_hash: Optional[str] = Field(None, max_length=128)


class CheckinResponse(BaseModel):
    id: str
    venue_id: str
    user_id: Optional[str]
    device_fingerprint: Optional[str]
    checked_in_at: datetime
    expires_at: datetime
    is_active: bool

    @classmethod
    def at(cls, checkin, now: datetime) -> "CheckinResponse":
        """Render a check-in as seen at `now`."""
        return cls(
            id=checkin.id,
            venue_id=checkin.venue_id,
            user_id=checkin.user_id,
            device_fingerprint=checkin.device_fingerprint,
            checked_in_at=checkin.checked_in_at,
            expires_at=checkin.expires_at,
            is_active=checkin.is_active_at(now),
        )


class CheckinResult(BaseModel):
    checkin: CheckinResponse
    venue_name: str
