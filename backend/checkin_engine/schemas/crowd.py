"""
Pydantic schemas for crowd level reads and live updates.
"""

import enum

from pydantic import BaseModel


class CrowdLevel(str, enum.Enum):
    EMPTY = "empty"
    CHILL = "chill"
    GETTING_BUSY = "getting_busy"
    BUSY = "busy"
    PACKED = "packed"


class CrowdLevelResponse(BaseModel):
    venue_id: str
    count: int
    level: CrowdLevel
    cached: bool = False


class CrowdUpdate(BaseModel):
    venue_id: str
    delta: int
    count: int
    level: CrowdLevel
