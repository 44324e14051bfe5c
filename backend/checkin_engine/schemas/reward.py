"""
Pydantic schemas for reward progress and redemption.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from checkin_engine.models.reward import RewardStatus


class RewardResponse(BaseModel):
    id: str
    venue_id: str
    name: str
    description: Optional[str]
    checkins_required: int
    is_active: bool

    model_config = {"from_attributes": True}


class UserRewardResponse(BaseModel):
    id: str
    user_id: str
    reward_id: str
    venue_id: str
    checkins_completed: int
    status: RewardStatus
    redeemed_at: Optional[datetime]
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserRewardWithReward(UserRewardResponse):
    reward: RewardResponse


class RewardWithProgress(RewardResponse):
    user_reward: Optional[UserRewardResponse] = None


class RedeemRequest(BaseModel):
    user_reward_id: Optional[str] = Field(None, max_length=36)


class RedemptionReceipt(BaseModel):
    user_reward_id: str
    reward_name: str
    redeemed_at: datetime


class RedemptionResponse(BaseModel):
    message: str
    reward_name: str
