from checkin_engine.schemas.checkin import CheckinCreate, CheckinResponse, CheckinResult
from checkin_engine.schemas.reward import (
    RewardResponse, UserRewardResponse, UserRewardWithReward, RewardWithProgress,
    RedeemRequest, RedemptionReceipt, RedemptionResponse,
)
from checkin_engine.schemas.crowd import CrowdLevel, CrowdLevelResponse, CrowdUpdate

__all__ = [
    "CheckinCreate", "CheckinResponse", "CheckinResult",
    "RewardResponse", "UserRewardResponse", "UserRewardWithReward", "RewardWithProgress",
    "RedeemRequest", "RedemptionReceipt", "RedemptionResponse",
    "CrowdLevel", "CrowdLevelResponse", "CrowdUpdate",
]
