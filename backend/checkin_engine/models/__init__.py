from checkin_engine.models.venue import Venue
from checkin_engine.models.checkin import Checkin, CheckinGate
from checkin_engine.models.reward import Reward, RewardStatus, UserReward
from checkin_engine.models.profile import UserProfile

__all__ = [
    "Venue",
    "Checkin", "CheckinGate",
    "Reward", "RewardStatus", "UserReward",
    "UserProfile",
]
