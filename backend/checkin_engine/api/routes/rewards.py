"""
Reward progress and redemption endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_engine.db.session import get_db
from checkin_engine.schemas.reward import RedeemRequest, RedemptionResponse, UserRewardWithReward
from checkin_engine.services.redemption_service import REDEEMED_MESSAGE, redeem
from checkin_engine.services.reward_service import get_user_rewards
from checkin_engine.core.clock import Clock, get_clock
from checkin_engine.core.exceptions import BadRequest, NotAuthenticated
from checkin_engine.core.security import CallerIdentity, PermanentCaller, get_current_caller

router = APIRouter(tags=["Rewards"])


@router.post("/redeem-reward", response_model=RedemptionResponse)
async def redeem_reward(
    redeem_data: RedeemRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Redeem a reward the caller has earned.

    Each reward can be redeemed once. A second attempt, concurrent or not,
    returns 400 with an explanation.
    """
    if not isinstance(caller, PermanentCaller):
        raise NotAuthenticated("Must be authenticated to redeem rewards")
    if not redeem_data.user_reward_id:
        raise BadRequest("user_reward_id is required")

    receipt = await redeem(db, redeem_data.user_reward_id, caller, now=clock())
    return RedemptionResponse(message=REDEEMED_MESSAGE, reward_name=receipt.reward_name)


@router.get("/rewards/me", response_model=list[UserRewardWithReward])
async def list_my_rewards(
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's progress on every reward they have started."""
    if not isinstance(caller, PermanentCaller):
        return []
    return await get_user_rewards(db, caller.user_id)
