"""
One-time reward redemption.

The ready -> redeemed transition is a single conditional UPDATE guarded by
`status = 'redeemable'`. Two concurrent redemptions of the same ledger both
pass the read-side checks, but only one UPDATE matches a row; the other gets
nothing back and is reported as NotRedeemable.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_engine.models.reward import Reward, RewardStatus, UserReward
from checkin_engine.core.clock import utc_now
from checkin_engine.core.exceptions import NotAuthenticated, NotFound, NotRedeemable, StorageFailure
from checkin_engine.core.logging import get_logger
from checkin_engine.core.metrics import record_redemption
from checkin_engine.core.security import CallerIdentity, PermanentCaller
from checkin_engine.schemas.reward import RedemptionReceipt

logger = get_logger(__name__)

ALREADY_REDEEMED_MESSAGE = "This reward has already been redeemed."
NOT_EARNED_MESSAGE = "You haven't earned enough check-ins yet."
REDEEMED_MESSAGE = "Reward redeemed! Show this to the bartender."


async def redeem(
    db: AsyncSession,
    user_reward_id: str,
    caller: CallerIdentity,
    now: Optional[datetime] = None,
) -> RedemptionReceipt:
    """
    Redeem a ready reward exactly once.
    Raises NotAuthenticated, NotFound (missing or not owned), NotRedeemable.
    """
    if not isinstance(caller, PermanentCaller):
        raise NotAuthenticated("Must be authenticated to redeem rewards")

    now = now or utc_now()

    try:
        # Ownership is part of the lookup so other users' ledgers look absent
        result = await db.execute(
            select(UserReward.status, Reward.name)
            .join(Reward, Reward.id == UserReward.reward_id)
            .where(UserReward.id == user_reward_id, UserReward.user_id == caller.user_id)
        )
        row = result.first()

        if row is None:
            record_redemption("not_found")
            raise NotFound()

        current_status, reward_name = row
        if current_status != RewardStatus.REDEEMABLE.value:
            record_redemption("not_redeemable")
            raise NotRedeemable(
                ALREADY_REDEEMED_MESSAGE if current_status == RewardStatus.REDEEMED.value else NOT_EARNED_MESSAGE
            )

        update_result = await db.execute(
            update(UserReward)
            .where(
                UserReward.id == user_reward_id,
                UserReward.user_id == caller.user_id,
                UserReward.status == RewardStatus.REDEEMABLE.value,
            )
            .values(status=RewardStatus.REDEEMED.value, redeemed_at=now, updated_at=now)
            .returning(UserReward.id)
            .execution_options(synchronize_session=False)
        )

        if update_result.first() is None:
            # Another request redeemed it between our read and write
            await db.rollback()
            record_redemption("not_redeemable")
            logger.info("redemption_lost_race", user_reward_id=user_reward_id)
            raise NotRedeemable(ALREADY_REDEEMED_MESSAGE)

        await db.commit()
    except (SQLAlchemyError, TimeoutError) as e:
        await db.rollback()
        record_redemption("error")
        logger.error("redemption_storage_failure", user_reward_id=user_reward_id, error=str(e))
        raise StorageFailure("Failed to redeem reward")

    record_redemption("redeemed")
    logger.info("reward_redeemed", user_reward_id=user_reward_id, reward_name=reward_name)
    return RedemptionReceipt(user_reward_id=user_reward_id, reward_name=reward_name, redeemed_at=now)
