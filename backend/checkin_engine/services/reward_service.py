"""
Reward progression driven by accepted check-ins.

CONCURRENCY STRATEGY: Single-Statement Increments
=================================================

Problem:
  The same user's two check-ins (e.g. at the edge of the cooldown, handled
  by two instances) both read checkins_completed=2, both write 3.
  Result: a lost increment.

Solution:
  The counter and status are changed in one statement:

  UPDATE user_rewards
     SET checkins_completed = checkins_completed + 1,
         status = CASE WHEN status = 'redeemable' THEN 'redeemable'
                       WHEN checkins_completed + 1 >= :required THEN 'redeemable'
                       ELSE 'in_progress' END
   WHERE user_id = :user AND reward_id = :reward AND status <> 'redeemed'
  RETURNING id, checkins_completed, status

  If no row exists yet, the ledger is created with
  INSERT .. ON CONFLICT (user_id, reward_id) DO NOTHING. Losing that race
  means another request just created it, so the UPDATE is retried.

  Rewards are independent ledgers: each one commits on its own, and a
  failure on one reward is logged and retried without touching the others
  or the check-in that triggered it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from checkin_engine.models.reward import Reward, RewardStatus, UserReward
from checkin_engine.models.profile import UserProfile
from checkin_engine.core.clock import utc_now
from checkin_engine.core.exceptions import StorageFailure
from checkin_engine.core.logging import get_logger
from checkin_engine.core.metrics import record_reward_progress
from checkin_engine.db.base import new_id
from checkin_engine.db.session import upsert_insert

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 2

OUTCOME_CREATED = "created"
OUTCOME_ADVANCED = "advanced"
OUTCOME_FROZEN = "frozen"
OUTCOME_FAILED = "failed"


@dataclass
class ProgressReport:
    """What happened to each active reward for one accepted check-in."""

    user_id: str
    venue_id: str
    outcomes: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> list[str]:
        return [reward_id for reward_id, outcome in self.outcomes.items() if outcome == OUTCOME_FAILED]


def _status_after_increment(required: int):
    return case(
        (UserReward.status == RewardStatus.REDEEMABLE.value, RewardStatus.REDEEMABLE.value),
        (UserReward.checkins_completed + 1 >= required, RewardStatus.REDEEMABLE.value),
        else_=RewardStatus.IN_PROGRESS.value,
    )


async def _increment(db: AsyncSession, user_id: str, reward_id: str, required: int, now: datetime) -> bool:
    result = await db.execute(
        update(UserReward)
        .where(
            UserReward.user_id == user_id,
            UserReward.reward_id == reward_id,
            UserReward.status != RewardStatus.REDEEMED.value,
        )
        .values(
            checkins_completed=UserReward.checkins_completed + 1,
            status=_status_after_increment(required),
            updated_at=now,
        )
        .returning(UserReward.id)
        .execution_options(synchronize_session=False)
    )
    return result.first() is not None


async def _create(
    db: AsyncSession,
    user_id: str,
    reward_id: str,
    venue_id: str,
    required: int,
    now: datetime,
) -> bool:
    status = RewardStatus.REDEEMABLE if required <= 1 else RewardStatus.IN_PROGRESS
    stmt = (
        upsert_insert(db, UserReward)
        .values(
            id=new_id(),
            user_id=user_id,
            reward_id=reward_id,
            venue_id=venue_id,
            checkins_completed=1,
            status=status.value,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[UserReward.user_id, UserReward.reward_id])
        .returning(UserReward.id)
    )
    result = await db.execute(stmt)
    return result.first() is not None


async def advance_reward(
    db: AsyncSession,
    user_id: str,
    venue_id: str,
    reward_id: str,
    required: int,
    now: datetime,
) -> str:
    """Apply one check-in to one reward ledger. Does not commit."""
    if await _increment(db, user_id, reward_id, required, now):
        return OUTCOME_ADVANCED
    if await _create(db, user_id, reward_id, venue_id, required, now):
        return OUTCOME_CREATED
    # Row exists but the update matched nothing: redeemed, or created by a
    # concurrent request between our two statements
    if await _increment(db, user_id, reward_id, required, now):
        return OUTCOME_ADVANCED
    return OUTCOME_FROZEN


async def on_checkin_accepted(
    db: AsyncSession,
    user_id: str,
    venue_id: str,
    now: Optional[datetime] = None,
) -> ProgressReport:
    """
    Advance the caller's progress on every active reward at the venue.

    Only called for permanent callers, after the check-in is committed.
    Never raises: failures are logged per reward and reported.
    """
    now = now or utc_now()
    report = ProgressReport(user_id=user_id, venue_id=venue_id)

    try:
        result = await db.execute(
            select(Reward.id, Reward.checkins_required)
            .where(Reward.venue_id == venue_id, Reward.is_active.is_(True))
            .order_by(Reward.checkins_required)
        )
        rewards = list(result.all())
    except (SQLAlchemyError, TimeoutError) as e:
        await db.rollback()
        logger.error("reward_progress_failed", user_id=user_id, venue_id=venue_id, stage="load_rewards", error=str(e))
        record_reward_progress(OUTCOME_FAILED)
        return report

    for reward_id, required in rewards:
        for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
            try:
                outcome = await advance_reward(db, user_id, venue_id, reward_id, required, now)
                await db.commit()
                break
            except (SQLAlchemyError, TimeoutError) as e:
                await db.rollback()
                outcome = OUTCOME_FAILED
                logger.error(
                    "reward_progress_failed",
                    user_id=user_id,
                    venue_id=venue_id,
                    reward_id=reward_id,
                    attempt=attempt,
                    error=str(e),
                )

        report.outcomes[reward_id] = outcome
        record_reward_progress(outcome)

    logger.info(
        "reward_progress_applied",
        user_id=user_id,
        venue_id=venue_id,
        rewards=len(rewards),
        failed=len(report.failed),
    )
    return report


async def award_checkin_point(db: AsyncSession, user_id: str) -> bool:
    """Add one loyalty point for an accepted check-in. Best effort."""
    stmt = upsert_insert(db, UserProfile).values(id=user_id, total_points=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserProfile.id],
        set_={
            "total_points": UserProfile.total_points + 1,
            "updated_at": utc_now(),
        },
    )
    try:
        await db.execute(stmt)
        await db.commit()
    except (SQLAlchemyError, TimeoutError) as e:
        await db.rollback()
        logger.warning("checkin_point_failed", user_id=user_id, error=str(e))
        return False
    return True


async def get_user_rewards(db: AsyncSession, user_id: str) -> list[UserReward]:
    """All of a user's reward ledgers, most recently updated first."""
    try:
        result = await db.execute(
            select(UserReward)
            .options(selectinload(UserReward.reward))
            .where(UserReward.user_id == user_id)
            .order_by(UserReward.updated_at.desc())
        )
    except (SQLAlchemyError, TimeoutError) as e:
        logger.error("user_rewards_failed", error=str(e))
        raise StorageFailure()
    return list(result.scalars().all())


async def get_venue_rewards_with_progress(
    db: AsyncSession,
    venue_id: str,
    user_id: Optional[str] = None,
) -> list[tuple[Reward, Optional[UserReward]]]:
    """Active rewards at a venue, paired with the user's ledger when there is one."""
    try:
        result = await db.execute(
            select(Reward)
            .where(Reward.venue_id == venue_id, Reward.is_active.is_(True))
            .order_by(Reward.checkins_required)
        )
        rewards = list(result.scalars().all())

        progress: dict[str, UserReward] = {}
        if user_id is not None:
            ledgers = await db.execute(
                select(UserReward).where(UserReward.user_id == user_id, UserReward.venue_id == venue_id)
            )
            progress = {ledger.reward_id: ledger for ledger in ledgers.scalars().all()}
    except (SQLAlchemyError, TimeoutError) as e:
        logger.error("venue_rewards_failed", venue_id=venue_id, error=str(e))
        raise StorageFailure()

    return [(reward, progress.get(reward.id)) for reward in rewards]
