"""
Rewards offered by a venue and each user's progress toward them.

Key design decisions:
- Unique constraint on (user_id, reward_id): one progress ledger per pair
- Status only moves forward: in_progress -> redeemable -> redeemed
- Progress rows are changed with single conditional statements, never by
  reading a value into Python and writing it back
"""

import enum

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.orm import relationship

from checkin_engine.db.base import Base, TimestampMixin, UTCDateTime, new_id


class RewardStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    REDEEMABLE = "redeemable"
    REDEEMED = "redeemed"


class Reward(Base, TimestampMixin):
    __tablename__ = "rewards"

    id = Column(String(36), primary_key=True, default=new_id)
    venue_id = Column(String(36), ForeignKey("venues.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)
    checkins_required = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    venue = relationship("Venue", back_populates="rewards", lazy="raise")

    __table_args__ = (
        CheckConstraint("checkins_required >= 1", name="check_reward_checkins_required_positive"),
    )

    def __repr__(self) -> str:
        return f"<Reward(id={self.id}, venue={self.venue_id}, required={self.checkins_required})>"


class UserReward(Base, TimestampMixin):
    __tablename__ = "user_rewards"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    reward_id = Column(String(36), ForeignKey("rewards.id"), nullable=False)
    venue_id = Column(String(36), ForeignKey("venues.id"), nullable=False)
    checkins_completed = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=RewardStatus.IN_PROGRESS.value)
    redeemed_at = Column(UTCDateTime(), nullable=True)

    reward = relationship("Reward", lazy="raise")

    __table_args__ = (
        UniqueConstraint("user_id", "reward_id", name="uq_user_reward"),
        CheckConstraint("checkins_completed >= 0", name="check_user_reward_completed_non_negative"),
        CheckConstraint(
            "status IN ('in_progress', 'redeemable', 'redeemed')",
            name="check_user_reward_status",
        ),
        Index("ix_user_rewards_user_venue", "user_id", "venue_id"),
    )

    def __repr__(self) -> str:
        return f"<UserReward(id={self.id}, user={self.user_id}, reward={self.reward_id}, status={self.status})>"
