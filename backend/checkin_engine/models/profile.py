"""
Loyalty points per user. One point per accepted check-in.
"""

from sqlalchemy import Column, Integer, String, CheckConstraint

from checkin_engine.db.base import Base, TimestampMixin


class UserProfile(Base, TimestampMixin):
    __tablename__ = "user_profiles"

    # Same id the identity provider issued
    id = Column(String(64), primary_key=True)
    total_points = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("total_points >= 0", name="check_profile_points_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, points={self.total_points})>"
