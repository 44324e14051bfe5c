"""
Venue model. Owned and edited elsewhere; the check-in engine only reads it.
"""

from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship

from checkin_engine.db.base import Base, TimestampMixin, new_id


class Venue(Base, TimestampMixin):
    __tablename__ = "venues"

    id = Column(String(36), primary_key=True, default=new_id)
    slug = Column(String(120), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    rewards = relationship("Reward", back_populates="venue", lazy="raise")

    def __repr__(self) -> str:
        return f"<Venue(id={self.id}, slug={self.slug}, active={self.is_active})>"
