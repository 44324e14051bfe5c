"""
Check-in records and the cooldown gates that serialize them.

Key design decisions:
- `is_active` is never stored. It is `now < expires_at`, computed at read
  time, so there is no background flag to drift out of date.
- Rows are append-only history: never updated, never deleted.
- `checkin_gates` holds one row per (venue, subject) with the time of the
  last accepted check-in. Admission claims the gate with a conditional
  upsert, which the store serializes on the primary key, so two concurrent
  check-ins for the same subject cannot both pass the cooldown.
"""

from datetime import datetime

from sqlalchemy import Column, String, ForeignKey, Index, CheckConstraint

from checkin_engine.db.base import Base, UTCDateTime, new_id
from checkin_engine.core.clock import utc_now


class Checkin(Base):
    __tablename__ = "checkins"

    id = Column(String(36), primary_key=True, default=new_id)
    venue_id = Column(String(36), ForeignKey("venues.id"), nullable=False)
    # Anonymous callers are recorded under their ephemeral id
    user_id = Column(String(64), nullable=True)
    device_fingerprint = Column(String(128), nullable=True)
    checked_in_at = Column(UTCDateTime(), nullable=False)
    expires_at = Column(UTCDateTime(), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("expires_at > checked_in_at", name="check_checkin_expiry_after_start"),
        # Crowd count: WHERE venue_id = ? AND expires_at > now
        Index("ix_checkins_venue_expires", "venue_id", "expires_at"),
        # History for a caller, newest first
        Index("ix_checkins_user_checked_in", "user_id", "checked_in_at"),
    )

    def is_active_at(self, now: datetime) -> bool:
        return now < self.expires_at

    def __repr__(self) -> str:
        return f"<Checkin(id={self.id}, venue={self.venue_id}, expires_at={self.expires_at})>"


class CheckinGate(Base):
    __tablename__ = "checkin_gates"

    venue_id = Column(String(36), ForeignKey("venues.id"), primary_key=True)
    subject_kind = Column(String(10), primary_key=True)  # user, device
    subject = Column(String(128), primary_key=True)
    last_checked_in_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        CheckConstraint("subject_kind IN ('user', 'device')", name="check_gate_subject_kind"),
    )

    def __repr__(self) -> str:
        return f"<CheckinGate(venue={self.venue_id}, {self.subject_kind}={self.subject})>"
