"""
Check-in admission with store-enforced cooldowns.

CONCURRENCY STRATEGY: Conditional Upsert on a Gate Row
======================================================

Problem:
  A user double-taps "check in", or checks in from two devices at once.
  Both requests read "no check-in in the last 2 hours", both insert.
  Result: two check-ins, double reward progress, inflated crowd count.

Solution:
  Each cooldown subject (the caller's id, and the device fingerprint when
  one is sent) owns one row in `checkin_gates` per venue. Admission claims
  it with a single statement:

  INSERT INTO checkin_gates (venue_id, subject_kind, subject, last_checked_in_at)
  VALUES (:venue, :kind, :subject, :now)
  ON CONFLICT (venue_id, subject_kind, subject)
  DO UPDATE SET last_checked_in_at = excluded.last_checked_in_at
  WHERE checkin_gates.last_checked_in_at < :now - cooldown
  RETURNING venue_id

  A row comes back only if the gate was free. A concurrent claimant blocks
  on the conflicting key until the first transaction ends, then re-checks
  the WHERE against the committed timestamp and gets nothing back.

  Gate claims and the check-in insert share one transaction, so a rejection
  on the device gate also releases the user gate, and a client that gives
  up mid-request leaves either everything or nothing.

  Reward progression and loyalty points run after the commit. They can
  fail without affecting the accepted check-in.
"""

import time
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_engine.models.checkin import Checkin, CheckinGate
from checkin_engine.core.clock import utc_now
from checkin_engine.core.config import get_settings
from checkin_engine.core.exceptions import AlreadyCheckedIn, StorageFailure, VenueNotFound
from checkin_engine.core.logging import get_logger
from checkin_engine.core.metrics import checkin_latency, record_checkin_attempt
from checkin_engine.core.security import CallerIdentity, PermanentCaller
from checkin_engine.db.session import upsert_insert
from checkin_engine.services.reward_service import award_checkin_point, on_checkin_accepted
from checkin_engine.services.venue_service import get_active_venue

logger = get_logger(__name__)
settings = get_settings()

GATE_USER = "user"
GATE_DEVICE = "device"

USER_COOLDOWN_MESSAGE = "You already checked in here recently. Try again in a bit!"
DEVICE_COOLDOWN_MESSAGE = "This device already checked in here recently."


async def _claim_gate(
    db: AsyncSession,
    venue_id: str,
    subject_kind: str,
    subject: str,
    now: datetime,
) -> bool:
    """Atomically take the cooldown gate for one subject. False if it is still closed."""
    cutoff = now - settings.cooldown_window
    stmt = upsert_insert(db, CheckinGate).values(
        venue_id=venue_id,
        subject_kind=subject_kind,
        subject=subject,
        last_checked_in_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[CheckinGate.venue_id, CheckinGate.subject_kind, CheckinGate.subject],
        set_={"last_checked_in_at": stmt.excluded.last_checked_in_at},
        where=CheckinGate.last_checked_in_at < cutoff,
    ).returning(CheckinGate.venue_id)

    result = await db.execute(stmt)
    return result.first() is not None


async def admit(
    db: AsyncSession,
    venue_id: str,
    caller: CallerIdentity,
    device_fingerprint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> tuple[Checkin, str]:
    """
    Accept or reject a check-in.

    Rules short-circuit in order: active venue, caller cooldown, device
    cooldown. On acceptance the check-in is committed before reward
    progression runs, so the caller sees success once the row is durable.
    """
    now = now or utc_now()
    started = time.perf_counter()

    try:
        venue = await get_active_venue(db, venue_id)
        # Plain attributes survive a rollback; ORM instances get expired
        venue_name = venue.name

        if not await _claim_gate(db, venue.id, GATE_USER, caller.subject_id, now):
            await db.rollback()
            record_checkin_attempt("cooldown")
            logger.info("checkin_rejected", venue_id=venue_id, reason="user_cooldown")
            raise AlreadyCheckedIn(USER_COOLDOWN_MESSAGE)

        if device_fingerprint and not await _claim_gate(db, venue.id, GATE_DEVICE, device_fingerprint, now):
            await db.rollback()
            record_checkin_attempt("cooldown")
            logger.info("checkin_rejected", venue_id=venue_id, reason="device_cooldown")
            raise AlreadyCheckedIn(DEVICE_COOLDOWN_MESSAGE)

        checkin = Checkin(
            venue_id=venue.id,
            user_id=caller.subject_id,
            device_fingerprint=device_fingerprint,
            checked_in_at=now,
            expires_at=now + settings.validity_window,
            created_at=now,
        )
        db.add(checkin)
        await db.flush()
        await db.commit()
        # Keep the accepted row readable even if a later reward update rolls back
        db.expunge(checkin)
    except VenueNotFound:
        record_checkin_attempt("venue_not_found")
        logger.info("checkin_rejected", venue_id=venue_id, reason="venue_not_found")
        raise
    except (SQLAlchemyError, TimeoutError) as e:
        await db.rollback()
        record_checkin_attempt("error")
        logger.error("checkin_storage_failure", venue_id=venue_id, error=str(e))
        raise StorageFailure("Failed to check in")

    checkin_latency.observe(time.perf_counter() - started)
    record_checkin_attempt("accepted")
    logger.info(
        "checkin_accepted",
        checkin_id=checkin.id,
        venue_id=checkin.venue_id,
        caller_kind=caller.kind,
        expires_at=checkin.expires_at.isoformat(),
    )

    await award_checkin_point(db, caller.subject_id)
    if isinstance(caller, PermanentCaller):
        await on_checkin_accepted(db, caller.user_id, checkin.venue_id, now)

    return checkin, venue_name


async def get_caller_checkins(db: AsyncSession, subject_id: str) -> list[Checkin]:
    """Check-in history for a caller, newest first."""
    try:
        result = await db.execute(
            select(Checkin)
            .where(Checkin.user_id == subject_id)
            .order_by(Checkin.checked_in_at.desc())
        )
    except (SQLAlchemyError, TimeoutError) as e:
        logger.error("checkin_history_failed", error=str(e))
        raise StorageFailure()
    return list(result.scalars().all())


async def get_recent_venue_checkins(db: AsyncSession, venue_id: str, limit: int = 10) -> list[Checkin]:
    """Most recent check-ins at a venue."""
    try:
        result = await db.execute(
            select(Checkin)
            .where(Checkin.venue_id == venue_id)
            .order_by(Checkin.checked_in_at.desc())
            .limit(limit)
        )
    except (SQLAlchemyError, TimeoutError) as e:
        logger.error("venue_checkins_failed", venue_id=venue_id, error=str(e))
        raise StorageFailure()
    return list(result.scalars().all())
