"""
Quota Gate - monthly playlist allowance.

Free users may create ``free_monthly_limit`` playlists per calendar month,
premium users are unlimited. The usage window rolls forward on the first
day of every month (UTC):

1. Look up the subscription tier (fail closed if the lookup errors)
2. Read the user's usage window, treating an expired window as count 0
3. Compare against the limit - nothing is incremented here, that happens
   after the playlist exists (see persister.py)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from diggr.config import get_settings
from diggr.database import SessionLocal
from diggr.errors import QuotaExceeded, TierLookupFailed, UserNotFound
from diggr.models import Subscription, UsageStats, User, utcnow

logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_PREMIUM = "premium"


def as_utc(value: datetime) -> datetime:
    """Some stores (SQLite) hand back naive datetimes - those are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_reset(now: datetime) -> datetime:
    """First instant of the month after ``now``."""
    now = as_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


@dataclass
class UsageWindow:
    count: int
    reset_at: datetime

    def expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.reset_at)


def current_window(stats: UsageStats | None, now: datetime) -> UsageWindow:
    """The effective window at ``now`` - expired windows come back reset."""
    if stats is None:
        return UsageWindow(count=0, reset_at=next_reset(now))
    window = UsageWindow(
        count=max(stats.playlists_created_count or 0, 0),
        reset_at=as_utc(stats.reset_date),
    )
    if window.expired(now):
        return UsageWindow(count=0, reset_at=next_reset(now))
    return window


def lookup_tier(db: Session, user_id: int) -> str:
    try:
        sub = db.query(Subscription).filter(Subscription.user_id == user_id).first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Quota: subscription lookup failed for user {user_id}: {e}")
        raise TierLookupFailed("Could not verify subscription tier")

    if sub and sub.plan_type == TIER_PREMIUM and sub.status == "active":
        return TIER_PREMIUM
    return TIER_FREE


@dataclass
class QuotaDecision:
    allowed: bool
    tier: str
    window: UsageWindow
    limit: int | None  # None = unlimited

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.window.count, 0)


class QuotaGate:
    def __init__(
        self,
        db: Session,
        free_monthly_limit: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.free_monthly_limit = (
            free_monthly_limit
            if free_monthly_limit is not None
            else get_settings().free_monthly_limit
        )
        self.clock = clock

    def check_and_reserve(self, user_id: int) -> QuotaDecision:
        """Decide whether ``user_id`` may start a new pipeline run.

        Raises UserNotFound for unknown users and TierLookupFailed when
        the subscription tier cannot be read.
        """
        now = self.clock()
        if self.db.get(User, user_id) is None:
            raise UserNotFound(f"Unknown user {user_id}")

        tier = lookup_tier(self.db, user_id)

        try:
            stats = self.db.query(UsageStats).filter(UsageStats.user_id == user_id).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Quota: usage lookup failed for user {user_id}: {e}")
            if tier != TIER_PREMIUM:
                raise QuotaExceeded("Could not read monthly usage")
            stats = None

        window = current_window(stats, now)
        if stats is not None and as_utc(stats.reset_date) != window.reset_at:
            self._roll_forward(stats, window)

        if tier == TIER_PREMIUM:
            return QuotaDecision(allowed=True, tier=tier, window=window, limit=None)

        allowed = window.count < self.free_monthly_limit
        logger.info(
            f"Quota: user {user_id} tier={tier} count={window.count}/"
            f"{self.free_monthly_limit} allowed={allowed}"
        )
        return QuotaDecision(
            allowed=allowed, tier=tier, window=window, limit=self.free_monthly_limit
        )

    def _roll_forward(self, stats: UsageStats, window: UsageWindow) -> None:
        # Best effort: the counters apply the same reset when they increment.
        try:
            stats.playlists_created_count = 0
            stats.reset_date = window.reset_at
            stats.updated_at = self.clock()
            self.db.commit()
            logger.info(f"Quota: reset usage window for user {stats.user_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Quota: could not persist window reset for user {stats.user_id}: {e}")


# ── Monthly sweep (called by scheduler) ──────────────


def roll_forward_expired_windows() -> int:
    """
    Scheduled job: reset every usage window whose reset date has passed.
    Runs shortly after midnight on the first of each month.
    """
    now = utcnow()
    db = SessionLocal()
    try:
        expired = db.query(UsageStats).filter(UsageStats.reset_date <= now).all()
        for stats in expired:
            stats.playlists_created_count = 0
            stats.reset_date = next_reset(now)
            stats.updated_at = now
        db.commit()
        logger.info(f"Usage sweep: reset {len(expired)} usage windows")
        return len(expired)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Usage sweep failed: {e}", exc_info=True)
        return 0
    finally:
        db.close()
