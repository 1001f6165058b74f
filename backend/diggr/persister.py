"""
Result persister - local bookkeeping after the playlist exists on Spotify.

Playlist records are inserted with the full row first; if that is
rejected the insert is retried once with a minimal set of columns. If
both fail PersistenceFailed is raised and the pipeline turns it into a
warning, so the Spotify playlist is never disowned.

Usage accounting goes through a UsageCounter. The atomic counter does a
single UPDATE at the store; the read/write counter is the fallback.
If every counter fails UsageAccountingFailed is raised; the pipeline
only logs it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from diggr.errors import PersistenceFailed, UsageAccountingFailed
from diggr.models import Playlist, UsageStats, utcnow
from diggr.quota import current_window, next_reset

logger = logging.getLogger(__name__)


@dataclass
class PlaylistRecordDraft:
    user_id: int
    spotify_playlist_id: str
    name: str
    track_count: int
    description: str | None = None
    is_public: bool | None = None
    criteria: dict = field(default_factory=dict)
    spotify_url: str | None = None
    image_url: str | None = None


def full_row(draft: PlaylistRecordDraft) -> Playlist:
    return Playlist(
        user_id=draft.user_id,
        spotify_playlist_id=draft.spotify_playlist_id,
        name=draft.name,
        description=draft.description,
        track_count=draft.track_count,
        is_public=draft.is_public,
        criteria=draft.criteria,
        spotify_url=draft.spotify_url,
        image_url=draft.image_url,
    )


def minimal_row(draft: PlaylistRecordDraft) -> Playlist:
    return Playlist(
        user_id=draft.user_id,
        spotify_playlist_id=draft.spotify_playlist_id,
        name=draft.name,
        track_count=draft.track_count,
    )


INSERT_STRATEGIES: tuple[tuple[str, Callable[[PlaylistRecordDraft], Playlist]], ...] = (
    ("full", full_row),
    ("minimal", minimal_row),
)


def insert_record(db: Session, draft: PlaylistRecordDraft) -> Playlist:
    """Insert the playlist record, raising PersistenceFailed if every strategy fails."""
    for name, build in INSERT_STRATEGIES:
        try:
            row = build(draft)
            db.add(row)
            db.commit()
            db.refresh(row)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                f"Persister: {name} insert for playlist {draft.spotify_playlist_id} failed: {e}"
            )
            continue
        if name != "full":
            logger.warning(
                f"Persister: playlist {draft.spotify_playlist_id} saved with {name} insert"
            )
        else:
            logger.info(f"Persister: saved playlist record {row.id}")
        return row

    raise PersistenceFailed(
        "Playlist was created in Spotify but there was an error saving it to the database"
    )


# ── Usage accounting ──────────────────────────────────


class UsageCounter(ABC):
    """Increments a user's monthly usage window, rolling it forward if expired."""

    name = "usage"

    @abstractmethod
    def increment(self, db: Session, user_id: int, now: datetime) -> None: ...


class AtomicUsageCounter(UsageCounter):
    """Single UPDATE at the store - no read-modify-write race."""

    name = "atomic"

    def increment(self, db: Session, user_id: int, now: datetime) -> None:
        expired = UsageStats.reset_date <= now
        stmt = (
            update(UsageStats)
            .where(UsageStats.user_id == user_id)
            .values(
                playlists_created_count=case(
                    (expired, 1), else_=UsageStats.playlists_created_count + 1
                ),
                reset_date=case((expired, next_reset(now)), else_=UsageStats.reset_date),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount == 0:
            # First playlist ever: create the window lazily
            try:
                db.add(
                    UsageStats(
                        user_id=user_id,
                        playlists_created_count=1,
                        reset_date=next_reset(now),
                        updated_at=now,
                    )
                )
                db.commit()
                return
            except IntegrityError:
                # Lost the insert race - the row exists now
                db.rollback()
                db.execute(stmt)
        db.commit()


class ReadWriteUsageCounter(UsageCounter):
    """Read, add one, write back. Best effort under concurrency."""

    name = "read_write"

    def increment(self, db: Session, user_id: int, now: datetime) -> None:
        stats = db.query(UsageStats).filter(UsageStats.user_id == user_id).first()
        window = current_window(stats, now)
        if stats is None:
            stats = UsageStats(user_id=user_id)
            db.add(stats)
        stats.playlists_created_count = window.count + 1
        stats.reset_date = window.reset_at
        stats.updated_at = now
        db.commit()


DEFAULT_COUNTERS: tuple[UsageCounter, ...] = (AtomicUsageCounter(), ReadWriteUsageCounter())


def increment_usage(
    db: Session,
    user_id: int,
    counters: tuple[UsageCounter, ...] = DEFAULT_COUNTERS,
    now: datetime | None = None,
) -> str:
    """Count one created playlist against ``user_id``.

    Tries each counter in order and returns the name of the one that
    worked; raises UsageAccountingFailed if none did.
    """
    now = now or utcnow()
    for counter in counters:
        try:
            counter.increment(db, user_id, now)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Usage: {counter.name} increment failed for user {user_id}: {e}")
            continue
        logger.info(f"Usage: counted playlist for user {user_id} ({counter.name})")
        return counter.name

    raise UsageAccountingFailed(f"Usage for user {user_id} could not be updated")

