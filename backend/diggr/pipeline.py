"""
Playlist creation pipeline.

Flow:
1. quota     - may this user create another playlist this month?
2. generate  - ask the text model for a draft
3. parse     - recover a PlaylistDraft from the raw text (never fails)
4. resolve   - match candidates against the Spotify catalog
5. assemble  - create the playlist, add tracks, optional cover
6. persist   - save the local PlaylistRecord          (non-fatal, warns)
7. usage     - count the playlist against the quota   (non-fatal, silent)

The driver walks the stage list in order. A fatal stage error ends the run
with a Failure; a non-fatal one is logged and, if the stage surfaces its
warnings, reported with the result. Once the Spotify playlist exists the
run always ends in Success or SuccessWithWarning - except when adding
tracks fails, which returns a Failure that still carries the playlist.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Protocol

from sqlalchemy.orm import Session

from diggr.assembler import PlaylistAssembler
from diggr.draft_parser import parse_draft
from diggr.errors import PipelineError, QuotaExceeded, UserNotFound
from diggr.models import Playlist, User, utcnow
from diggr.persister import (
    DEFAULT_COUNTERS,
    PlaylistRecordDraft,
    UsageCounter,
    increment_usage,
    insert_record,
)
from diggr.quota import QuotaDecision, QuotaGate
from diggr.resolver import TrackResolver
from diggr.schemas import (
    ExternalPlaylist,
    Failure,
    PlaylistCriteria,
    PlaylistDraft,
    PlaylistRecordOut,
    ResolvedTrack,
    Success,
    SuccessWithWarning,
)
from diggr.spotify import SpotifyClient

logger = logging.getLogger(__name__)


class DraftGenerator(Protocol):
    async def generate(self, criteria: PlaylistCriteria) -> str: ...


@dataclass
class PipelineRun:
    """Everything one run accumulates, stage by stage."""

    user_id: int
    criteria: PlaylistCriteria
    spotify: SpotifyClient
    user: User | None = None
    quota: QuotaDecision | None = None
    raw_text: str = ""
    draft: PlaylistDraft | None = None
    tracks: list[ResolvedTrack] = field(default_factory=list)
    playlist: ExternalPlaylist | None = None
    record: Playlist | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Stage:
    name: str
    run: Callable[[PipelineRun], Awaitable[None]]
    fatal: bool = True
    surface_warning: bool = True


class PlaylistPipeline:
    def __init__(
        self,
        db: Session,
        generator: DraftGenerator,
        song_cache=None,
        usage_counters: tuple[UsageCounter, ...] = DEFAULT_COUNTERS,
        free_monthly_limit: int | None = None,
        search_concurrency: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.generator = generator
        self.song_cache = song_cache
        self.usage_counters = usage_counters
        self.free_monthly_limit = free_monthly_limit
        self.search_concurrency = search_concurrency
        self.clock = clock

        self.stages: tuple[Stage, ...] = (
            Stage("quota", self._check_quota),
            Stage("generate", self._generate),
            Stage("parse", self._parse),
            Stage("resolve", self._resolve),
            Stage("assemble", self._assemble),
            Stage("persist", self._persist, fatal=False),
            Stage("usage", self._account_usage, fatal=False, surface_warning=False),
        )

    # ── Stages ────────────────────────────────────────

    async def _check_quota(self, run: PipelineRun) -> None:
        gate = QuotaGate(self.db, free_monthly_limit=self.free_monthly_limit, clock=self.clock)
        run.quota = gate.check_and_reserve(run.user_id)
        run.user = self.db.get(User, run.user_id)
        if not run.quota.allowed:
            raise QuotaExceeded(
                f"Monthly playlist limit reached ({run.quota.window.count}/{run.quota.limit})"
            )

    async def _generate(self, run: PipelineRun) -> None:
        run.raw_text = await self.generator.generate(run.criteria)

    async def _parse(self, run: PipelineRun) -> None:
        draft = parse_draft(run.raw_text)
        # The model sometimes overshoots the requested count
        run.draft = draft.model_copy(
            update={"candidates": draft.candidates[: run.criteria.track_count]}
        )

    async def _resolve(self, run: PipelineRun) -> None:
        resolver = TrackResolver(
            run.spotify, cache=self.song_cache, concurrency=self.search_concurrency
        )
        run.tracks = await resolver.resolve(run.draft.candidates)

    async def _assemble(self, run: PipelineRun) -> None:
        criteria = run.criteria
        description = (criteria.description or "").strip() or run.draft.description
        run.playlist = await PlaylistAssembler(run.spotify).assemble(
            owner_external_id=run.user.spotify_id,
            name=criteria.playlist_name(),
            description=description,
            is_public=criteria.is_public,
            tracks=run.tracks,
            cover_image=criteria.cover_image,
        )

    async def _persist(self, run: PipelineRun) -> None:
        playlist = run.playlist
        run.record = insert_record(
            self.db,
            PlaylistRecordDraft(
                user_id=run.user_id,
                spotify_playlist_id=playlist.external_id,
                name=playlist.name,
                track_count=len(playlist.track_uris),
                description=playlist.description,
                is_public=playlist.is_public,
                criteria=run.criteria.snapshot(),
                spotify_url=playlist.url,
                image_url=playlist.image_url,
            ),
        )

    async def _account_usage(self, run: PipelineRun) -> None:
        increment_usage(self.db, run.user_id, self.usage_counters, now=self.clock())

    # ── Driver ────────────────────────────────────────

    async def run(
        self, user_id: int, criteria: PlaylistCriteria, spotify: SpotifyClient
    ) -> Success | SuccessWithWarning | Failure:
        """Run every stage for one request. Raises only UserNotFound."""
        run = PipelineRun(user_id=user_id, criteria=criteria, spotify=spotify)

        for stage in self.stages:
            try:
                await stage.run(run)
            except UserNotFound:
                raise
            except PipelineError as e:
                if stage.fatal:
                    logger.error(f"Pipeline: stage '{stage.name}' failed ({e.kind}): {e.message}")
                    return Failure(
                        kind=e.kind,
                        message=e.message,
                        external_playlist=getattr(e, "playlist", None) or run.playlist,
                    )
                logger.warning(f"Pipeline: stage '{stage.name}' degraded ({e.kind}): {e.message}")
                if stage.surface_warning:
                    run.warnings.append(e.message)

        if run.record is None:
            return SuccessWithWarning(
                external_playlist=run.playlist,
                warning="; ".join(run.warnings) or "Playlist was not saved locally",
            )
        logger.info(
            f"Pipeline: user {user_id} got playlist {run.playlist.external_id} "
            f"with {len(run.playlist.track_uris)} tracks"
        )
        return Success(
            record=PlaylistRecordOut.model_validate(run.record),
            external_playlist=run.playlist,
        )


async def create_playlist(
    pipeline: PlaylistPipeline,
    user_id: int,
    criteria: PlaylistCriteria,
    access_token: str,
    transport=None,
) -> Success | SuccessWithWarning | Failure:
    """One request, one Spotify client, one pipeline run."""
    async with SpotifyClient(access_token, transport=transport) as spotify:
        return await pipeline.run(user_id, criteria, spotify)
