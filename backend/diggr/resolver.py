"""
Track resolver - maps candidate tracks to Spotify URIs.

Searches run concurrently behind a semaphore so we don't hammer the
search endpoint. Unmatched or failing candidates are dropped; only an
empty result is fatal (NoTracksFound). An expired token aborts the run.
"""

import asyncio
import logging
from functools import lru_cache

import httpx
import redis

from diggr.config import get_settings
from diggr.errors import AuthExpired, NoTracksFound
from diggr.schemas import CandidateTrack, ResolvedTrack
from diggr.spotify import SpotifyClient, SpotifyError

logger = logging.getLogger(__name__)


def song_cache_key(title: str, artist: str) -> str:
    return f"song_uri::{title.lower().strip()}|||{artist.lower().strip()}"


@lru_cache
def get_song_cache() -> redis.Redis | None:
    settings = get_settings()
    if not settings.song_cache_enabled:
        return None
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def _cache_get(cache: redis.Redis | None, key: str) -> str | None:
    if cache is None:
        return None
    try:
        cached = cache.get(key)
    except redis.RedisError as e:
        logger.debug(f"Song cache read failed: {e}")
        return None
    if cached and cached.startswith("spotify:track:"):
        return cached
    return None


def _cache_set(cache: redis.Redis | None, key: str, uri: str) -> None:
    if cache is None:
        return
    try:
        cache.set(key, uri)
    except redis.RedisError as e:
        logger.debug(f"Song cache write failed: {e}")


class TrackResolver:
    def __init__(
        self,
        spotify: SpotifyClient,
        cache: redis.Redis | None = None,
        concurrency: int | None = None,
        artist_fallback: bool | None = None,
    ):
        settings = get_settings()
        self.spotify = spotify
        self.cache = cache
        self.concurrency = max(concurrency or settings.search_concurrency, 1)
        self.artist_fallback = (
            settings.resolver_artist_fallback if artist_fallback is None else artist_fallback
        )

    async def _search(self, candidate: CandidateTrack) -> tuple[str | None, bool]:
        """Returns (uri, exact_match)."""
        items = await self.spotify.search_tracks(
            f"track:{candidate.title} artist:{candidate.artist}", limit=1
        )
        if items and items[0].get("uri"):
            return items[0]["uri"], True

        if self.artist_fallback:
            items = await self.spotify.search_tracks(f"artist:{candidate.artist}", limit=5)
            if items and items[0].get("uri"):
                logger.info(
                    f"Resolver: using artist fallback for '{candidate.title}' by {candidate.artist}"
                )
                return items[0]["uri"], False

        return None, False

    async def _resolve_one(
        self, candidate: CandidateTrack, semaphore: asyncio.Semaphore
    ) -> ResolvedTrack | None:
        key = song_cache_key(candidate.title, candidate.artist)
        cached = _cache_get(self.cache, key)
        if cached:
            return ResolvedTrack(uri=cached, title=candidate.title, artist=candidate.artist)

        async with semaphore:
            try:
                uri, exact = await self._search(candidate)
            except AuthExpired:
                raise
            except (SpotifyError, httpx.HTTPError) as e:
                logger.warning(
                    f"Resolver: search failed for '{candidate.title}' by {candidate.artist}: {e}"
                )
                return None

        if not uri:
            logger.info(f"Resolver: no match for '{candidate.title}' by {candidate.artist}, dropped")
            return None

        if exact:
            _cache_set(self.cache, key, uri)
        return ResolvedTrack(uri=uri, title=candidate.title, artist=candidate.artist)

    async def resolve(self, candidates: list[CandidateTrack]) -> list[ResolvedTrack]:
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks = [asyncio.ensure_future(self._resolve_one(c, semaphore)) for c in candidates]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # Nothing may outlive the run: the Spotify client closes after it
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        resolved = [r for r in results if r is not None]

        logger.info(f"Resolver: {len(resolved)}/{len(candidates)} candidates matched")
        if not resolved:
            raise NoTracksFound("None of the suggested tracks could be found on Spotify")
        return resolved
