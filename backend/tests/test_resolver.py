import asyncio

import httpx
import pytest

from diggr.errors import AuthExpired, NoTracksFound
from diggr.resolver import TrackResolver, song_cache_key
from diggr.schemas import CandidateTrack
from diggr.spotify import SpotifyClient

from conftest import FakeSpotify


def candidates(*titles):
    return [CandidateTrack(title=t, artist=f"{t} Band") for t in titles]


class DictCache:
    def __init__(self, data=None):
        self.data = dict(data or {})

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value


async def resolve(fake: FakeSpotify, items, **kwargs):
    async with SpotifyClient("token", transport=fake.transport) as client:
        return await TrackResolver(client, **kwargs).resolve(items)


async def test_unmatched_candidates_are_dropped():
    fake = FakeSpotify(catalog={"A": "spotify:track:a", "C": "spotify:track:c"})

    resolved = await resolve(fake, candidates("A", "B", "C", "D"))

    assert sorted(r.uri for r in resolved) == ["spotify:track:a", "spotify:track:c"]
    assert fake.count("search") == 4


async def test_nothing_resolved_raises_no_tracks_found():
    fake = FakeSpotify(catalog={})

    with pytest.raises(NoTracksFound):
        await resolve(fake, candidates("Fake 1", "Fake 2"))


async def test_search_errors_are_swallowed_per_candidate():
    def handler(request):
        q = request.url.params["q"]
        if "Broken" in q:
            raise httpx.ConnectError("network blip", request=request)
        if "Flaky" in q:
            return httpx.Response(500)
        return httpx.Response(200, json={"tracks": {"items": [{"uri": "spotify:track:ok"}]}})

    async with SpotifyClient("token", transport=httpx.MockTransport(handler)) as client:
        resolved = await TrackResolver(client).resolve(candidates("Broken", "Flaky", "Fine"))

    assert [r.uri for r in resolved] == ["spotify:track:ok"]


async def test_expired_token_aborts_resolution():
    fake = FakeSpotify(catalog={"A": "spotify:track:a"}, fail={"search": 401})

    with pytest.raises(AuthExpired):
        await resolve(fake, candidates("A"))


async def test_concurrency_is_bounded():
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, json={"tracks": {"items": [{"uri": "spotify:track:x"}]}})

    async with SpotifyClient("token", transport=httpx.MockTransport(handler)) as client:
        resolved = await TrackResolver(client, concurrency=3).resolve(
            candidates(*[f"T{i}" for i in range(12)])
        )

    assert len(resolved) == 12
    assert peak <= 3


async def test_artist_fallback_search():
    def handler(request):
        q = request.url.params["q"]
        if q.startswith("artist:"):
            return httpx.Response(200, json={"tracks": {"items": [{"uri": "spotify:track:other"}]}})
        return httpx.Response(200, json={"tracks": {"items": []}})

    async with SpotifyClient("token", transport=httpx.MockTransport(handler)) as client:
        with_fallback = await TrackResolver(client, artist_fallback=True).resolve(candidates("A"))
        with pytest.raises(NoTracksFound):
            await TrackResolver(client, artist_fallback=False).resolve(candidates("A"))

    assert [r.uri for r in with_fallback] == ["spotify:track:other"]


async def test_cache_hits_skip_search_and_misses_are_stored():
    cache = DictCache({song_cache_key("A", "A Band"): "spotify:track:cached"})
    fake = FakeSpotify(catalog={"B": "spotify:track:b"})

    resolved = await resolve(fake, candidates("A", "B"), cache=cache)

    assert sorted(r.uri for r in resolved) == ["spotify:track:b", "spotify:track:cached"]
    assert fake.count("search") == 1
    assert cache.data[song_cache_key("B", "B Band")] == "spotify:track:b"


async def test_unreadable_search_responses_drop_only_that_candidate():
    def handler(request):
        q = request.url.params["q"]
        if "Bad" in q:
            return httpx.Response(200, text="<html>gateway</html>")
        if "Null" in q:
            return httpx.Response(200, json={"tracks": None})
        if "Odd" in q:
            return httpx.Response(200, json={"tracks": {"items": ["spotify:track:str"]}})
        return httpx.Response(200, json={"tracks": {"items": [{"uri": "spotify:track:ok"}]}})

    async with SpotifyClient("token", transport=httpx.MockTransport(handler)) as client:
        resolved = await TrackResolver(client).resolve(candidates("Bad", "Null", "Odd", "Good"))

    assert [r.uri for r in resolved] == ["spotify:track:ok"]


async def test_expired_token_cancels_remaining_searches():
    started = []
    finished = []

    async def handler(request):
        q = request.url.params["q"]
        if q.startswith("track:T0 "):
            return httpx.Response(401, json={"error": {"status": 401}})
        started.append(q)
        await asyncio.sleep(0.05)
        finished.append(q)
        return httpx.Response(200, json={"tracks": {"items": [{"uri": "spotify:track:x"}]}})

    async with SpotifyClient("token", transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(AuthExpired):
            await TrackResolver(client, concurrency=2).resolve(
                candidates(*[f"T{i}" for i in range(7)])
            )
        leftover = [
            t for t in asyncio.all_tasks() if t is not asyncio.current_task() and not t.done()
        ]

    assert leftover == []
    await asyncio.sleep(0.1)
    assert len(started) <= 1
    assert finished == []
