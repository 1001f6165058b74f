import base64
import json

import httpx
import pytest

from diggr import spotify as spotify_module
from diggr.errors import AuthExpired
from diggr.spotify import SpotifyClient, SpotifyError, clean_cover_image


def client_for(handler, **kwargs) -> SpotifyClient:
    return SpotifyClient("token-abc", transport=httpx.MockTransport(handler), **kwargs)


class TestCoverImage:
    def test_strips_data_url_prefix(self):
        payload = base64.b64encode(b"\xff\xd8jpegdata").decode()

        assert clean_cover_image(f"data:image/jpeg;base64,{payload}", 1024) == payload

    def test_rejects_oversized_image(self):
        payload = base64.b64encode(b"x" * 2048).decode()

        with pytest.raises(SpotifyError, match="limit is 1024 bytes"):
            clean_cover_image(payload, 1024)

    def test_rejects_garbage(self):
        with pytest.raises(SpotifyError, match="not valid base64"):
            clean_cover_image("this is not base64!!", 1024)


class TestRequests:
    async def test_sends_bearer_token_and_parses_search(self):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer token-abc"
            assert request.url.params["type"] == "track"
            return httpx.Response(200, json={"tracks": {"items": [{"uri": "spotify:track:1"}]}})

        async with client_for(handler) as client:
            items = await client.search_tracks("track:A artist:B")

        assert items == [{"uri": "spotify:track:1"}]

    async def test_401_raises_auth_expired(self):
        async with client_for(lambda r: httpx.Response(401)) as client:
            with pytest.raises(AuthExpired):
                await client.get_current_user()

    async def test_other_errors_raise_spotify_error(self):
        async with client_for(lambda r: httpx.Response(500, text="boom")) as client:
            with pytest.raises(SpotifyError) as exc:
                await client.get_playlist("pl1")
        assert exc.value.status_code == 500

    async def test_429_waits_and_retries(self, monkeypatch):
        waits = []

        async def fake_sleep(seconds):
            waits.append(seconds)

        monkeypatch.setattr(spotify_module.asyncio, "sleep", fake_sleep)
        responses = iter(
            [
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(200, json={"tracks": {"items": []}}),
            ]
        )

        async with client_for(lambda r: next(responses)) as client:
            items = await client.search_tracks("track:A artist:B")

        assert items == []
        assert waits == [2]

    async def test_add_tracks_is_chunked(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content)["uris"])
            return httpx.Response(201, json={"snapshot_id": "s"})

        uris = [f"spotify:track:{i}" for i in range(150)]
        async with client_for(handler) as client:
            await client.add_tracks("pl1", uris)

        assert [len(b) for b in bodies] == [100, 50]
        assert bodies[0] + bodies[1] == uris

    async def test_upload_cover_sends_jpeg_body(self):
        seen = {}

        def handler(request):
            seen["type"] = request.headers["Content-Type"]
            seen["body"] = request.content.decode()
            return httpx.Response(202)

        payload = base64.b64encode(b"\xff\xd8tiny").decode()
        async with client_for(handler) as client:
            await client.upload_cover("pl1", f"data:image/jpeg;base64,{payload}")

        assert seen == {"type": "image/jpeg", "body": payload}

    async def test_oversized_cover_never_reaches_spotify(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(202)

        payload = base64.b64encode(b"x" * 300).decode()
        async with client_for(handler, max_cover_bytes=256) as client:
            with pytest.raises(SpotifyError):
                await client.upload_cover("pl1", payload)

        assert calls == []
