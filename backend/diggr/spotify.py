"""Async Spotify Web API client for search and playlist hosting."""

import asyncio
import base64
import binascii
import logging
import re

import httpx

from diggr.config import get_settings
from diggr.errors import AuthExpired

logger = logging.getLogger(__name__)

SPOTIFY_API = "https://api.spotify.com/v1"

ADD_TRACKS_CHUNK = 100  # Spotify limit per request
MAX_RETRY_AFTER = 30

DATA_URL_PREFIX_RE = re.compile(r"^data:image/jpe?g;base64,", re.IGNORECASE)


class SpotifyError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def _retry_after(resp: httpx.Response) -> int:
    value = resp.headers.get("Retry-After", "3")
    return min(int(value), MAX_RETRY_AFTER) if value.isdigit() else 3


def clean_cover_image(image_base64: str, max_bytes: int) -> str:
    """Strip a data-URL prefix and check the decoded JPEG against the cap."""
    data = "".join(DATA_URL_PREFIX_RE.sub("", image_base64.strip()).split())
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise SpotifyError("Cover image is not valid base64")
    if not raw:
        raise SpotifyError("Cover image is empty")
    if len(raw) > max_bytes:
        raise SpotifyError(
            f"Cover image is {len(raw)} bytes, the limit is {max_bytes} bytes"
        )
    return data


class SpotifyClient:
    """Thin wrapper around one httpx.AsyncClient bound to a user token.

    Any 401 raises AuthExpired, any other non-2xx raises SpotifyError.
    """

    def __init__(
        self,
        access_token: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = 3,
        max_cover_bytes: int | None = None,
    ):
        settings = get_settings()
        self.access_token = access_token
        self.max_retries = max_retries
        self.max_cover_bytes = max_cover_bytes or settings.max_cover_bytes
        self._client = httpx.AsyncClient(
            base_url=SPOTIFY_API,
            timeout=timeout or settings.spotify_timeout_seconds,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, waiting out 429s up to ``max_retries`` times."""
        for attempt in range(self.max_retries):
            resp = await self._client.request(method, path, **kwargs)
            if resp.status_code == 401:
                raise AuthExpired()
            if resp.status_code == 429 and attempt < self.max_retries - 1:
                wait = _retry_after(resp)
                logger.warning(
                    f"Spotify {method} {path} 429, waiting {wait}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(wait)
                continue
            if resp.status_code >= 400:
                raise SpotifyError(
                    f"Spotify {method} {path} failed: HTTP {resp.status_code} {resp.text[:300]}",
                    status_code=resp.status_code,
                )
            return resp
        raise SpotifyError(f"Spotify {method} {path} still rate limited", status_code=429)

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            raise SpotifyError(
                f"Spotify returned an unreadable body: {resp.text[:100]!r}",
                status_code=resp.status_code,
            )
        if not isinstance(data, dict):
            raise SpotifyError("Spotify returned an unexpected payload", status_code=resp.status_code)
        return data

    # ── Catalog ───────────────────────────────────────

    async def search_tracks(self, query: str, limit: int = 1) -> list[dict]:
        resp = await self._request(
            "GET", "/search", params={"q": query, "type": "track", "limit": limit}
        )
        tracks = self._json(resp).get("tracks") or {}
        items = tracks.get("items") if isinstance(tracks, dict) else None
        return [i for i in items or [] if isinstance(i, dict)]

    async def get_current_user(self) -> dict:
        resp = await self._request("GET", "/me")
        return self._json(resp)

    # ── Playlists ─────────────────────────────────────

    async def create_playlist(
        self, owner_id: str, name: str, description: str, public: bool
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/users/{owner_id}/playlists",
            json={"name": name, "description": description, "public": public},
        )
        created = self._json(resp)
        if not created.get("id"):
            raise SpotifyError("Spotify created a playlist without an id", status_code=resp.status_code)
        return created

    async def add_tracks(self, playlist_id: str, uris: list[str]) -> None:
        for i in range(0, len(uris), ADD_TRACKS_CHUNK):
            chunk = uris[i : i + ADD_TRACKS_CHUNK]
            await self._request("POST", f"/playlists/{playlist_id}/tracks", json={"uris": chunk})

    async def upload_cover(self, playlist_id: str, image_base64: str) -> None:
        data = clean_cover_image(image_base64, self.max_cover_bytes)
        await self._request(
            "PUT",
            f"/playlists/{playlist_id}/images",
            content=data,
            headers={"Content-Type": "image/jpeg"},
        )

    async def get_playlist(self, playlist_id: str) -> dict:
        resp = await self._request("GET", f"/playlists/{playlist_id}")
        return self._json(resp)
