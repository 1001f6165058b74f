"""
Shared fixtures: in-memory database, a fake Spotify API and a fake
text-generation collaborator.
"""

import json
import os
import re
from datetime import datetime, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SONG_CACHE_ENABLED", "false")

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from diggr.database import Base
from diggr.models import Subscription, UsageStats, User
from diggr.schemas import PlaylistCriteria

SEARCH_QUERY_RE = re.compile(r"^track:(?P<title>.*) artist:(?P<artist>.*)$")


def song_json(songs, description="Chill mix") -> str:
    return json.dumps(
        {"description": description, "songs": [{"title": t, "artist": a} for t, a in songs]}
    )


class FakeGenerator:
    """Counts calls; returns canned text or raises a canned error."""

    def __init__(self, text: str = "", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls = 0

    async def generate(self, criteria: PlaylistCriteria) -> str:
        self.calls += 1
        if self.error:
            raise self.error
        return self.text


class FakeSpotify:
    """In-memory stand-in for the Spotify Web API, served through MockTransport.

    ``catalog`` maps lower-cased track titles to URIs. ``fail`` maps an
    operation name (search, create, add, cover, get) to an HTTP status
    to answer with instead.
    """

    def __init__(self, catalog: dict[str, str] | None = None, fail: dict[str, int] | None = None):
        self.catalog = {k.lower(): v for k, v in (catalog or {}).items()}
        self.fail = fail or {}
        self.calls: list[tuple[str, str]] = []
        self.added: list[str] = []
        self.covers: list[str] = []
        self.created: list[dict] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, op: str) -> int:
        return sum(1 for o, _ in self.calls if o == op)

    def _error(self, op: str) -> httpx.Response | None:
        code = self.fail.get(op)
        if code:
            return httpx.Response(code, json={"error": {"status": code, "message": f"{op} failed"}})
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method

        if method == "GET" and path == "/v1/search":
            self.calls.append(("search", path))
            if err := self._error("search"):
                return err
            match = SEARCH_QUERY_RE.match(request.url.params["q"])
            uri = self.catalog.get(match.group("title").lower()) if match else None
            items = [{"uri": uri, "name": match.group("title")}] if uri else []
            return httpx.Response(200, json={"tracks": {"items": items}})

        if method == "POST" and re.fullmatch(r"/v1/users/[^/]+/playlists", path):
            self.calls.append(("create", path))
            if err := self._error("create"):
                return err
            body = json.loads(request.content)
            self.created.append(body)
            return httpx.Response(
                201,
                json={
                    "id": "pl123",
                    "uri": "spotify:playlist:pl123",
                    "name": body["name"],
                    "description": body["description"],
                    "public": body["public"],
                    "external_urls": {"spotify": "https://open.spotify.com/playlist/pl123"},
                    "images": [],
                },
            )

        if method == "POST" and path == "/v1/playlists/pl123/tracks":
            self.calls.append(("add", path))
            if err := self._error("add"):
                return err
            self.added.extend(json.loads(request.content)["uris"])
            return httpx.Response(201, json={"snapshot_id": "snap"})

        if method == "PUT" and path == "/v1/playlists/pl123/images":
            self.calls.append(("cover", path))
            if err := self._error("cover"):
                return err
            self.covers.append(request.content.decode())
            return httpx.Response(202)

        if method == "GET" and path == "/v1/playlists/pl123":
            self.calls.append(("get", path))
            if err := self._error("get"):
                return err
            images = [{"url": "https://mosaic.scdn.co/custom-cover"}] if self.covers else []
            return httpx.Response(200, json={"id": "pl123", "images": images})

        return httpx.Response(404, json={"error": {"status": 404, "message": "unknown route"}})


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def user(db):
    u = User(spotify_id="spotify-user-1", email="dig@example.com", display_name="Digger")
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def criteria():
    return PlaylistCriteria(
        genres=["Lo-fi"],
        moods=["Chill"],
        eras=["2010s"],
        track_count=10,
        name="Late Night Study",
        is_public=False,
    )


def set_usage(db, user, count, reset_date):
    db.add(UsageStats(user_id=user.id, playlists_created_count=count, reset_date=reset_date))
    db.commit()


def set_subscription(db, user, plan_type="premium", status="active"):
    db.add(Subscription(user_id=user.id, plan_type=plan_type, status=status))
    db.commit()
