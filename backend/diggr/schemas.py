from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Auth ──────────────────────────────────────────────
class SpotifyCallback(BaseModel):
    code: str
    redirect_uri: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    spotify_id: str
    email: str | None
    display_name: str | None

    model_config = {"from_attributes": True}


# ── Playlist criteria (wizard input) ──────────────────
class PlaylistCriteria(BaseModel):
    model_config = ConfigDict(frozen=True)

    genres: list[str] = []
    sub_genres: list[str] = []
    moods: list[str] = []
    eras: list[str] = []
    regions: list[str] = []
    languages: list[str] = []
    prompt: str | None = Field(default=None, max_length=1000)
    track_count: int = Field(default=25, ge=10, le=50)
    is_public: bool = True
    uniqueness: int = Field(default=3, ge=1, le=5)  # 1 = hits only, 5 = deep cuts
    name: str | None = Field(default=None, max_length=100)
    description: str | None = Field(default=None, max_length=300)
    # base64 JPEG; the 256 KB decoded cap is enforced at upload time
    cover_image: str | None = Field(default=None, max_length=2_000_000)

    def playlist_name(self) -> str:
        if self.name and self.name.strip():
            return self.name.strip()
        mood = self.moods[0] if self.moods else "Fresh"
        genre = self.genres[0] if self.genres else "Mix"
        name = f"{mood} {genre}"
        if self.eras:
            name += f" from the {self.eras[0]}"
        return name

    def snapshot(self) -> dict:
        """Copy of the criteria for the persisted record (without the cover)."""
        return self.model_dump(mode="json", exclude={"cover_image"})


# ── Draft (generator output) ──────────────────────────
class CandidateTrack(BaseModel):
    title: str
    artist: str


class PlaylistDraft(BaseModel):
    description: str
    candidates: list[CandidateTrack]
    source: str = "strict"  # which recovery tier produced the draft


class ResolvedTrack(BaseModel):
    uri: str
    title: str
    artist: str


# ── External (hosted) playlist ────────────────────────
class ExternalPlaylist(BaseModel):
    external_id: str
    uri: str | None = None
    url: str | None = None
    name: str
    description: str | None = None
    image_url: str | None = None
    track_uris: list[str] = []
    is_public: bool = True


# ── Persisted record ──────────────────────────────────
class PlaylistRecordOut(BaseModel):
    id: int
    user_id: int
    spotify_playlist_id: str
    name: str
    description: str | None = None
    track_count: int
    is_public: bool | None = None
    criteria: dict | None = None
    spotify_url: str | None = None
    image_url: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Pipeline result ───────────────────────────────────
class Success(BaseModel):
    status: Literal["success"] = "success"
    record: PlaylistRecordOut
    external_playlist: ExternalPlaylist


class SuccessWithWarning(BaseModel):
    status: Literal["success_with_warning"] = "success_with_warning"
    external_playlist: ExternalPlaylist
    warning: str


class Failure(BaseModel):
    status: Literal["failure"] = "failure"
    kind: str
    message: str
    # set when the hosted playlist already exists (e.g. add_tracks_failed)
    external_playlist: ExternalPlaylist | None = None


PipelineResult = Annotated[
    Union[Success, SuccessWithWarning, Failure], Field(discriminator="status")
]


# ── Quota ─────────────────────────────────────────────
class QuotaResponse(BaseModel):
    tier: str
    playlists_created: int
    playlist_limit: int | None  # None = unlimited
    remaining: int | None
    reset_at: datetime
