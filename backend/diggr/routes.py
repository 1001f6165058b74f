import asyncio
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from diggr.config import get_settings
from diggr.database import get_db
from diggr.errors import QuotaExceeded, UserNotFound
from diggr.gemini import GeminiDraftGenerator
from diggr.models import Playlist, User
from diggr.pipeline import PlaylistPipeline, create_playlist
from diggr.quota import QuotaGate
from diggr.resolver import get_song_cache
from diggr.schemas import (
    Failure,
    PlaylistCriteria,
    PlaylistRecordOut,
    QuotaResponse,
    SpotifyCallback,
    Token,
    UserResponse,
)
from diggr.auth import create_access_token, get_current_user, get_valid_spotify_token
from diggr.spotify import SPOTIFY_API

router = APIRouter()
settings = get_settings()

SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_SCOPES = "user-read-email user-read-private playlist-modify-public playlist-modify-private ugc-image-upload"

FAILURE_STATUS = {
    "quota_exceeded": status.HTTP_403_FORBIDDEN,
    "auth_expired": status.HTTP_401_UNAUTHORIZED,
    "no_tracks_found": status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def _normalize_uri(uri: str) -> str:
    """Spotify requires 127.0.0.1 instead of localhost for local dev."""
    return uri.replace("://localhost:", "://127.0.0.1:")


def get_pipeline(db: Session = Depends(get_db)) -> PlaylistPipeline:
    return PlaylistPipeline(db, GeminiDraftGenerator(), song_cache=get_song_cache())


def get_spotify_transport() -> httpx.AsyncBaseTransport | None:
    """Overridden in tests to fake the Spotify API."""
    return None


# ── Spotify OAuth: Get login URL ─────────────────────
@router.get("/auth/login")
def spotify_login(redirect_uri: str | None = None):
    """Returns the Spotify authorization URL the frontend should redirect to."""
    allowed = [_normalize_uri(u) for u in settings.spotify_redirect_uris]

    uri = allowed[0]
    if redirect_uri:
        normalized = _normalize_uri(redirect_uri)
        if normalized in allowed:
            uri = normalized

    params = {
        "client_id": settings.spotify_client_id,
        "response_type": "code",
        "redirect_uri": uri,
        "scope": SPOTIFY_SCOPES,
        "show_dialog": "true",
    }
    return {"url": f"{SPOTIFY_AUTH_URL}?{urlencode(params)}", "redirect_uri": uri}


# ── Spotify OAuth: Exchange code for tokens ───────────
@router.post("/auth/callback", response_model=Token)
async def spotify_callback(payload: SpotifyCallback, db: Session = Depends(get_db)):
    """Exchange the Spotify auth code for tokens, create/update user, return JWT."""
    allowed = [_normalize_uri(u) for u in settings.spotify_redirect_uris]
    resolved_uri = _normalize_uri(payload.redirect_uri)
    if resolved_uri not in allowed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid redirect_uri",
        )

    async with httpx.AsyncClient(timeout=settings.spotify_timeout_seconds) as client:
        token_resp = await client.post(
            SPOTIFY_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": payload.code,
                "redirect_uri": resolved_uri,
                "client_id": settings.spotify_client_id,
                "client_secret": settings.spotify_client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if token_resp.status_code != 200:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Spotify token exchange failed: {token_resp.text}",
            )

        token_data = token_resp.json()
        spotify_access_token = token_data["access_token"]
        spotify_refresh_token = token_data.get("refresh_token")

        me_resp = await client.get(
            f"{SPOTIFY_API}/me",
            headers={"Authorization": f"Bearer {spotify_access_token}"},
        )

    if me_resp.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to fetch Spotify user profile",
        )

    me = me_resp.json()
    spotify_id = me["id"]

    user = db.query(User).filter(User.spotify_id == spotify_id).first()
    if user:
        user.email = me.get("email")
        user.display_name = me.get("display_name")
        user.spotify_access_token = spotify_access_token
        user.spotify_refresh_token = spotify_refresh_token or user.spotify_refresh_token
    else:
        user = User(
            spotify_id=spotify_id,
            email=me.get("email"),
            display_name=me.get("display_name"),
            spotify_access_token=spotify_access_token,
            spotify_refresh_token=spotify_refresh_token,
        )
        db.add(user)

    db.commit()
    db.refresh(user)

    access_token = create_access_token(data={"sub": user.spotify_id})
    return {"access_token": access_token, "token_type": "bearer"}


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    return current_user


# ── Generate a playlist ───────────────────────────────
@router.post("/playlists/generate")
async def generate_playlist(
    criteria: PlaylistCriteria,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    pipeline: PlaylistPipeline = Depends(get_pipeline),
    transport: httpx.AsyncBaseTransport | None = Depends(get_spotify_transport),
):
    spotify_token = await get_valid_spotify_token(current_user, db)

    # Spotify side effects can't be undone - finish the run even if the
    # client goes away.
    task = asyncio.ensure_future(
        create_playlist(pipeline, current_user.id, criteria, spotify_token, transport=transport)
    )
    try:
        result = await asyncio.shield(task)
    except UserNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if isinstance(result, Failure):
        code = FAILURE_STATUS.get(result.kind, status.HTTP_502_BAD_GATEWAY)
    else:
        code = status.HTTP_201_CREATED
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


# ── Saved playlists ──────────────────────────────────
@router.get("/playlists", response_model=list[PlaylistRecordOut])
def list_playlists(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return (
        db.query(Playlist)
        .filter(Playlist.user_id == current_user.id)
        .order_by(Playlist.created_at.desc(), Playlist.id.desc())
        .all()
    )


@router.get("/playlists/{playlist_id}", response_model=PlaylistRecordOut)
def get_playlist(
    playlist_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    playlist = (
        db.query(Playlist)
        .filter(Playlist.id == playlist_id, Playlist.user_id == current_user.id)
        .first()
    )
    if playlist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Playlist not found")
    return playlist


# ── Quota ─────────────────────────────────────────────
@router.get("/quota", response_model=QuotaResponse)
def get_quota(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        decision = QuotaGate(db).check_and_reserve(current_user.id)
    except QuotaExceeded as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return QuotaResponse(
        tier=decision.tier,
        playlists_created=decision.window.count,
        playlist_limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.window.reset_at,
    )


# ── Health check ──────────────────────────────────────
@router.get("/health")
def health_check():
    return {"status": "ok"}
