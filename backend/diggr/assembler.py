"""
Playlist assembler - materializes the playlist on Spotify.

Steps, strictly in order:
1. create playlist      - fatal (PlaylistCreateFailed)
2. add tracks           - fatal (AddTracksFailed, carries the created playlist)
3. upload cover         - optional, non-fatal
4. re-fetch playlist    - only after a cover upload, non-fatal

Nothing is rolled back on failure: Spotify side effects stay put and are
reported to the caller.
"""

import logging

import httpx

from diggr.errors import AddTracksFailed, AuthExpired, CoverUploadFailed, PlaylistCreateFailed
from diggr.schemas import ExternalPlaylist, ResolvedTrack
from diggr.spotify import SpotifyClient, SpotifyError

logger = logging.getLogger(__name__)


def _first_image(playlist: dict) -> str | None:
    images = playlist.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        return images[0].get("url")
    return None


class PlaylistAssembler:
    def __init__(self, spotify: SpotifyClient):
        self.spotify = spotify

    async def assemble(
        self,
        owner_external_id: str,
        name: str,
        description: str,
        is_public: bool,
        tracks: list[ResolvedTrack],
        cover_image: str | None = None,
    ) -> ExternalPlaylist:
        uris = [t.uri for t in tracks]

        # 1. Create
        try:
            created = await self.spotify.create_playlist(
                owner_external_id, name, description, is_public
            )
        except AuthExpired:
            raise
        except (SpotifyError, httpx.HTTPError) as e:
            logger.error(f"Assembler: playlist creation failed: {e}")
            raise PlaylistCreateFailed(f"Playlist could not be created: {e}")

        playlist = ExternalPlaylist(
            external_id=created["id"],
            uri=created.get("uri"),
            url=(created.get("external_urls") or {}).get("spotify"),
            name=created.get("name") or name,
            description=created.get("description") or description,
            image_url=_first_image(created),
            track_uris=[],
            is_public=created["public"] if isinstance(created.get("public"), bool) else is_public,
        )
        logger.info(f"Assembler: created playlist {playlist.external_id}")

        # 2. Populate
        try:
            await self.spotify.add_tracks(playlist.external_id, uris)
        except AuthExpired as e:
            e.playlist = playlist
            raise
        except (SpotifyError, httpx.HTTPError) as e:
            logger.error(f"Assembler: adding tracks to {playlist.external_id} failed: {e}")
            raise AddTracksFailed(f"Tracks could not be added: {e}", playlist=playlist)
        playlist.track_uris = uris
        logger.info(f"Assembler: added {len(uris)} tracks to {playlist.external_id}")

        # 3. Cover (optional)
        if not cover_image:
            return playlist
        try:
            await self.upload_cover(playlist.external_id, cover_image)
        except CoverUploadFailed as e:
            logger.warning(f"Assembler: {e.message} - keeping default image")
            return playlist

        # 4. Pick up the image URL Spotify assigned to the new cover
        try:
            refreshed = await self.spotify.get_playlist(playlist.external_id)
            playlist.image_url = _first_image(refreshed) or playlist.image_url
        except (AuthExpired, SpotifyError, httpx.HTTPError) as e:
            logger.warning(f"Assembler: could not re-fetch {playlist.external_id}: {e}")

        return playlist

    async def upload_cover(self, playlist_id: str, cover_image: str) -> None:
        try:
            await self.spotify.upload_cover(playlist_id, cover_image)
        except (AuthExpired, SpotifyError, httpx.HTTPError) as e:
            raise CoverUploadFailed(f"Cover upload for {playlist_id} failed: {e}")
        logger.info(f"Assembler: uploaded custom cover for {playlist_id}")
