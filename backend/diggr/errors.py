"""
Failure kinds raised by the playlist pipeline stages.

Each error carries a ``kind`` that ends up in ``Failure.kind`` when the
pipeline driver gives up on a run.
"""

from diggr.schemas import ExternalPlaylist


class UserNotFound(Exception):
    """The user id does not resolve to a known account."""


class PipelineError(Exception):
    kind = "pipeline_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class QuotaExceeded(PipelineError):
    kind = "quota_exceeded"


class TierLookupFailed(QuotaExceeded):
    """Subscription tier unknown - the gate fails closed."""


class GenerationUnavailable(PipelineError):
    kind = "generation_unavailable"


class NoTracksFound(PipelineError):
    kind = "no_tracks_found"


class PlaylistCreateFailed(PipelineError):
    kind = "playlist_create_failed"


class AddTracksFailed(PipelineError):
    kind = "add_tracks_failed"

    def __init__(self, message: str = "", playlist: ExternalPlaylist | None = None):
        super().__init__(message)
        self.playlist = playlist


class CoverUploadFailed(PipelineError):
    kind = "cover_upload_failed"


class PersistenceFailed(PipelineError):
    kind = "persistence_failed"


class UsageAccountingFailed(PipelineError):
    kind = "usage_accounting_failed"


class AuthExpired(PipelineError):
    kind = "auth_expired"

    def __init__(self, message: str = "", playlist: ExternalPlaylist | None = None):
        super().__init__(message or "Spotify access token expired. Please re-login.")
        self.playlist = playlist
