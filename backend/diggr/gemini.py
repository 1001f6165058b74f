"""
Draft generator - asks Gemini for a playlist draft.

One call per pipeline run, no retries at this layer: a timeout, transport
error or non-200 answer is surfaced as GenerationUnavailable. The raw text
goes to draft_parser.py, which never fails.
"""

import logging

import httpx

from diggr.config import get_settings
from diggr.errors import GenerationUnavailable
from diggr.schemas import PlaylistCriteria

logger = logging.getLogger(__name__)

GEMINI_API = "https://generativelanguage.googleapis.com/v1beta/models"

SYSTEM_PROMPT = """You are a music expert with encyclopedic knowledge of music across all genres, eras, and regions.
Your task is to recommend songs that match specific criteria.
Always return accurate artist names and song titles - only recommend songs that actually exist.
For obscure or unique recommendations, focus on hidden gems, b-sides, and tracks by lesser-known artists
that still fit the criteria."""

FORMAT_DIRECTIVE = """Respond ONLY with valid JSON in this exact format:
{
  "description": "A brief description of the playlist",
  "songs": [
    {"title": "Song Title", "artist": "Artist Name"},
    ...
  ]
}

Rules:
- No duplicates
- Only output valid JSON, no markdown, no explanation"""


def _join(items: list[str]) -> str:
    return ", ".join(i.strip() for i in items if i and i.strip())


def uniqueness_clause(level: int) -> str:
    if level >= 4:
        return "Focus on very obscure, hidden gems and deep cuts that only dedicated fans would know."
    if level == 3:
        return "Include a mix of well-known tracks and some deeper cuts."
    return "Focus on popular, well-known tracks that most people would recognize."


def build_prompt(criteria: PlaylistCriteria) -> str:
    """Turn the wizard criteria into a single instruction for the model."""
    prompt = f"Create a playlist with exactly {criteria.track_count} songs"

    if criteria.genres:
        plural = "s" if len(criteria.genres) > 1 else ""
        prompt += f" in the {_join(criteria.genres)} genre{plural}"
    if criteria.sub_genres:
        plural = "s" if len(criteria.sub_genres) > 1 else ""
        prompt += f", specifically the {_join(criteria.sub_genres)} subgenre{plural}"
    if criteria.regions:
        prompt += f", from {_join(criteria.regions)}"
    if criteria.languages:
        prompt += f", sung in {_join(criteria.languages)}"
    if criteria.moods:
        prompt += f", with a {_join(criteria.moods)} mood"
    if criteria.eras:
        prompt += f", from the {_join(criteria.eras)} era"

    prompt += f". {uniqueness_clause(criteria.uniqueness)}"

    if criteria.prompt and criteria.prompt.strip():
        prompt += f"\n\nAdditional request from the listener: {criteria.prompt.strip()}"

    return f"{SYSTEM_PROMPT}\n\n{prompt}\n\n{FORMAT_DIRECTIVE}"


class GeminiDraftGenerator:
    """Text-generation collaborator backed by the Gemini REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.temperature = settings.gemini_temperature
        self.timeout = timeout or settings.generation_timeout_seconds
        self.transport = transport

    @property
    def url(self) -> str:
        return f"{GEMINI_API}/{self.model}:generateContent?key={self.api_key}"

    async def generate(self, criteria: PlaylistCriteria) -> str:
        prompt = build_prompt(criteria)
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": 8192,
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Gemini request failed: {type(e).__name__}: {e}")
            raise GenerationUnavailable(f"Text generation unavailable: {type(e).__name__}")

        if resp.status_code != 200:
            logger.error(f"Gemini API error: {resp.status_code} {resp.text[:300]}")
            raise GenerationUnavailable(f"Text generation unavailable: HTTP {resp.status_code}")

        try:
            data = resp.json()
            parts = data["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected Gemini response: {e}")
            raise GenerationUnavailable("Text generation returned no content")

        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        logger.info(f"Gemini returned {len(text)} characters")
        return text
