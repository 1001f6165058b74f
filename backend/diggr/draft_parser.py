"""
Draft parser - turns raw model text into a PlaylistDraft.

``parse_draft`` never raises. It walks an ordered recovery chain and takes
the first attempt that yields a usable draft (non-empty description and
at least one candidate):

1. strict  - strip an optional ```json fence, parse the rest as JSON
2. trimmed - drop leading/trailing delimiter lines (or cut to the outer
             braces) and parse again
3. fallback - pull the description out with a regex and pair it with a
              fixed set of well-known tracks
"""

import json
import logging
import re
from typing import Callable

from diggr.schemas import CandidateTrack, PlaylistDraft

logger = logging.getLogger(__name__)

FALLBACK_DESCRIPTION = "AI-generated playlist"

FALLBACK_TRACKS = (
    ("Shape of You", "Ed Sheeran"),
    ("Blinding Lights", "The Weeknd"),
    ("Dance Monkey", "Tones and I"),
    ("Someone You Loved", "Lewis Capaldi"),
    ("Don't Start Now", "Dua Lipa"),
)

FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)
DESCRIPTION_RE = re.compile(r'"description"\s*:\s*"((?:[^"\\]|\\.)+)"')


def _candidates(items) -> list[CandidateTrack]:
    if not isinstance(items, list):
        return []
    out = []
    for item in items:
        if not isinstance(item, dict):
            continue
        title = item.get("title")
        artist = item.get("artist")
        if isinstance(title, str) and isinstance(artist, str) and title.strip() and artist.strip():
            out.append(CandidateTrack(title=title.strip(), artist=artist.strip()))
    return out


def _from_json(text: str, source: str) -> PlaylistDraft | None:
    try:
        data = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None

    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        return None

    # "tracks" is what the older prompt asked for
    songs = data.get("songs", data.get("tracks"))
    candidates = _candidates(songs)
    if not candidates:
        return None
    return PlaylistDraft(description=description.strip(), candidates=candidates, source=source)


def parse_strict(raw: str) -> PlaylistDraft | None:
    text = raw.strip()
    match = FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()
    return _from_json(text, "strict")


def parse_trimmed(raw: str) -> PlaylistDraft | None:
    lines = raw.strip().splitlines()
    while lines and (not lines[0].strip() or "```" in lines[0]):
        lines.pop(0)
    while lines and (not lines[-1].strip() or "```" in lines[-1]):
        lines.pop()
    text = "\n".join(lines).strip()

    draft = _from_json(text, "trimmed")
    if draft:
        return draft

    # Chatty preamble/epilogue around the object
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        return _from_json(text[start : end + 1], "trimmed")
    return None


def parse_fallback(raw: str) -> PlaylistDraft:
    match = DESCRIPTION_RE.search(raw)
    description = FALLBACK_DESCRIPTION
    if match:
        try:
            description = json.loads(f'"{match.group(1)}"').strip() or FALLBACK_DESCRIPTION
        except ValueError:
            description = match.group(1).strip() or FALLBACK_DESCRIPTION
    return PlaylistDraft(
        description=description,
        candidates=[CandidateTrack(title=t, artist=a) for t, a in FALLBACK_TRACKS],
        source="fallback",
    )


RECOVERY_CHAIN: tuple[tuple[str, Callable[[str], PlaylistDraft | None]], ...] = (
    ("strict", parse_strict),
    ("trimmed", parse_trimmed),
    ("fallback", parse_fallback),
)


def parse_draft(raw: str | bytes | None) -> PlaylistDraft:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    raw = raw or ""

    for name, attempt in RECOVERY_CHAIN:
        draft = attempt(raw)
        if draft is not None:
            if name != "strict":
                logger.warning(
                    f"Draft parser: strict parse failed, recovered via '{name}' "
                    f"(raw response starts with {raw[:200]!r})"
                )
            logger.info(
                f"Draft parser: {len(draft.candidates)} candidates via '{name}'"
            )
            return draft

    # parse_fallback always returns a draft
    return parse_fallback(raw)
