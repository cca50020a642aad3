"""Recognise YouTube link shapes and extract the canonical video id."""

import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from .errors import InvalidLink
from .models import SourceReference

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtube-nocookie.com",
    "www.youtube-nocookie.com",
}
SHORT_HOSTS = {"youtu.be", "www.youtu.be"}

# Path prefixes that carry the id as the next segment
PATH_PREFIXES = ("shorts", "embed", "live", "v")

VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _clean_id(candidate: Optional[str]) -> Optional[str]:
    if candidate and VIDEO_ID_RE.match(candidate):
        return candidate
    return None


def extract_video_id(url: str) -> Optional[str]:
    """Return the video id for a recognised link, or None."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return None

    host = (parsed.hostname or "").lower()
    segments = [s for s in parsed.path.split("/") if s]

    if host in SHORT_HOSTS:
        return _clean_id(segments[0]) if segments else None

    if host not in YOUTUBE_HOSTS:
        return None

    if parsed.path.rstrip("/") == "/watch":
        values = parse_qs(parsed.query).get("v")
        return _clean_id(values[0]) if values else None

    if len(segments) >= 2 and segments[0] in PATH_PREFIXES:
        return _clean_id(segments[1])

    return None


def parse_link(text: str) -> SourceReference:
    """Validate inbound text as a video link.

    Raises:
        InvalidLink: If the text is not a recognised YouTube video link
    """
    raw = (text or "").strip()
    if not raw or any(ch.isspace() for ch in raw):
        raise InvalidLink(f"not a single link: {raw[:80]!r}")

    url = raw if "://" in raw else f"https://{raw}"
    video_id = extract_video_id(url)
    if not video_id:
        raise InvalidLink(f"unrecognised link shape: {raw[:80]!r}")

    return SourceReference(raw=raw, source_id=video_id)
