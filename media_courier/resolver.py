"""Source resolver: validate a link and fetch its metadata via yt-dlp."""

import asyncio
import logging
import sys
from abc import ABC, abstractmethod
from typing import Optional

try:
    import yt_dlp
except ImportError:
    print("Error: yt-dlp not installed", file=sys.stderr)
    print("Install with: pip install yt-dlp", file=sys.stderr)
    sys.exit(1)

from .catalog import build_catalog
from .config import Config
from .errors import (
    CourierError,
    InvalidLink,
    NoDeliverableRendition,
    Restricted,
    Unavailable,
)
from .links import parse_link
from .models import MediaKind, SourceMetadata, SourceReference
from .rate_limiter import RateLimiter

logger = logging.getLogger("media_courier.resolver")

# Lower-cased fragments of yt-dlp error text
RESTRICTED_MARKERS = (
    "http error 403",
    "http error 410",
    "403: forbidden",
    "410: gone",
    "private video",
    "sign in to confirm",
    "sign in to view",
    "age-restricted",
    "confirm your age",
    "inappropriate for some users",
    "members-only",
    "join this channel",
    "not available in your country",
    "blocked it in your country",
    "copyright",
)
INVALID_MARKERS = (
    "unsupported url",
    "is not a valid url",
    "incomplete youtube id",
    "invalid video id",
)


def classify_error(message: str) -> type:
    """Map yt-dlp error text to a failure kind."""
    text = (message or "").lower()
    if any(marker in text for marker in RESTRICTED_MARKERS):
        return Restricted
    if any(marker in text for marker in INVALID_MARKERS):
        return InvalidLink
    return Unavailable


class MetadataProvider(ABC):
    """Capability that returns the raw info dict for a video URL."""

    @abstractmethod
    def fetch_info(self, url: str) -> dict:
        """Fetch metadata without downloading. Blocking."""


class YtDlpProvider(MetadataProvider):
    """Metadata provider backed by the yt-dlp Python API."""

    def __init__(self, socket_timeout: float = 20):
        self.ydl_opts = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "socket_timeout": socket_timeout,
        }

    def fetch_info(self, url: str) -> dict:
        with yt_dlp.YoutubeDL(self.ydl_opts) as ydl:
            info = ydl.extract_info(url, download=False)
        if not info:
            raise Unavailable(f"yt-dlp returned no info for {url}")
        return ydl.sanitize_info(info)


class SourceResolver:
    """Turn raw inbound text into ``SourceMetadata``."""

    def __init__(
        self,
        config: Config,
        provider: Optional[MetadataProvider] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.config = config
        self.provider = provider or YtDlpProvider()
        self.limiter = limiter or RateLimiter(
            config.resolver_rate, config.resolver_burst
        )
        self.retries = config.resolver_retries
        self.timeout = config.resolver_timeout

    async def resolve(self, raw_text: str) -> SourceMetadata:
        """Validate ``raw_text`` and fetch metadata for it.

        Raises:
            InvalidLink: Not a recognised video link, or not a video
            Restricted: Private, age/region restricted, 403/410
            Unavailable: Any other fetch failure, or the lookup deadline passed
            NoDeliverableRendition: Nothing downloadable for this source
        """
        reference = parse_link(raw_text)
        try:
            info = await asyncio.wait_for(
                self._fetch_with_retries(reference), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise Unavailable(
                f"metadata for {reference.source_id} not fetched within {self.timeout:.0f}s"
            )
        return self._build_metadata(reference, info)

    async def _fetch_with_retries(self, reference: SourceReference) -> dict:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self._fetch, reference.url)
            except Unavailable as e:
                if attempt >= self.retries:
                    raise
                attempt += 1
                logger.warning(
                    "Metadata fetch for %s failed (%s), retry %d/%d",
                    reference.source_id, e.detail, attempt, self.retries,
                )
                await asyncio.sleep(min(2 ** attempt, 5))

    def _fetch(self, url: str) -> dict:
        """Call the provider and make sure only our failure kinds escape."""
        self.limiter.acquire()
        try:
            return self.provider.fetch_info(url)
        except CourierError:
            raise
        except Exception as e:
            kind = classify_error(str(e))
            raise kind(f"{type(e).__name__}: {e}") from e

    def _build_metadata(self, reference: SourceReference, info: dict) -> SourceMetadata:
        if info.get("_type") in ("playlist", "multi_video") or "entries" in info:
            raise InvalidLink(f"{reference.source_id} is not a single video")
        if info.get("is_live") or info.get("live_status") == "is_upcoming":
            raise Unavailable(f"{reference.source_id} is a live or upcoming stream")

        title = str(info.get("title") or "").strip()
        if not title:
            raise Unavailable(f"{reference.source_id} has no title")

        formats = tuple(f for f in info.get("formats") or () if isinstance(f, dict))
        try:
            renditions = tuple(
                build_catalog(
                    formats,
                    MediaKind.VIDEO,
                    video_container=self.config.video_container,
                )
            )
        except NoDeliverableRendition:
            renditions = ()

        metadata = SourceMetadata(
            reference=reference,
            title=title,
            duration=info.get("duration"),
            thumbnail=info.get("thumbnail") or self._first_thumbnail(info),
            uploader=info.get("uploader") or info.get("channel"),
            formats=formats,
            renditions=renditions,
        )

        if not renditions and not metadata.has_audio:
            raise NoDeliverableRendition(f"{reference.source_id} has no deliverable stream")

        logger.info(
            "Resolved %s: %r (%ss, %d video renditions)",
            reference.source_id, title, metadata.duration, len(renditions),
        )
        return metadata

    @staticmethod
    def _first_thumbnail(info: dict) -> Optional[str]:
        thumbnails = info.get("thumbnails") or []
        for thumb in reversed(thumbnails):
            if isinstance(thumb, dict) and thumb.get("url"):
                return thumb["url"]
        return None
