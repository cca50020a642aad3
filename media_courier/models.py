"""Data model shared by the pipeline components."""

import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

WATCH_URL = "https://www.youtube.com/watch?v={}"


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class SessionState(str, Enum):
    AWAITING_FORMAT = "awaiting_format"
    AWAITING_QUALITY = "awaiting_quality"
    FETCHING = "fetching"


@dataclass(frozen=True)
class SourceReference:
    """A link the requester sent.

    Immutable once validated; discarded together with its session.
    """

    raw: str
    """Text as received"""

    source_id: str
    """Canonical video identifier"""

    valid: bool = True

    @property
    def url(self) -> str:
        return WATCH_URL.format(self.source_id)


@dataclass(frozen=True)
class RenditionDescriptor:
    """One selectable quality/container/codec combination."""

    quality_label: str
    container: str
    has_video: bool
    has_audio: bool
    format_handle: str
    """Opaque format selector understood by the fetch strategies"""

    height: int = 0
    filesize: Optional[int] = None


@dataclass
class SourceMetadata:
    """Metadata fetched once per source reference."""

    reference: SourceReference
    title: str
    duration: Optional[float]
    thumbnail: Optional[str] = None
    uploader: Optional[str] = None
    formats: Tuple[dict, ...] = ()
    """Raw format entries as reported by yt-dlp"""

    renditions: Tuple[RenditionDescriptor, ...] = ()
    """Deliverable video renditions, best first"""

    @property
    def source_id(self) -> str:
        return self.reference.source_id

    @property
    def has_audio(self) -> bool:
        return any(
            (fmt.get("acodec") or "none") != "none" for fmt in self.formats
        )


@dataclass
class Session:
    """Per-requester state threaded between asynchronous steps."""

    reference: SourceReference
    metadata: SourceMetadata
    state: SessionState = SessionState.AWAITING_FORMAT
    catalog: Tuple[RenditionDescriptor, ...] = ()
    rendition: Optional[RenditionDescriptor] = None
    kind: Optional[MediaKind] = None
    updated_at: float = field(default_factory=time.monotonic)

    def touch(self):
        self.updated_at = time.monotonic()

    def find_rendition(self, format_handle: str) -> Optional[RenditionDescriptor]:
        for descriptor in self.catalog:
            if descriptor.format_handle == format_handle:
                return descriptor
        return None


@dataclass
class FetchJob:
    """A single fetch owned by the engine for its whole lifetime."""

    metadata: SourceMetadata
    rendition: RenditionDescriptor
    kind: MediaKind
    workspace: Path
    deadline: float
    """Absolute ``time.monotonic()`` value after which the job is aborted"""

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class Artifact:
    """Finished media file, ready for delivery."""

    path: Path
    kind: MediaKind
    size: int

    def discard(self):
        """Remove the file and the job workspace that holds it."""
        workspace = self.path.parent
        self.path.unlink(missing_ok=True)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
