"""Rendition catalog: turn raw yt-dlp formats into selectable renditions.

Video renditions are muxed only: a descriptor is exposed when one stream
carries both audio and video in the deliverable container. Adaptive
(video-only) streams are never offered, so no pairing step exists.

Audio collapses to a single synthetic "best" descriptor; the fetch
strategies pick the best audio stream and the engine transcodes it.
"""

import re
from typing import Iterable, List, Optional

from .errors import NoDeliverableRendition
from .models import MediaKind, RenditionDescriptor

AUDIO_HANDLE = "bestaudio/best"

# Manifest, storyboard and segmented protocols cannot be streamed as one file
EXCLUDED_PROTOCOLS = ("m3u8", "m3u8_native", "http_dash_segments", "mhtml", "f4m", "ism")

QUALITY_RE = re.compile(r"^(\d{2,4})p")


def _has_codec(value: Optional[str]) -> bool:
    return bool(value) and value != "none"


def quality_label(fmt: dict) -> str:
    """Return the quality label (e.g. ``720p``) for a raw format, or ''."""
    note = str(fmt.get("format_note") or "").strip()
    if QUALITY_RE.match(note):
        return note
    height = fmt.get("height")
    if isinstance(height, int) and height > 0:
        return f"{height}p"
    return ""


def resolution(label: str, height: Optional[int] = None) -> int:
    """Extract the numeric resolution used as sort key."""
    if isinstance(height, int) and height > 0:
        return height
    match = QUALITY_RE.match(label or "")
    return int(match.group(1)) if match else 0


def _video_descriptor(fmt: dict, container: str) -> Optional[RenditionDescriptor]:
    handle = fmt.get("format_id")
    if not handle:
        return None
    if str(fmt.get("ext", "")).lower() != container:
        return None
    if str(fmt.get("protocol") or "https") in EXCLUDED_PROTOCOLS:
        return None
    if not (_has_codec(fmt.get("vcodec")) and _has_codec(fmt.get("acodec"))):
        return None

    label = quality_label(fmt)
    if not label:
        return None

    height = fmt.get("height")
    return RenditionDescriptor(
        quality_label=label,
        container=container,
        has_video=True,
        has_audio=True,
        format_handle=str(handle),
        height=resolution(label, height),
        filesize=fmt.get("filesize") or fmt.get("filesize_approx"),
    )


def build_catalog(
    raw_formats: Iterable[dict],
    kind: MediaKind,
    video_container: str = "mp4",
    audio_container: str = "mp3",
) -> List[RenditionDescriptor]:
    """Build the ordered, deduplicated rendition list for ``kind``.

    Args:
        raw_formats: Format entries from the metadata fetch, in source order
        kind: Requested media kind
        video_container: Container a video rendition must already be in
        audio_container: Container the audio artifact is delivered in

    Returns:
        Descriptors sorted by descending resolution (stable)

    Raises:
        NoDeliverableRendition: If nothing survives filtering
    """
    formats = [fmt for fmt in raw_formats if isinstance(fmt, dict)]

    if kind is MediaKind.AUDIO:
        if not any(_has_codec(fmt.get("acodec")) for fmt in formats):
            raise NoDeliverableRendition("no stream with audio")
        return [
            RenditionDescriptor(
                quality_label="best",
                container=audio_container,
                has_video=False,
                has_audio=True,
                format_handle=AUDIO_HANDLE,
            )
        ]

    seen = set()
    catalog = []
    for fmt in formats:
        descriptor = _video_descriptor(fmt, video_container.lower())
        if descriptor is None or descriptor.format_handle in seen:
            continue
        seen.add(descriptor.format_handle)
        catalog.append(descriptor)

    if not catalog:
        raise NoDeliverableRendition(f"no muxed {video_container} rendition")

    # sorted() is stable, so equal resolutions keep source order
    return sorted(catalog, key=lambda d: d.height, reverse=True)
