"""Fetch strategy that streams the media URL straight to disk with requests."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional

try:
    import requests
except ImportError:
    print("Error: requests not installed", file=sys.stderr)
    print("Install with: pip install requests", file=sys.stderr)
    sys.exit(1)

import yt_dlp

from ..catalog import EXCLUDED_PROTOCOLS
from ..errors import CourierError, DownloadFailed, TooLarge
from .base import FetchStrategy

if TYPE_CHECKING:
    from ..models import MediaKind, RenditionDescriptor, SourceMetadata

logger = logging.getLogger("media_courier.sources.stream")

CHUNK_SIZE = 64 * 1024

# Seconds a cancelled fetch waits for its worker to notice the abort
ABORT_GRACE = 1.0


class FetchAborted(Exception):
    """The awaiting task went away; stop writing."""


class StreamControl:
    """Lets the event loop stop a download running in a worker thread.

    Setting the flag alone only takes effect between chunks, so ``abort``
    also closes the response to break a read blocked on the socket.
    """

    def __init__(self):
        self.aborted = threading.Event()
        self.response = None
        self._lock = threading.Lock()

    def attach(self, response) -> bool:
        """Register the open response. False if abort already happened."""
        with self._lock:
            self.response = response
            return not self.aborted.is_set()

    def abort(self):
        with self._lock:
            self.aborted.set()
            response = self.response
        if response is not None:
            try:
                response.close()
            except (requests.exceptions.RequestException, OSError) as e:
                logger.debug("Closing aborted stream failed: %s", e)


def _log_worker_exit(future: asyncio.Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug("Stream worker stopped after abort: %s", error)


def _streamable(fmt: dict) -> bool:
    return bool(fmt.get("url")) and str(fmt.get("protocol") or "https") not in EXCLUDED_PROTOCOLS


def best_audio_format(formats) -> Optional[dict]:
    """Pick the highest-bitrate audio-only format, else any format with audio."""
    audio_only = [
        f for f in formats
        if _streamable(f)
        and (f.get("acodec") or "none") != "none"
        and (f.get("vcodec") or "none") == "none"
    ]
    if audio_only:
        return max(audio_only, key=lambda f: f.get("abr") or f.get("tbr") or 0)
    with_audio = [f for f in formats if _streamable(f) and (f.get("acodec") or "none") != "none"]
    if with_audio:
        return min(with_audio, key=lambda f: f.get("filesize") or f.get("tbr") or 0)
    return None


class StreamFetcher(FetchStrategy):
    """Stream a single-file format over HTTP into the workspace."""

    name = "stream"

    def __init__(self, config, session: Optional[requests.Session] = None):
        super().__init__(config)
        self.session = session or requests.Session()

    def locate(self, metadata: SourceMetadata, rendition: RenditionDescriptor) -> dict:
        """Return the raw format entry (with ``url``) for the rendition."""
        if rendition.has_video:
            for fmt in metadata.formats:
                if str(fmt.get("format_id")) == rendition.format_handle and _streamable(fmt):
                    return fmt
        else:
            fmt = best_audio_format(metadata.formats)
            if fmt is not None:
                return fmt
        return self._extract(metadata.reference.url, rendition.format_handle)

    def _extract(self, url: str, format_handle: str) -> dict:
        """Ask yt-dlp to select the format when the cached list has no usable URL."""
        opts = {"quiet": True, "no_warnings": True, "noplaylist": True, "format": format_handle}
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except Exception as e:
            raise DownloadFailed(f"format {format_handle} not resolvable: {e}") from e
        if not info or info.get("requested_formats") or not info.get("url"):
            raise DownloadFailed(f"format {format_handle} is not a single streamable file")
        return info

    async def fetch(
        self,
        metadata: SourceMetadata,
        rendition: RenditionDescriptor,
        kind: MediaKind,
        workspace: Path,
        max_bytes: int,
    ) -> Path:
        fmt = await asyncio.to_thread(self.locate, metadata, rendition)
        ext = str(fmt.get("ext") or rendition.container)
        target = workspace / f"{self.output_stem(metadata, kind)}.{ext}"

        control = StreamControl()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            None, self._download, fmt["url"], fmt.get("http_headers") or {}, target, max_bytes, control
        )
        try:
            await asyncio.shield(future)
        except asyncio.CancelledError:
            control.abort()
            future.add_done_callback(_log_worker_exit)
            # Give the worker a moment to close the file before the workspace goes
            done, _ = await asyncio.wait({future}, timeout=ABORT_GRACE)
            if not done:
                logger.warning("Stream worker for %s still blocked after abort", target.name)
            raise
        return target

    def _download(
        self,
        url: str,
        headers: dict,
        target: Path,
        max_bytes: int,
        control: StreamControl,
    ) -> int:
        """Blocking download loop, run in a worker thread. Returns bytes written."""
        try:
            response = self.session.get(url, headers=headers, stream=True, timeout=(10, 30))
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise DownloadFailed(f"stream request failed: {e}") from e

        with response:
            if not control.attach(response):
                raise FetchAborted(target.name)

            total_size = int(response.headers.get("content-length") or 0)
            if total_size > max_bytes:
                raise TooLarge(f"content-length {total_size} exceeds {max_bytes}")

            downloaded = 0
            try:
                with open(target, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if control.aborted.is_set():
                            raise FetchAborted(target.name)
                        if not chunk:
                            continue
                        downloaded += len(chunk)
                        if downloaded > max_bytes:
                            raise TooLarge(f"stream passed {max_bytes} bytes")
                        f.write(chunk)
            except (CourierError, FetchAborted):
                raise
            except (requests.exceptions.RequestException, OSError) as e:
                if control.aborted.is_set():
                    raise FetchAborted(target.name) from e
                raise DownloadFailed(f"stream interrupted after {downloaded} bytes: {e}") from e

        logger.debug("Streamed %d bytes to %s", downloaded, target.name)
        return downloaded
