"""Fetch strategy that runs the yt-dlp executable as a subprocess."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List

from ..errors import DownloadFailed, TooLarge
from .base import FetchStrategy, find_output, run_process

if TYPE_CHECKING:
    from ..models import MediaKind, RenditionDescriptor, SourceMetadata

logger = logging.getLogger("media_courier.sources.ytdlp")


class YtDlpSubprocessFetcher(FetchStrategy):
    """Invoke ``yt-dlp -f <handle>`` and pick up the file it produces."""

    name = "subprocess"

    def build_args(
        self,
        url: str,
        format_handle: str,
        output_template: Path,
        max_bytes: int,
    ) -> List[str]:
        return [
            self.config.ytdlp_path,
            "--no-playlist",
            "--no-progress",
            "--no-part",
            "--socket-timeout", "20",
            "-f", format_handle,
            "--max-filesize", str(max_bytes),
            "-o", str(output_template),
            url,
        ]

    async def fetch(
        self,
        metadata: SourceMetadata,
        rendition: RenditionDescriptor,
        kind: MediaKind,
        workspace: Path,
        max_bytes: int,
    ) -> Path:
        stem = self.output_stem(metadata, kind)
        args = self.build_args(
            metadata.reference.url,
            rendition.format_handle,
            workspace / f"{stem}.%(ext)s",
            max_bytes,
        )
        logger.debug("Running %s", " ".join(args))

        try:
            returncode, output = await run_process(args)
        except OSError as e:
            raise DownloadFailed(f"cannot run {self.config.ytdlp_path}: {e}") from e

        if "max-filesize" in output.lower():
            raise TooLarge(f"{metadata.source_id} exceeds {max_bytes} bytes")
        if returncode != 0:
            raise DownloadFailed(
                f"{self.config.ytdlp_path} exited with {returncode}: {output[-200:]}"
            )

        path = find_output(workspace, stem)
        if path is None:
            raise DownloadFailed(f"{self.config.ytdlp_path} produced no file for {metadata.source_id}")
        return path
