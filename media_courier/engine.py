"""Fetch/transcode engine: policy gates around a fetch strategy."""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from .config import Config
from .errors import DownloadFailed, Timeout, TooLarge, TooLong
from .models import Artifact, FetchJob, MediaKind, RenditionDescriptor, SourceMetadata
from .sources import FetchStrategy, create_strategy
from .sources.base import temp_workspace
from .transcode import needs_transcode, tag_audio, transcode_audio

logger = logging.getLogger("media_courier.engine")


class FetchEngine:
    """Run one fetch job to a validated artifact, or fail leaving nothing behind."""

    def __init__(self, config: Config, strategy: Optional[FetchStrategy] = None):
        self.config = config
        self.strategy = strategy or create_strategy(config)

    def preflight(self, metadata: SourceMetadata):
        """Reject sources over the duration ceiling before any download.

        Raises:
            TooLong: Duration above the ceiling, or unknown (live)
        """
        limit = self.config.max_duration
        if metadata.duration is None:
            raise TooLong(f"{metadata.source_id} has no known duration")
        if metadata.duration > limit:
            raise TooLong(f"{metadata.source_id} is {metadata.duration}s (limit {limit}s)")

    def min_bytes(self, kind: MediaKind) -> int:
        if kind is MediaKind.AUDIO:
            return self.config.min_audio_bytes
        return self.config.min_video_bytes

    async def fetch(
        self,
        metadata: SourceMetadata,
        rendition: RenditionDescriptor,
        kind: MediaKind,
    ) -> Artifact:
        """Fetch, transcode if needed and validate.

        On success the caller owns the artifact and must ``discard()`` it.
        On any failure (including timeout and cancellation) the job
        workspace has already been removed.

        Raises:
            TooLong, TooLarge, DownloadFailed, Timeout
        """
        self.preflight(metadata)
        timeout = self.config.fetch_timeout

        with temp_workspace(self.config.temp_dir, kind.value) as workspace:
            job = FetchJob(
                metadata=metadata,
                rendition=rendition,
                kind=kind,
                workspace=workspace,
                deadline=time.monotonic() + timeout,
            )
            logger.info(
                "Fetching %s %s [%s] via %s",
                metadata.source_id, kind.value, rendition.quality_label, self.strategy.name,
            )
            try:
                path = await asyncio.wait_for(self._run(job), timeout=job.remaining())
            except asyncio.TimeoutError:
                raise Timeout(f"{metadata.source_id} not fetched within {timeout:.0f}s")

            size = self.validate(path, kind)
            logger.info("Fetched %s (%d bytes)", path.name, size)
            return Artifact(path=path, kind=kind, size=size)

    async def _run(self, job: FetchJob) -> Path:
        path = await self.strategy.fetch(
            job.metadata,
            job.rendition,
            job.kind,
            job.workspace,
            self.config.max_file_size,
        )
        if job.kind is MediaKind.AUDIO:
            if needs_transcode(path, self.config.audio_format):
                # Empty input would only produce an ffmpeg error
                self._check_minimum(path, job.kind)
                path = await transcode_audio(self.config, path, job.metadata)
            else:
                tag_audio(path, job.metadata)
        return path

    def _check_minimum(self, path: Path, kind: MediaKind) -> int:
        if not path.is_file():
            raise DownloadFailed(f"{path.name} was not produced")
        size = path.stat().st_size
        if size < self.min_bytes(kind):
            raise DownloadFailed(f"{path.name} is only {size} bytes")
        return size

    def validate(self, path: Path, kind: MediaKind) -> int:
        """Post-fetch gates. Returns the artifact size.

        Raises:
            DownloadFailed: Missing or below the minimum size
            TooLarge: Above the delivery ceiling
        """
        size = self._check_minimum(path, kind)
        if size > self.config.max_file_size:
            raise TooLarge(f"{path.name} is {size} bytes (limit {self.config.max_file_size})")
        return size
