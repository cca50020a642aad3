"""Base fetch strategy and shared helpers."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

from ..config import Config

if TYPE_CHECKING:
    from ..models import MediaKind, RenditionDescriptor, SourceMetadata

logger = logging.getLogger("media_courier.sources")

WORKSPACE_RE = re.compile(r"^\d{14}_(audio|video)_")


@contextmanager
def temp_workspace(root: Path, kind: str):
    """Create a uniquely named job directory, removed if the block fails.

    On success the directory is left in place: ownership passes to the
    caller (the artifact it holds is discarded after delivery). Any
    exception, including cancellation, removes it before propagating.

    Example:
        with temp_workspace(config.temp_dir, "audio") as workspace:
            path = await strategy.fetch(..., workspace, ...)
            return Artifact(path, ...)
    """
    root.mkdir(parents=True, exist_ok=True)
    stamp = time.strftime("%Y%m%d%H%M%S")
    workspace = Path(tempfile.mkdtemp(prefix=f"{stamp}_{kind}_", dir=root))
    try:
        yield workspace
    except BaseException:
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug("Cleaned up workspace %s", workspace.name)
        raise


def sweep_workspaces(root: Path) -> int:
    """Remove job directories left behind by a previous process."""
    if not root.is_dir():
        return 0
    removed = 0
    for entry in root.iterdir():
        if entry.is_dir() and WORKSPACE_RE.match(entry.name):
            shutil.rmtree(entry, ignore_errors=True)
            removed += 1
    if removed:
        logger.info("Removed %d stale workspaces from %s", removed, root)
    return removed


def find_output(workspace: Path, stem: str) -> Optional[Path]:
    """Return the largest finished file named ``stem.*`` in the workspace."""
    candidates = [
        p
        for p in workspace.glob(f"{stem}.*")
        if p.is_file() and not p.name.endswith((".part", ".ytdl", ".temp"))
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_size)


async def run_process(args: Sequence[str]) -> Tuple[int, str]:
    """Run an external tool, killing it if the awaiting task is cancelled.

    Returns:
        Tuple of (return code, tail of combined stdout and stderr)
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        output, _ = await proc.communicate()
    except BaseException:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
            logger.debug("Killed %s (pid %s)", Path(args[0]).name, proc.pid)
        raise
    tail = (output or b"").decode("utf-8", errors="replace").strip()[-500:]
    return proc.returncode, tail


class FetchStrategy(ABC):
    """Capability that puts the bytes of one rendition into a workspace."""

    name = "base"

    def __init__(self, config: Config):
        self.config = config

    @abstractmethod
    async def fetch(
        self,
        metadata: SourceMetadata,
        rendition: RenditionDescriptor,
        kind: MediaKind,
        workspace: Path,
        max_bytes: int,
    ) -> Path:
        """Fetch the rendition into ``workspace`` and return the file path.

        Must stop (and leave no running process or thread writing) when the
        awaiting task is cancelled.

        Raises:
            DownloadFailed: The source could not be fetched
            TooLarge: The stream is known to exceed ``max_bytes``
        """

    def output_stem(self, metadata: SourceMetadata, kind: MediaKind) -> str:
        return f"{metadata.source_id}_{kind.value}"
