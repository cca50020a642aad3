"""Delivery gate: last check on the artifact, handoff, guaranteed cleanup."""

import asyncio
import logging
from typing import Hashable, Optional

from .channels.base import Outbound
from .config import Config
from .errors import DeliveryFailed
from .models import Artifact, MediaKind

logger = logging.getLogger("media_courier.delivery")


class DeliveryGate:
    """Hand finished artifacts to the outbound channel."""

    def __init__(self, config: Config, outbound: Outbound):
        self.config = config
        self.outbound = outbound

    def revalidate(self, artifact: Artifact) -> int:
        path = artifact.path
        if not path.is_file():
            raise DeliveryFailed(f"{path.name} disappeared before delivery")
        size = path.stat().st_size
        if size == 0:
            raise DeliveryFailed(f"{path.name} is empty")
        if size > self.config.max_file_size:
            raise DeliveryFailed(f"{path.name} grew to {size} bytes")
        return size

    async def deliver(
        self,
        artifact: Artifact,
        destination: Hashable,
        kind: MediaKind,
        title: Optional[str] = None,
    ):
        """Send the artifact and remove it, whatever happens.

        Raises:
            DeliveryFailed: Validation or the outbound send failed
        """
        try:
            size = self.revalidate(artifact)
            if kind is MediaKind.AUDIO:
                send = self.outbound.send_audio(destination, artifact.path, title)
            else:
                send = self.outbound.send_video(destination, artifact.path, title)
            try:
                await asyncio.wait_for(send, timeout=self.config.delivery_timeout)
            except asyncio.TimeoutError as e:
                raise DeliveryFailed(
                    f"send to {destination} exceeded {self.config.delivery_timeout:.0f}s"
                ) from e
            except Exception as e:
                raise DeliveryFailed(f"send to {destination} failed: {e}") from e
            logger.info("Delivered %s (%d bytes) to %s", artifact.path.name, size, destination)
        finally:
            artifact.discard()
