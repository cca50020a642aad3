"""Request orchestrator: the per-requester state machine.

Idle -> AWAITING_FORMAT -> AWAITING_QUALITY (video only) -> FETCHING -> Idle

Every request ends with exactly one terminal message (the delivered file or
one failure message) and the session removed, so the requester can start
over immediately with a new link.
"""

import asyncio
import logging
from typing import Hashable, Optional, Set, Union

from .catalog import build_catalog
from .channels.base import Button, ButtonEvent, Outbound, TextEvent, chunk_buttons
from .config import Config
from .delivery import DeliveryGate
from .engine import FetchEngine
from .errors import CourierError, SessionNotFound, user_message_for
from .links import parse_link
from .models import MediaKind, Session, SessionState, SourceMetadata
from .resolver import SourceResolver
from .sessions import SessionStore

logger = logging.getLogger("media_courier.orchestrator")

CHECKING_MESSAGE = "Checking that link..."
FORMAT_PROMPT = "What format would you like?"
QUALITY_PROMPT = "Which quality would you like for the video?"
AUDIO_STARTED = "Downloading the best audio quality now. Please wait..."
VIDEO_STARTED = "Your video is downloading now. This might take a moment..."

DOWNLOAD_PREFIX = "download:"

FORMAT_BUTTONS = [[Button("Video", MediaKind.VIDEO.value), Button("Audio", MediaKind.AUDIO.value)]]

Event = Union[TextEvent, ButtonEvent]


def format_duration(seconds: Optional[float]) -> str:
    """Format duration as M:SS."""
    if seconds is None:
        return "live"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}:{secs:02d}"


def download_payload(source_id: str, format_handle: str) -> str:
    return f"{DOWNLOAD_PREFIX}{source_id}:{format_handle}"


class Orchestrator:
    """Wire resolver, catalog, engine and delivery gate to inbound events."""

    def __init__(
        self,
        config: Config,
        outbound: Outbound,
        resolver: Optional[SourceResolver] = None,
        engine: Optional[FetchEngine] = None,
        sessions: Optional[SessionStore] = None,
        gate: Optional[DeliveryGate] = None,
    ):
        self.config = config
        self.outbound = outbound
        self.resolver = resolver or SourceResolver(config)
        self.engine = engine or FetchEngine(config)
        self.sessions = sessions or SessionStore(ttl=config.session_ttl)
        self.gate = gate or DeliveryGate(config, outbound)
        self._slots = asyncio.Semaphore(config.max_concurrent_jobs)
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    # Entry points

    def submit(self, event: Event) -> asyncio.Task:
        """Handle ``event`` as its own task and return it."""
        if self._closing:
            raise RuntimeError("orchestrator is shutting down")
        if isinstance(event, TextEvent):
            coro = self.handle_text(event)
        elif isinstance(event, ButtonEvent):
            coro = self.handle_button(event)
        else:
            raise TypeError(f"unsupported event {type(event).__name__}")
        task = asyncio.create_task(coro, name=f"request-{event.destination_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_text(self, event: TextEvent):
        async with self.sessions.lock(event.destination_id):
            await self._guard(event.destination_id, self._on_link(event))

    async def handle_button(self, event: ButtonEvent):
        await self._acknowledge(event)
        async with self.sessions.lock(event.destination_id):
            await self._guard(event.destination_id, self._on_button(event))

    async def shutdown(self, grace: float = 30.0):
        """Let in-flight requests finish for ``grace`` seconds, then cancel them."""
        self._closing = True
        pending = set(self._tasks)
        if not pending:
            return
        logger.info("Waiting for %d in-flight requests", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d requests at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # Error boundary

    async def _guard(self, destination: Hashable, step):
        """Run one step; any failure ends the request with one message."""
        try:
            await step
        except SessionNotFound as e:
            # Nothing to clear: the session is already gone or belongs to a newer link
            logger.info("No session for %s: %s", destination, e.detail)
            await self._notify(destination, e.user_message)
        except CourierError as e:
            logger.warning("Request from %s failed with %s: %s", destination, e.kind, e.detail)
            self.sessions.remove(destination)
            await self._notify(destination, e.user_message)
        except asyncio.CancelledError:
            self.sessions.remove(destination)
            raise
        except Exception as e:
            logger.error("Unexpected failure handling request from %s", destination, exc_info=True)
            self.sessions.remove(destination)
            await self._notify(destination, user_message_for(e))

    async def _notify(self, destination: Hashable, text: str):
        try:
            await self.outbound.send_text(destination, text)
        except Exception as e:
            logger.error("Could not send message to %s: %s", destination, e)

    async def _acknowledge(self, event: ButtonEvent):
        if event.event_id is None:
            return
        try:
            await self.outbound.acknowledge(event.event_id)
        except Exception as e:
            logger.debug("Acknowledge failed for %s: %s", event.destination_id, e)

    async def _clear_buttons(self, event: ButtonEvent):
        if event.message_id is None:
            return
        try:
            await self.outbound.edit_buttons(event.destination_id, event.message_id, [])
        except Exception as e:
            logger.debug("Could not clear buttons for %s: %s", event.destination_id, e)

    # Transitions

    async def _on_link(self, event: TextEvent):
        destination = event.destination_id
        # A new link always replaces the pending request, even if it turns out invalid
        self.sessions.remove(destination)
        parse_link(event.text)
        await self.outbound.send_text(destination, CHECKING_MESSAGE)

        metadata = await self.resolver.resolve(event.text)
        self.sessions.put(destination, metadata.reference, metadata)

        caption = f"{metadata.title} ({format_duration(metadata.duration)})\n\n{FORMAT_PROMPT}"
        if metadata.thumbnail:
            try:
                await self.outbound.send_photo(destination, metadata.thumbnail, caption, FORMAT_BUTTONS)
                return
            except Exception as e:
                logger.warning(
                    "Thumbnail for %s rejected (%s), sending plain buttons", metadata.source_id, e
                )
        await self.outbound.send_buttons(destination, caption, FORMAT_BUTTONS)

    async def _on_button(self, event: ButtonEvent):
        destination = event.destination_id
        payload = event.payload or ""

        if payload == MediaKind.VIDEO.value:
            session = self.sessions.get(destination)
            await self._clear_buttons(event)
            await self._choose_video(destination, session)
        elif payload == MediaKind.AUDIO.value:
            session = self.sessions.get(destination)
            await self._clear_buttons(event)
            await self._choose_audio(destination, session)
        elif payload.startswith(DOWNLOAD_PREFIX):
            session = self._session_for_download(destination, payload)
            await self._clear_buttons(event)
            rendition = session.find_rendition(payload.split(":", 2)[2])
            await self._start_fetch(destination, session, MediaKind.VIDEO, rendition)
        else:
            logger.warning("Ignoring unknown button payload %r from %s", payload, destination)

    def _session_for_download(self, destination: Hashable, payload: str) -> Session:
        """Check a quality click belongs to the live session and catalog."""
        parts = payload.split(":", 2)
        if len(parts) != 3:
            raise SessionNotFound(f"malformed payload {payload!r}")
        _, source_id, handle = parts
        session = self.sessions.get(destination)
        if session.state is not SessionState.AWAITING_QUALITY:
            raise SessionNotFound(f"quality chosen in state {session.state.value}")
        if session.reference.source_id != source_id:
            raise SessionNotFound(f"stale button for {source_id}")
        if session.find_rendition(handle) is None:
            raise SessionNotFound(f"format {handle} not offered for {source_id}")
        return session

    async def _choose_video(self, destination: Hashable, session: Session):
        metadata = session.metadata
        self.engine.preflight(metadata)
        catalog = tuple(
            metadata.renditions
            or build_catalog(
                metadata.formats,
                MediaKind.VIDEO,
                video_container=self.config.video_container,
            )
        )
        self.sessions.update(
            destination,
            state=SessionState.AWAITING_QUALITY,
            kind=MediaKind.VIDEO,
            catalog=catalog,
        )
        buttons = [
            Button(d.quality_label, download_payload(metadata.source_id, d.format_handle))
            for d in catalog
        ]
        await self.outbound.send_buttons(destination, QUALITY_PROMPT, chunk_buttons(buttons))

    async def _choose_audio(self, destination: Hashable, session: Session):
        metadata = session.metadata
        self.engine.preflight(metadata)
        catalog = build_catalog(
            metadata.formats,
            MediaKind.AUDIO,
            audio_container=self.config.audio_format,
        )
        self.sessions.update(destination, kind=MediaKind.AUDIO, catalog=tuple(catalog))
        await self._start_fetch(destination, session, MediaKind.AUDIO, catalog[0])

    async def _start_fetch(self, destination, session: Session, kind: MediaKind, rendition):
        metadata: SourceMetadata = session.metadata
        self.sessions.update(destination, state=SessionState.FETCHING, rendition=rendition)
        await self.outbound.send_text(
            destination, AUDIO_STARTED if kind is MediaKind.AUDIO else VIDEO_STARTED
        )

        async with self._slots:
            artifact = await self.engine.fetch(metadata, rendition, kind)
        await self.gate.deliver(artifact, destination, kind, title=metadata.title)

        self.sessions.remove(destination)
        logger.info("Completed %s %s for %s", metadata.source_id, kind.value, destination)
