"""Transport-facing types: inbound events and the outbound channel."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Hashable, List, Optional, Sequence


@dataclass(frozen=True)
class Button:
    label: str
    payload: str


@dataclass(frozen=True)
class TextEvent:
    destination_id: Hashable
    text: str


@dataclass(frozen=True)
class ButtonEvent:
    destination_id: Hashable
    message_id: Optional[int]
    payload: str
    event_id: Optional[str] = None
    """Transport id used to acknowledge the click"""


# Rows of buttons, as most chat transports lay out inline keyboards
Keyboard = Sequence[Sequence[Button]]


class Outbound(ABC):
    """Delivery side of the transport collaborator."""

    @abstractmethod
    async def send_text(self, destination_id: Hashable, text: str):
        ...

    @abstractmethod
    async def send_photo(
        self, destination_id: Hashable, url: str, caption: str, buttons: Keyboard
    ):
        ...

    @abstractmethod
    async def send_buttons(self, destination_id: Hashable, text: str, buttons: Keyboard):
        ...

    @abstractmethod
    async def send_audio(self, destination_id: Hashable, path: Path, title: Optional[str] = None):
        ...

    @abstractmethod
    async def send_video(self, destination_id: Hashable, path: Path, caption: Optional[str] = None):
        ...

    @abstractmethod
    async def edit_buttons(
        self, destination_id: Hashable, message_id: int, buttons: Keyboard
    ):
        ...

    @abstractmethod
    async def acknowledge(self, event_id: str):
        ...


def chunk_buttons(buttons: List[Button], per_row: int = 3) -> List[List[Button]]:
    """Lay out a flat button list in rows of ``per_row``."""
    return [buttons[i:i + per_row] for i in range(0, len(buttons), per_row)]
