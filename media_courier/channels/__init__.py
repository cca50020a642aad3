"""Transport collaborators."""

from .base import Button, ButtonEvent, Keyboard, Outbound, TextEvent, chunk_buttons

__all__ = ["Button", "ButtonEvent", "Keyboard", "Outbound", "TextEvent", "chunk_buttons"]
