"""Error taxonomy for the request pipeline.

Every failure that can reach a requester is a ``CourierError`` subclass with a
fixed user-facing message. The internal ``detail`` is only ever logged.
"""

from typing import Optional

GENERIC_MESSAGE = "Something went wrong. Please try another link."


class CourierError(Exception):
    """Base class for failures recovered at the orchestrator boundary."""

    user_message = GENERIC_MESSAGE

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.__class__.__name__
        super().__init__(self.detail)

    @property
    def kind(self) -> str:
        return self.__class__.__name__


class InvalidLink(CourierError):
    user_message = "That doesn't look like a YouTube video link. Please send a valid one."


class Unavailable(CourierError):
    user_message = "I couldn't fetch that video right now. Please try again or send another link."


class Restricted(CourierError):
    user_message = (
        "This video is private, age-restricted or otherwise restricted. "
        "Please try another one."
    )


class NoDeliverableRendition(CourierError):
    user_message = "No downloadable format is available for this video."


class TooLong(CourierError):
    user_message = "This video is too long to download. Please pick a shorter one."


class TooLarge(CourierError):
    user_message = "The file is too large to send. Try a lower quality or audio only."


class DownloadFailed(CourierError):
    user_message = "The download failed. Please try again with a different link."


class Timeout(CourierError):
    user_message = "The download took too long and was stopped. Please try again."


class DeliveryFailed(CourierError):
    user_message = "I downloaded the file but couldn't send it. Please try again."


class SessionNotFound(CourierError):
    user_message = "This request has expired. Please send the link again."


class ConfigError(Exception):
    """Invalid or missing configuration. Fatal at startup."""


def user_message_for(exc: BaseException) -> str:
    """Return the message shown to the requester for ``exc``."""
    if isinstance(exc, CourierError):
        return exc.user_message
    return GENERIC_MESSAGE
