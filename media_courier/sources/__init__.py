"""Fetch strategies."""

from .base import FetchStrategy
from .stream import StreamFetcher
from .ytdlp import YtDlpSubprocessFetcher

STRATEGIES = {
    StreamFetcher.name: StreamFetcher,
    YtDlpSubprocessFetcher.name: YtDlpSubprocessFetcher,
}


def create_strategy(config) -> FetchStrategy:
    """Instantiate the strategy named by ``fetch.strategy``."""
    return STRATEGIES[config.fetch_strategy](config)


__all__ = ["FetchStrategy", "StreamFetcher", "YtDlpSubprocessFetcher", "create_strategy"]
