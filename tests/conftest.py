"""Shared fixtures: isolated config, fake transport, fake metadata and fetchers."""

import asyncio
from pathlib import Path
from typing import Optional

import pytest
import yaml

from media_courier.channels.base import Outbound
from media_courier.config import ENV_OVERRIDES, Config
from media_courier.errors import DownloadFailed
from media_courier.resolver import MetadataProvider
from media_courier.sources.base import FetchStrategy


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep real environment and any config.yaml in cwd out of the tests."""
    for name in list(ENV_OVERRIDES) + ["MEDIA_COURIER_CONFIG"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    Config.reset()
    yield
    Config.reset()


@pytest.fixture
def temp_root(tmp_path):
    """Workspace root for fetch jobs."""
    root = tmp_path / "work"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, temp_root):
    """Factory: write a config.yaml with overrides and load it."""

    def _make(**sections) -> Config:
        data = {
            "bot": {"token": "123:test"},
            "temp_dir": str(temp_root),
            "limits": {"fetch_timeout": 5, "delivery_timeout": 5},
            "resolver": {"retries": 0, "requests_per_second": 100, "burst": 100},
        }
        for key, value in sections.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key].update(value)
            else:
                data[key] = value
        config_path = tmp_path / "config.yaml"
        with open(config_path, "w") as f:
            yaml.dump(data, f)
        Config.reset()
        return Config(config_path)

    return _make


@pytest.fixture
def test_config(make_config):
    return make_config()


def raw_format(format_id, height=None, ext="mp4", vcodec="avc1", acodec="mp4a.40.2", **extra):
    fmt = {
        "format_id": str(format_id),
        "ext": ext,
        "vcodec": vcodec,
        "acodec": acodec,
        "protocol": "https",
        "url": f"https://media.example/{format_id}",
    }
    if height:
        fmt["height"] = height
        fmt["format_note"] = f"{height}p"
    fmt.update(extra)
    return fmt


def video_info(video_id="abc123", title="Test Video", duration=120, formats=None, **extra):
    if formats is None:
        formats = [
            raw_format("140", ext="m4a", vcodec="none", abr=128, format_note="medium"),
            raw_format("22", 720),
            raw_format("37", 1080),
        ]
    info = {
        "id": video_id,
        "title": title,
        "duration": duration,
        "thumbnail": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
        "uploader": "Test Channel",
        "formats": formats,
    }
    info.update(extra)
    return info


@pytest.fixture
def make_format():
    return raw_format


@pytest.fixture
def make_info():
    return video_info


class FakeProvider(MetadataProvider):
    """Metadata provider returning canned info dicts keyed by video id."""

    def __init__(self, infos=None, error: Optional[Exception] = None):
        self.infos = infos or {}
        self.error = error
        self.calls = []

    def fetch_info(self, url: str) -> dict:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        video_id = url.rsplit("=", 1)[-1]
        if video_id not in self.infos:
            raise Exception(f"ERROR: [youtube] {video_id}: Video unavailable")
        return self.infos[video_id]


@pytest.fixture
def fake_provider():
    return FakeProvider(
        {
            "abc123": video_info(),
            "long700": video_info("long700", title="Long Video", duration=700),
        }
    )


class FakeOutbound(Outbound):
    """Records every outbound call as (name, destination, payload)."""

    def __init__(self):
        self.calls = []
        self.delivered = []
        self.fail_delivery: Optional[Exception] = None

    def names(self):
        return [call[0] for call in self.calls]

    def texts(self, destination=None):
        return [
            call[2] for call in self.calls
            if call[0] == "send_text" and (destination is None or call[1] == destination)
        ]

    def last_buttons(self):
        for name, _, payload in reversed(self.calls):
            if name in ("send_buttons", "send_photo"):
                return [b for row in payload["buttons"] for b in row]
        return []

    async def send_text(self, destination_id, text):
        self.calls.append(("send_text", destination_id, text))

    async def send_photo(self, destination_id, url, caption, buttons):
        self.calls.append(("send_photo", destination_id, {"url": url, "caption": caption, "buttons": buttons}))

    async def send_buttons(self, destination_id, text, buttons):
        self.calls.append(("send_buttons", destination_id, {"text": text, "buttons": buttons}))

    async def _send_file(self, name, destination_id, path: Path):
        self.calls.append((name, destination_id, path))
        if self.fail_delivery is not None:
            raise self.fail_delivery
        # The file must still exist while the send is in progress
        assert path.exists()
        self.delivered.append((destination_id, path.name, path.stat().st_size))

    async def send_audio(self, destination_id, path, title=None):
        await self._send_file("send_audio", destination_id, path)

    async def send_video(self, destination_id, path, caption=None):
        await self._send_file("send_video", destination_id, path)

    async def edit_buttons(self, destination_id, message_id, buttons):
        self.calls.append(("edit_buttons", destination_id, message_id))

    async def acknowledge(self, event_id):
        self.calls.append(("acknowledge", None, event_id))


@pytest.fixture
def outbound():
    return FakeOutbound()


class FakeStrategy(FetchStrategy):
    """Writes ``size`` bytes into the workspace, optionally slowly or failing."""

    name = "fake"

    def __init__(self, config, size=20_000, ext="mp4", delay=0.0, error=None):
        super().__init__(config)
        self.size = size
        self.ext = ext
        self.delay = delay
        self.error = error
        self.calls = []
        self.workspaces = []
        self.active = 0
        self.peak = 0

    async def fetch(self, metadata, rendition, kind, workspace, max_bytes):
        self.calls.append((metadata.source_id, rendition.format_handle, kind))
        self.workspaces.append(workspace)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            path = workspace / f"{self.output_stem(metadata, kind)}.{self.ext}"
            path.write_bytes(b"\0" * self.size)
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return path
        finally:
            self.active -= 1


@pytest.fixture
def make_strategy(test_config):
    def _make(config=None, **kwargs):
        return FakeStrategy(config or test_config, **kwargs)

    return _make


@pytest.fixture
def failing_strategy(make_strategy):
    return make_strategy(error=DownloadFailed("boom"))


def workspace_entries(root: Path):
    """Everything left under the workspace root."""
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*"))


@pytest.fixture
def leftovers(temp_root):
    return lambda: workspace_entries(temp_root)


def write_script(path: Path, body: str) -> Path:
    """Create an executable shell script standing in for an external tool."""
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path


@pytest.fixture
def fake_tool(tmp_path):
    def _make(name: str, body: str) -> str:
        return str(write_script(tmp_path / name, body))

    return _make
