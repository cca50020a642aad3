"""Tests for the delivery gate."""

import asyncio

import pytest

from media_courier.delivery import DeliveryGate
from media_courier.errors import DeliveryFailed
from media_courier.models import Artifact, MediaKind
from media_courier.sources.base import temp_workspace


@pytest.fixture
def make_artifact(temp_root):
    def _make(size=20_000, kind=MediaKind.VIDEO, name="abc123_video.mp4"):
        with temp_workspace(temp_root, kind.value) as workspace:
            path = workspace / name
            path.write_bytes(b"\0" * size)
        return Artifact(path=path, kind=kind, size=size)

    return _make


@pytest.mark.asyncio
async def test_delivery_sends_then_removes(test_config, outbound, make_artifact, leftovers):
    gate = DeliveryGate(test_config, outbound)
    artifact = make_artifact()

    await gate.deliver(artifact, 42, MediaKind.VIDEO, "Test Video")

    assert outbound.delivered == [(42, "abc123_video.mp4", 20_000)]
    assert leftovers() == []


@pytest.mark.asyncio
async def test_audio_goes_through_send_audio(test_config, outbound, make_artifact):
    gate = DeliveryGate(test_config, outbound)
    artifact = make_artifact(size=4000, kind=MediaKind.AUDIO, name="abc123_audio.mp3")

    await gate.deliver(artifact, 42, MediaKind.AUDIO, "Test Video")

    assert outbound.names() == ["send_audio"]


@pytest.mark.asyncio
async def test_send_failure_is_delivery_failed_and_cleans_up(test_config, outbound, make_artifact, leftovers):
    outbound.fail_delivery = RuntimeError("Request Entity Too Large")
    gate = DeliveryGate(test_config, outbound)

    with pytest.raises(DeliveryFailed, match="Request Entity Too Large"):
        await gate.deliver(make_artifact(), 42, MediaKind.VIDEO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_missing_file_is_delivery_failed(test_config, outbound, make_artifact, leftovers):
    artifact = make_artifact()
    artifact.path.unlink()

    with pytest.raises(DeliveryFailed):
        await DeliveryGate(test_config, outbound).deliver(artifact, 42, MediaKind.VIDEO)

    assert outbound.calls == []
    assert leftovers() == []


@pytest.mark.asyncio
async def test_empty_file_is_delivery_failed(test_config, outbound, make_artifact, leftovers):
    with pytest.raises(DeliveryFailed):
        await DeliveryGate(test_config, outbound).deliver(make_artifact(size=0), 42, MediaKind.VIDEO)

    assert outbound.calls == []
    assert leftovers() == []


@pytest.mark.asyncio
async def test_slow_send_times_out(make_config, outbound, make_artifact, leftovers):
    config = make_config(limits={"delivery_timeout": 1})

    async def stalled(destination_id, path, caption=None):
        await asyncio.sleep(10)

    outbound.send_video = stalled

    with pytest.raises(DeliveryFailed, match="exceeded"):
        await DeliveryGate(config, outbound).deliver(make_artifact(), 42, MediaKind.VIDEO)

    assert leftovers() == []
