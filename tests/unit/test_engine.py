"""Tests for the fetch/transcode engine and its cleanup guarantees."""

import asyncio
import time

import pytest

from media_courier.catalog import build_catalog
from media_courier.engine import FetchEngine
from media_courier.errors import DownloadFailed, Timeout, TooLarge, TooLong
from media_courier.links import parse_link
from media_courier.models import FetchJob, MediaKind, SourceMetadata

COPY_FFMPEG = """
while [ $# -gt 1 ]; do
  if [ "$1" = "-i" ]; then src="$2"; fi
  shift
done
cp "$src" "$1"
"""


@pytest.fixture
def metadata(make_info):
    info = make_info()
    reference = parse_link("https://youtu.be/abc123")
    return SourceMetadata(
        reference=reference,
        title=info["title"],
        duration=info["duration"],
        uploader=info["uploader"],
        formats=tuple(info["formats"]),
        renditions=tuple(build_catalog(info["formats"], MediaKind.VIDEO)),
    )


@pytest.fixture
def video_rendition(metadata):
    return metadata.renditions[0]


@pytest.fixture
def audio_rendition(metadata):
    return build_catalog(metadata.formats, MediaKind.AUDIO)[0]


@pytest.mark.asyncio
async def test_successful_fetch_returns_artifact(test_config, make_strategy, metadata, video_rendition, temp_root, leftovers):
    strategy = make_strategy(size=20_000)
    engine = FetchEngine(test_config, strategy)

    artifact = await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert artifact.path.exists()
    assert artifact.size == 20_000
    assert artifact.kind is MediaKind.VIDEO
    assert artifact.path.parent.parent == temp_root
    assert strategy.calls == [("abc123", "37", MediaKind.VIDEO)]

    artifact.discard()
    assert leftovers() == []


@pytest.mark.asyncio
async def test_each_job_gets_its_own_workspace(test_config, make_strategy, metadata, video_rendition):
    strategy = make_strategy()
    engine = FetchEngine(test_config, strategy)

    first, second = await asyncio.gather(
        engine.fetch(metadata, video_rendition, MediaKind.VIDEO),
        engine.fetch(metadata, video_rendition, MediaKind.VIDEO),
    )

    assert first.path != second.path
    assert strategy.workspaces[0] != strategy.workspaces[1]
    first.discard()
    second.discard()


@pytest.mark.asyncio
async def test_zero_byte_file_is_download_failed(test_config, make_strategy, metadata, video_rendition, leftovers):
    engine = FetchEngine(test_config, make_strategy(size=0))

    with pytest.raises(DownloadFailed):
        await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_below_minimum_size_is_download_failed(test_config, make_strategy, metadata, video_rendition, leftovers):
    engine = FetchEngine(test_config, make_strategy(size=500))

    with pytest.raises(DownloadFailed):
        await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_oversized_artifact_is_removed(make_config, make_strategy, metadata, video_rendition, leftovers):
    config = make_config(limits={"max_file_size": 15_000})
    engine = FetchEngine(config, make_strategy(config, size=20_000))

    with pytest.raises(TooLarge):
        await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_timeout_aborts_and_cleans_up(make_config, make_strategy, metadata, video_rendition, leftovers):
    config = make_config(limits={"fetch_timeout": 1})
    engine = FetchEngine(config, make_strategy(config, delay=10))

    start = time.monotonic()
    with pytest.raises(Timeout):
        await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert time.monotonic() - start < 5
    assert leftovers() == []


@pytest.mark.asyncio
async def test_strategy_failure_cleans_up(test_config, failing_strategy, metadata, video_rendition, leftovers):
    engine = FetchEngine(test_config, failing_strategy)

    with pytest.raises(DownloadFailed):
        await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_cancellation_cleans_up(test_config, make_strategy, metadata, video_rendition, leftovers):
    strategy = make_strategy(delay=10)
    engine = FetchEngine(test_config, strategy)

    task = asyncio.create_task(engine.fetch(metadata, video_rendition, MediaKind.VIDEO))
    while not strategy.calls:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert leftovers() == []


@pytest.mark.asyncio
async def test_preflight_rejects_long_source_before_fetch(test_config, make_strategy, metadata, video_rendition, leftovers):
    strategy = make_strategy()
    engine = FetchEngine(test_config, strategy)
    metadata.duration = 700

    with pytest.raises(TooLong):
        await engine.fetch(metadata, video_rendition, MediaKind.VIDEO)

    assert strategy.calls == []
    assert leftovers() == []


def test_preflight_rejects_unknown_duration(test_config, make_strategy, metadata):
    engine = FetchEngine(test_config, make_strategy())
    metadata.duration = None
    with pytest.raises(TooLong):
        engine.preflight(metadata)


def test_preflight_accepts_limit_exactly(test_config, make_strategy, metadata):
    engine = FetchEngine(test_config, make_strategy())
    metadata.duration = 600
    engine.preflight(metadata)


@pytest.mark.asyncio
async def test_audio_is_transcoded_and_source_removed(make_config, make_strategy, fake_tool, metadata, audio_rendition, leftovers):
    config = make_config(fetch={"ffmpeg_path": fake_tool("ffmpeg", COPY_FFMPEG)})
    strategy = make_strategy(config, size=5_000, ext="m4a")
    engine = FetchEngine(config, strategy)

    artifact = await engine.fetch(metadata, audio_rendition, MediaKind.AUDIO)

    assert artifact.path.suffix == ".mp3"
    assert not artifact.path.with_suffix(".m4a").exists()
    assert [p.name for p in artifact.path.parent.iterdir()] == [artifact.path.name]

    artifact.discard()
    assert leftovers() == []


@pytest.mark.asyncio
async def test_failed_transcode_removes_both_files(make_config, make_strategy, fake_tool, metadata, audio_rendition, leftovers):
    ffmpeg = fake_tool("ffmpeg", 'echo "Invalid data found when processing input" >&2\nexit 1\n')
    config = make_config(fetch={"ffmpeg_path": ffmpeg})
    engine = FetchEngine(config, make_strategy(config, size=5_000, ext="webm"))

    with pytest.raises(DownloadFailed, match="ffmpeg exited with 1"):
        await engine.fetch(metadata, audio_rendition, MediaKind.AUDIO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_missing_ffmpeg_is_download_failed(make_config, make_strategy, tmp_path, metadata, audio_rendition, leftovers):
    config = make_config(fetch={"ffmpeg_path": str(tmp_path / "no-such-ffmpeg")})
    engine = FetchEngine(config, make_strategy(config, size=5_000, ext="m4a"))

    with pytest.raises(DownloadFailed):
        await engine.fetch(metadata, audio_rendition, MediaKind.AUDIO)

    assert leftovers() == []


@pytest.mark.asyncio
async def test_audio_already_in_target_container_skips_transcode(make_config, make_strategy, tmp_path, metadata, audio_rendition):
    config = make_config(fetch={"ffmpeg_path": str(tmp_path / "no-such-ffmpeg")})
    engine = FetchEngine(config, make_strategy(config, size=5_000, ext="mp3"))

    artifact = await engine.fetch(metadata, audio_rendition, MediaKind.AUDIO)

    assert artifact.path.suffix == ".mp3"
    artifact.discard()


def test_job_remaining_counts_down_to_zero(metadata, video_rendition, tmp_path):
    job = FetchJob(
        metadata=metadata,
        rendition=video_rendition,
        kind=MediaKind.VIDEO,
        workspace=tmp_path,
        deadline=time.monotonic() + 30,
    )
    assert 29 < job.remaining() <= 30

    job.deadline = time.monotonic() - 1
    assert job.remaining() == 0.0
