"""Audio transcoding with ffmpeg and tagging with mutagen."""

import logging
from pathlib import Path

from .config import Config
from .errors import DownloadFailed
from .models import SourceMetadata
from .sources.base import run_process

logger = logging.getLogger("media_courier.transcode")

AUDIO_CODECS = {
    "mp3": "libmp3lame",
    "m4a": "aac",
    "ogg": "libvorbis",
    "opus": "libopus",
}


def needs_transcode(path: Path, target_format: str) -> bool:
    return path.suffix.lower().lstrip(".") != target_format


def build_ffmpeg_args(config: Config, source: Path, target: Path) -> list:
    codec = AUDIO_CODECS.get(config.audio_format)
    if codec is None:
        raise DownloadFailed(f"unsupported audio format {config.audio_format!r}")
    # -vn: drop video and cover streams
    # -map_metadata -1: tags are written afterwards with mutagen
    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-i", str(source),
        "-vn",
        "-c:a", codec,
        "-b:a", f"{config.audio_bitrate}k",
        "-map_metadata", "-1",
        "-y",
        str(target),
    ]


async def transcode_audio(config: Config, source: Path, metadata: SourceMetadata) -> Path:
    """Encode ``source`` into the configured audio container.

    The pre-encode file is removed whatever the outcome; the encoded
    file is removed as well if encoding fails.

    Raises:
        DownloadFailed: If ffmpeg is missing or exits non-zero
    """
    target = source.with_name(f"{source.stem}.{config.audio_format}")
    args = build_ffmpeg_args(config, source, target)
    succeeded = False

    try:
        try:
            returncode, output = await run_process(args)
        except OSError as e:
            raise DownloadFailed(f"cannot run {config.ffmpeg_path}: {e}") from e

        if returncode != 0 or not target.exists():
            raise DownloadFailed(f"ffmpeg exited with {returncode}: {output[-200:]}")

        succeeded = True
        logger.debug("Transcoded %s -> %s", source.name, target.name)
    finally:
        source.unlink(missing_ok=True)
        if not succeeded:
            target.unlink(missing_ok=True)

    tag_audio(target, metadata)
    return target


def tag_audio(file_path: Path, metadata: SourceMetadata):
    """Write title, artist and source URL tags. Failures are not fatal."""
    try:
        if file_path.suffix == ".mp3":
            _tag_mp3(file_path, metadata)
        elif file_path.suffix == ".m4a":
            _tag_m4a(file_path, metadata)
    except Exception as e:
        logger.warning("Failed to tag %s: %s", file_path.name, e)


def _tag_mp3(file_path: Path, metadata: SourceMetadata):
    from mutagen.id3 import ID3, TIT2, TPE1, TXXX, ID3NoHeaderError

    try:
        audio = ID3(str(file_path))
    except ID3NoHeaderError:
        audio = ID3()

    audio.add(TIT2(encoding=3, text=metadata.title))
    if metadata.uploader:
        audio.add(TPE1(encoding=3, text=metadata.uploader))
    audio.add(TXXX(encoding=3, desc="SOURCE_URL", text=metadata.reference.url))
    audio.save(str(file_path))


def _tag_m4a(file_path: Path, metadata: SourceMetadata):
    from mutagen.mp4 import MP4

    audio = MP4(str(file_path))
    audio["\xa9nam"] = metadata.title
    if metadata.uploader:
        audio["\xa9ART"] = metadata.uploader
    audio["----:com.apple.iTunes:SOURCE_URL"] = metadata.reference.url.encode("utf-8")
    audio.save()
