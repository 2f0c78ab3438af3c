"""Shared helpers for building encoder (ffmpeg) command lines."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Sequence
from urllib.parse import quote

LOOPBACK_HOST = "127.0.0.1"


@dataclass(frozen=True)
class AudioFormat:
    name: str
    codec: str
    container: str
    content_type: str

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "codec": self.codec,
            "container": self.container,
            "contentType": self.content_type,
        }


MP3 = AudioFormat("mp3", "libmp3lame", "mp3", "audio/mpeg")
AAC = AudioFormat("aac", "aac", "adts", "audio/aac")
OGG = AudioFormat("ogg", "libvorbis", "ogg", "audio/ogg")

# Tried in order until one survives the start-up grace window.
CANDIDATE_FORMATS: tuple[AudioFormat, ...] = (MP3, AAC, OGG)


def capture_input_args(capture_name: str, platform: str = sys.platform) -> list[str]:
    """Return the input arguments for a live capture device.

    The capture name is passed as a single argv element, so device labels with
    spaces or parentheses need no quoting.
    """

    if platform.startswith("win"):
        return ["-f", "dshow", "-i", f"audio={capture_name}"]
    if platform == "darwin":
        name = capture_name if capture_name.startswith(":") else f":{capture_name}"
        return ["-f", "avfoundation", "-i", name]
    return ["-f", "alsa", "-i", capture_name]


def file_input_args(path: str) -> list[str]:
    # -re paces file input at its native rate instead of as fast as possible.
    return ["-re", "-i", path]


def relay_output_url(stream_id: str, *, port: int, source_password: str) -> str:
    """Icecast source URL for ``stream_id``; always on the loopback interface."""

    password = quote(source_password, safe="")
    mount = quote(stream_id, safe="._-")
    return f"icecast://source:{password}@{LOOPBACK_HOST}:{port}/{mount}"


def build_encoder_command(
    ffmpeg_path: str,
    input_args: Sequence[str],
    audio_format: AudioFormat,
    *,
    stream_id: str,
    port: int,
    source_password: str,
    bitrate: int,
    sample_rate: int = 44100,
    channels: int = 2,
    stream_name: str | None = None,
) -> list[str]:
    command = [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-nostats",
        "-loglevel",
        "info",
        *input_args,
        "-vn",
        "-acodec",
        audio_format.codec,
        "-b:a",
        f"{bitrate}k",
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
    ]
    if audio_format is MP3:
        command.extend(["-content_type", audio_format.content_type])
    if stream_name:
        command.extend(["-ice_name", stream_name])
    command.extend(
        [
            "-f",
            audio_format.container,
            relay_output_url(stream_id, port=port, source_password=source_password),
        ]
    )
    return command


def redact_command(command: Sequence[str]) -> str:
    """Render ``command`` for logs with the source password masked."""

    parts: list[str] = []
    for part in command:
        if part.startswith("icecast://source:") and "@" in part:
            _, _, rest = part.partition("@")
            part = "icecast://source:***@" + rest
        parts.append(part)
    return " ".join(parts)


__all__ = [
    "AAC",
    "AudioFormat",
    "CANDIDATE_FORMATS",
    "LOOPBACK_HOST",
    "MP3",
    "OGG",
    "build_encoder_command",
    "capture_input_args",
    "file_input_args",
    "redact_command",
    "relay_output_url",
]
