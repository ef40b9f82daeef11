"""Finalization checks for canonical 44-byte-header PCM WAV recordings.

The recorder writes the RIFF and data sizes only when it closes the file, so a
recording is complete exactly when both declared sizes agree with its length.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from pathlib import Path

WAV_HEADER_SIZE = 44

_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavHeader:
    riff_size: int
    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int

    @property
    def duration_seconds(self) -> float:
        if self.byte_rate <= 0:
            return 0.0
        return self.data_size / float(self.byte_rate)


def parse_wav_header(data: bytes) -> WavHeader | None:
    """Parse the canonical header prefix; None when a marker is out of place."""
    if len(data) < WAV_HEADER_SIZE:
        return None
    (
        riff,
        riff_size,
        wave_tag,
        fmt_tag,
        _fmt_size,
        audio_format,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        data_tag,
        data_size,
    ) = _HEADER_STRUCT.unpack_from(data, 0)
    if riff != b"RIFF" or wave_tag != b"WAVE" or fmt_tag != b"fmt " or data_tag != b"data":
        return None
    return WavHeader(
        riff_size=riff_size,
        audio_format=audio_format,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits_per_sample,
        data_size=data_size,
    )


def read_wav_header(path: os.PathLike[str] | str) -> WavHeader | None:
    with Path(path).open("rb") as handle:
        return parse_wav_header(handle.read(WAV_HEADER_SIZE))


def is_finalized(path: os.PathLike[str] | str) -> bool:
    """Return True once the header sizes agree with the file's current length.

    Evaluated from scratch on every call; a file still being appended to
    reports False and flips to True as soon as the writer closes it. A missing
    file is not finalized; any other read failure propagates as ``OSError``.
    """
    target = Path(path)
    try:
        with target.open("rb") as handle:
            header = parse_wav_header(handle.read(WAV_HEADER_SIZE))
            length = os.fstat(handle.fileno()).st_size
    except FileNotFoundError:
        return False
    if header is None:
        return False
    return header.riff_size + 8 == length and WAV_HEADER_SIZE + header.data_size == length


def describe_wav_bytes(data: bytes) -> float | None:
    """Duration in seconds declared by a header prefix, or None if not a WAV."""
    header = parse_wav_header(data)
    if header is None:
        return None
    return header.duration_seconds
