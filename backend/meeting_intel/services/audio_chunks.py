from __future__ import annotations

import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import numpy as np
import soxr

from meeting_intel.errors import DecodeError

TARGET_RATE = 16000


@dataclass
class AudioChunk:
    """Fixed-duration block of mono float32 PCM in [-1, 1]."""

    samples: np.ndarray
    sample_rate: int = TARGET_RATE
    offset_ms: Optional[int] = None


def to_mono_float32(data: np.ndarray) -> np.ndarray:
    """Downmix any (frames, channels) buffer to mono float32."""
    arr = np.asarray(data)
    if arr.dtype == np.int16:
        arr = arr.astype(np.float32) / 32768.0
    else:
        arr = arr.astype(np.float32, copy=False)
    if arr.ndim == 2 and arr.shape[1] > 1:
        arr = arr.mean(axis=1)
    elif arr.ndim == 2:
        arr = arr[:, 0]
    return np.clip(arr, -1.0, 1.0)


def resample(samples: np.ndarray, from_rate: int, to_rate: int = TARGET_RATE) -> np.ndarray:
    if from_rate == to_rate or len(samples) == 0:
        return samples.astype(np.float32, copy=False)
    return soxr.resample(samples, from_rate, to_rate).astype(np.float32, copy=False)


def iter_wav_chunks(path: Path, seconds: float = 1.0, target_rate: int = TARGET_RATE) -> Iterator[AudioChunk]:
    """Read a 16-bit WAV file as 16 kHz mono chunks."""
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise DecodeError(f"Only 16-bit WAV is supported: {path}")
        channels = wf.getnchannels()
        rate = wf.getframerate()
        frames_per_chunk = max(1, int(rate * seconds))
        position_ms = 0
        while True:
            raw = wf.readframes(frames_per_chunk)
            if not raw:
                break
            data = np.frombuffer(raw, dtype="<i2")
            if channels > 1:
                data = data.reshape(-1, channels)
            samples = resample(to_mono_float32(data), rate, target_rate)
            chunk = AudioChunk(samples=samples, sample_rate=target_rate, offset_ms=position_ms)
            position_ms += int(len(raw) // (2 * channels) * 1000 / rate)
            yield chunk
