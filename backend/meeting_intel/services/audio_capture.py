from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import soxr

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - allow import on systems without PortAudio
    sd = None

from meeting_intel.errors import CaptureError
from meeting_intel.services.audio_chunks import TARGET_RATE, AudioChunk, to_mono_float32

logger = logging.getLogger("meeting_intel.audio")

# Capture tuning
DEFAULT_BLOCKSIZE = 4096  # frames; larger buffers reduce discontinuity


def list_input_devices() -> List[Dict[str, Any]]:
    if sd is None:
        return []
    devices = sd.query_devices()
    default_in = sd.default.device[0] if sd.default.device is not None else None
    result: List[Dict[str, Any]] = []
    for idx, dev in enumerate(devices):
        if int(dev.get("max_input_channels", 0)) <= 0:
            continue
        result.append(
            {
                "id": str(idx),
                "name": dev.get("name"),
                "channels": int(dev.get("max_input_channels", 0)),
                "default_samplerate": dev.get("default_samplerate"),
                "is_default": idx == default_in,
            }
        )
    return result


class MicrophoneCapture:
    """Reads an input device and hands fixed-duration 16 kHz chunks to the event loop.

    The PortAudio callback runs on the audio thread; chunks cross into the loop
    with ``call_soon_threadsafe``. A stream that dies while capturing reports a
    ``CaptureError`` through ``on_error``.
    """

    def __init__(
        self,
        on_chunk: Callable[[AudioChunk], None],
        loop: asyncio.AbstractEventLoop,
        device_id: Optional[str] = None,
        chunk_seconds: float = 1.0,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self._on_chunk = on_chunk
        self._on_error = on_error
        self._loop = loop
        self._device_id = device_id
        self._chunk_samples = max(1, int(TARGET_RATE * chunk_seconds))
        self._pending = np.zeros(0, dtype=np.float32)
        self._emitted_samples = 0
        self._lock = threading.Lock()
        self._stream = None
        self._stopping = False
        self.device_rate: Optional[int] = None
        self.device_channels: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if sd is None:
            raise CaptureError("sounddevice not available")
        if self._stream is not None:
            return
        try:
            if self._device_id is not None:
                dev = int(self._device_id)
            else:
                dev = sd.default.device[0] if sd.default.device is not None else None
            if dev is None or dev == -1:
                raise CaptureError("No input device available")
            info = sd.query_devices(dev)
            self.device_rate = int(info.get("default_samplerate", 48000)) or 48000
            self.device_channels = max(1, min(2, int(info.get("max_input_channels", 1)) or 1))
            self._stopping = False
            stream = sd.InputStream(
                device=dev,
                channels=self.device_channels,
                dtype="float32",
                samplerate=self.device_rate,
                blocksize=DEFAULT_BLOCKSIZE,
                callback=self._callback,
                finished_callback=self._finished,
            )
            stream.start()
        except CaptureError:
            raise
        except Exception as exc:
            raise CaptureError(f"Could not open input device: {exc}") from exc
        self._stream = stream
        logger.info("Mic capture started", extra={"device": info.get("name"), "rate": self.device_rate,
                                                   "channels": self.device_channels})

    def _callback(self, indata, frames, time, status) -> None:  # noqa: ANN001 - external callback signature
        if status:
            logger.debug("Input stream status: %s", status)
        f32 = to_mono_float32(indata)
        if self.device_rate and self.device_rate != TARGET_RATE:
            f32 = soxr.resample(f32, self.device_rate, TARGET_RATE).astype(np.float32, copy=False)
        self._feed(f32)

    def _feed(self, samples: np.ndarray) -> None:
        ready: List[AudioChunk] = []
        with self._lock:
            buf = np.concatenate([self._pending, samples]) if self._pending.size else samples
            while buf.size >= self._chunk_samples:
                ready.append(self._make_chunk(buf[: self._chunk_samples]))
                buf = buf[self._chunk_samples:]
            self._pending = buf
        for chunk in ready:
            self._loop.call_soon_threadsafe(self._on_chunk, chunk)

    def _make_chunk(self, samples: np.ndarray) -> AudioChunk:
        offset_ms = int(self._emitted_samples * 1000 / TARGET_RATE)
        self._emitted_samples += samples.size
        return AudioChunk(samples=np.array(samples, dtype=np.float32), sample_rate=TARGET_RATE, offset_ms=offset_ms)

    def _finished(self) -> None:
        if self._stopping:
            return
        logger.error("Input stream stopped unexpectedly")
        if self._on_error is not None:
            self._loop.call_soon_threadsafe(self._on_error, CaptureError("Input device stopped unexpectedly"))

    def stop(self) -> None:
        """Close the device and hand over the last partial chunk."""
        stream, self._stream = self._stream, None
        self._stopping = True
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
        with self._lock:
            tail, self._pending = self._pending, np.zeros(0, dtype=np.float32)
            chunk = self._make_chunk(tail) if tail.size else None
        if chunk is not None:
            self._loop.call_soon_threadsafe(self._on_chunk, chunk)
        logger.info("Mic capture stopped")
