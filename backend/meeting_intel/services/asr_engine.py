from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from meeting_intel.config import Settings
from meeting_intel.errors import DecodeError, EngineFatalError, InvalidStateError, ModelNotReadyError, PipelineError
from meeting_intel.services.audio_chunks import TARGET_RATE, AudioChunk
from meeting_intel.services.hardware import probe_accelerator
from meeting_intel.services.model_store import ModelStore, asr_descriptor, get_model_store

logger = logging.getLogger("meeting_intel.asr")

ACTIVE_ENGINE = "faster-whisper"

# Engine names written by older builds; all of them now run on the active engine
LEGACY_ENGINE_VALUES = {"localwhisper", "whisper", "whisper-cpp", "whisper.cpp", "whisper-rs", "parakeet"}


def resolve_engine_name(value: Optional[str]) -> str:
    """Map a configured engine name onto the engine compiled into this build."""
    name = (value or "").strip()
    if name.lower() == ACTIVE_ENGINE:
        return ACTIVE_ENGINE
    if name.lower() in LEGACY_ENGINE_VALUES:
        logger.warning("Transcription engine %r is no longer supported, using %s instead", name, ACTIVE_ENGINE)
    elif name:
        logger.warning("Unknown transcription engine %r, using %s", name, ACTIVE_ENGINE)
    return ACTIVE_ENGINE


@dataclass(frozen=True)
class ASRConfig:
    model_id: str = "large-v3"
    device: str = "auto"  # auto|cpu|cuda
    mode: str = "fast"  # fast|accurate
    language: Optional[str] = None
    vad: bool = True
    engine: str = ACTIVE_ENGINE

    @classmethod
    def from_settings(cls, asr: Dict[str, Any]) -> "ASRConfig":
        return cls(
            model_id=str(asr.get("model_id", "large-v3")),
            device=str(asr.get("device", "auto")),
            mode=str(asr.get("mode", "fast")),
            language=(asr.get("language") or None),
            vad=bool(asr.get("vad", True)),
            engine=resolve_engine_name(asr.get("engine")),
        )


@dataclass
class RecognizedFragment:
    start_ms: int
    end_ms: int
    text: str
    confidence: Optional[float] = None
    language: Optional[str] = None


class TranscriptionBackend(Protocol):
    name: str
    active_device: Optional[str]
    active_compute_type: Optional[str]

    def load(self, model_dir: Path, device: str, compute_type: str) -> None:
        """Load model weights; called once per engine configuration."""

    def transcribe(self, audio: np.ndarray, cfg: ASRConfig) -> Tuple[List[dict], dict]:
        """Recognize one window of 16 kHz mono float32 audio."""


def _segment_confidence(seg: Any) -> Optional[float]:
    avg_lp = getattr(seg, "avg_logprob", None)
    if avg_lp is None:
        return None
    no_sp = float(getattr(seg, "no_speech_prob", 0.0) or 0.0)
    base = math.exp(float(avg_lp))  # [-1..0] -> [~0.37..1.0]
    return max(0.0, min(1.0, base * (1.0 - max(0.0, min(1.0, no_sp)))))


class FasterWhisperBackend:
    """faster-whisper WhisperModel running on CTranslate2."""

    name = ACTIVE_ENGINE

    def __init__(self) -> None:
        self._model = None
        self.active_device: Optional[str] = None
        self.active_compute_type: Optional[str] = None

    @staticmethod
    def _whisper_model_class():
        # Heavy import, deferred until a model is actually loaded
        from faster_whisper import WhisperModel  # type: ignore

        return WhisperModel

    def load(self, model_dir: Path, device: str, compute_type: str) -> None:
        whisper_model_class = self._whisper_model_class()
        candidates: List[Tuple[str, str]] = [(device, compute_type)]
        if device == "cuda":
            candidates.append(("cpu", "int8"))

        errors: List[str] = []
        for candidate_device, candidate_compute in candidates:
            try:
                self._model = whisper_model_class(
                    str(model_dir),
                    device=candidate_device,
                    compute_type=candidate_compute,
                    local_files_only=True,
                )
                self.active_device = candidate_device
                self.active_compute_type = candidate_compute
                return
            except Exception as exc:  # ctranslate2 raises bare RuntimeErrors per device
                logger.warning("faster-whisper init failed on %s/%s: %s", candidate_device, candidate_compute, exc)
                errors.append(f"{candidate_device}/{candidate_compute}: {exc}")
        raise EngineFatalError(f"Failed to initialize faster-whisper model. Errors: {' | '.join(errors)}")

    def transcribe(self, audio: np.ndarray, cfg: ASRConfig) -> Tuple[List[dict], dict]:
        if self._model is None:
            raise ModelNotReadyError("faster-whisper model is not loaded")
        if cfg.mode == "accurate":
            decode_params = dict(beam_size=5, best_of=5)
        else:
            decode_params = dict(beam_size=1, best_of=1)

        seg_iter, info = self._model.transcribe(
            audio,
            vad_filter=bool(cfg.vad),
            language=cfg.language,
            task="transcribe",
            temperature=0.0,
            condition_on_previous_text=False,
            compression_ratio_threshold=2.4,
            log_prob_threshold=-1.0,
            no_speech_threshold=0.6,
            **decode_params,
        )
        segments_out: List[dict] = []
        for seg in seg_iter:
            start_ms = int(seg.start * 1000.0) if seg.start is not None else 0
            end_ms = int(seg.end * 1000.0) if seg.end is not None else start_ms
            segments_out.append(
                {
                    "start_ms": start_ms,
                    "end_ms": end_ms,
                    "text": seg.text or "",
                    "confidence": _segment_confidence(seg),
                }
            )
        info_out = {
            "language": getattr(info, "language", None),
            "duration": float(getattr(info, "duration", 0.0) or 0.0),
        }
        return segments_out, info_out


# Exactly one backend is registered per build
ENGINE_REGISTRY: Dict[str, Callable[[], TranscriptionBackend]] = {
    ACTIVE_ENGINE: FasterWhisperBackend,
}


class TranscriptionSession:
    """One recording's view of the shared engine; its backend never changes."""

    def __init__(
        self,
        engine: "TranscriptionEngine",
        epoch: int,
        backend: TranscriptionBackend,
        config: ASRConfig,
        window_seconds: float,
    ) -> None:
        self._engine = engine
        self.epoch = epoch
        self._backend = backend
        self._config = config
        self._window_samples = max(1, int(TARGET_RATE * window_seconds))
        self._closed = False
        self._stop = threading.Event()
        self.dropped_chunks = 0
        self.backend_name = backend.name
        self.device = backend.active_device

    def stop(self) -> None:
        """Stop accepting chunks; the stream ends after the current window."""
        self._stop.set()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._engine._release(self.epoch)

    def _validate(self, chunk: AudioChunk) -> np.ndarray:
        samples = getattr(chunk, "samples", None)
        if not isinstance(samples, np.ndarray):
            raise DecodeError("Audio chunk carries no sample array")
        if chunk.sample_rate != TARGET_RATE:
            raise DecodeError(f"Expected {TARGET_RATE} Hz audio, got {chunk.sample_rate} Hz")
        if samples.ndim != 1 or samples.size == 0:
            raise DecodeError(f"Expected non-empty mono audio, got shape {samples.shape}")
        if not np.issubdtype(samples.dtype, np.floating):
            raise DecodeError(f"Expected float PCM, got {samples.dtype}")
        if not np.all(np.isfinite(samples)):
            raise DecodeError("Audio chunk contains NaN or infinite samples")
        return samples.astype(np.float32, copy=False)

    async def _run_window(self, buffer: List[np.ndarray], start_ms: int) -> List[RecognizedFragment]:
        audio = np.concatenate(buffer)
        try:
            segments, info = await asyncio.to_thread(self._backend.transcribe, audio, self._config)
        except PipelineError:
            raise
        except Exception as exc:
            logger.exception("Transcription backend failed")
            raise EngineFatalError(f"Transcription failed: {exc}") from exc
        language = info.get("language") if isinstance(info, dict) else None
        fragments: List[RecognizedFragment] = []
        for seg in segments:
            text = str(seg.get("text", "")).strip()
            if not text:
                continue
            fragments.append(
                RecognizedFragment(
                    start_ms=start_ms + int(seg.get("start_ms", 0)),
                    end_ms=start_ms + int(seg.get("end_ms", 0)),
                    text=text,
                    confidence=seg.get("confidence"),
                    language=language or self._config.language,
                )
            )
        return fragments

    async def transcribe_stream(self, chunks: AsyncIterator[AudioChunk]) -> AsyncIterator[RecognizedFragment]:
        """Turn a stream of 16 kHz chunks into fragments with absolute offsets.

        Malformed chunks are logged and dropped. The stream ends when the input
        ends (after flushing the last partial window) or on ``EngineFatalError``.
        """
        buffer: List[np.ndarray] = []
        buffered = 0
        window_start_ms: Optional[int] = None
        position_ms = 0
        try:
            async for chunk in chunks:
                if self._stop.is_set():
                    break
                try:
                    samples = self._validate(chunk)
                except DecodeError as exc:
                    self.dropped_chunks += 1
                    logger.warning("Dropping audio chunk: %s", exc.message)
                    continue
                chunk_start = chunk.offset_ms if chunk.offset_ms is not None else position_ms
                if window_start_ms is None:
                    window_start_ms = chunk_start
                buffer.append(samples)
                buffered += samples.size
                position_ms = chunk_start + int(samples.size * 1000 / TARGET_RATE)
                if buffered >= self._window_samples:
                    for fragment in await self._run_window(buffer, window_start_ms):
                        yield fragment
                    buffer, buffered, window_start_ms = [], 0, None
            if buffer and window_start_ms is not None:
                for fragment in await self._run_window(buffer, window_start_ms):
                    yield fragment
        finally:
            self.close()


class TranscriptionEngine:
    """Process-wide speech recognizer shared read-only by all sessions.

    The model is loaded once behind an initialization lock. Reconfiguring bumps
    the epoch and waits until every session of earlier epochs has drained.
    """

    def __init__(
        self,
        store: ModelStore,
        settings: Optional[Settings] = None,
        registry: Optional[Dict[str, Callable[[], TranscriptionBackend]]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._registry = registry or ENGINE_REGISTRY
        self._lock = threading.Lock()
        self._backend: Optional[TranscriptionBackend] = None
        self._config: Optional[ASRConfig] = None
        self._model_dir: Optional[Path] = None
        self._epoch = 0
        self._active: Dict[int, int] = {}
        self._reconfiguring = False
        self._accelerator_reason: Optional[str] = None

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def config(self) -> Optional[ASRConfig]:
        return self._config

    def is_ready(self) -> bool:
        return self._backend is not None

    def active_sessions(self) -> int:
        with self._lock:
            return sum(self._active.values())

    def _release(self, epoch: int) -> None:
        with self._lock:
            remaining = self._active.get(epoch, 0) - 1
            if remaining <= 0:
                self._active.pop(epoch, None)
            else:
                self._active[epoch] = remaining

    def _load_sync(self, config: ASRConfig, model_dir: Path) -> None:
        choice = probe_accelerator(config.device, feature="whisper_gpu")
        factory = self._registry.get(resolve_engine_name(config.engine))
        if factory is None:
            raise EngineFatalError(f"No transcription backend registered for {config.engine}")
        backend = factory()
        backend.load(model_dir, choice.device, choice.compute_type)
        self._backend = backend
        self._config = config
        self._model_dir = model_dir
        self._accelerator_reason = choice.reason
        logger.info(
            "Transcription engine ready: backend=%s model=%s device=%s compute=%s (%s)",
            backend.name, config.model_id, backend.active_device, backend.active_compute_type, choice.reason,
        )

    def _require_model_dir(self, config: ASRConfig) -> Path:
        descriptor = asr_descriptor(self._settings, config.model_id)
        if not self._store.is_available(descriptor):
            raise ModelNotReadyError(
                f"Transcription model '{config.model_id}' is not downloaded yet. Download it from settings first."
            )
        return self._store.local_path(descriptor)

    async def initialize(self, config: ASRConfig) -> None:
        """Load the model for ``config`` unless it is already loaded."""
        model_dir = self._require_model_dir(config)

        def _init() -> None:
            with self._lock:
                if self._backend is not None and self._config == config:
                    return
                if self._backend is not None and sum(self._active.values()) > 0:
                    raise InvalidStateError("Engine is in use; call reconfigure() to change its configuration")
                self._load_sync(config, model_dir)

        await asyncio.to_thread(_init)

    async def reconfigure(self, config: ASRConfig, drain_timeout: Optional[float] = None) -> None:
        """Switch configuration once all sessions using the old one have finished."""
        if self._backend is not None and self._config == config:
            return
        model_dir = self._require_model_dir(config)
        with self._lock:
            if self._reconfiguring:
                raise InvalidStateError("Engine reconfiguration already in progress")
            self._reconfiguring = True
            self._epoch += 1
            new_epoch = self._epoch
        logger.info("Reconfiguring transcription engine (epoch %d)", new_epoch)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + drain_timeout if drain_timeout else None
        try:
            while True:
                with self._lock:
                    pending = sum(n for e, n in self._active.items() if e < new_epoch)
                if pending == 0:
                    break
                if deadline is not None and loop.time() > deadline:
                    raise InvalidStateError(f"{pending} transcription session(s) still active")
                await asyncio.sleep(0.05)

            def _reload() -> None:
                with self._lock:
                    self._load_sync(config, model_dir)

            await asyncio.to_thread(_reload)
        finally:
            with self._lock:
                self._reconfiguring = False

    def open_session(self) -> TranscriptionSession:
        with self._lock:
            if self._reconfiguring:
                raise InvalidStateError("Transcription engine is being reconfigured")
            if self._backend is None or self._config is None:
                raise ModelNotReadyError("Transcription engine is not initialized")
            epoch = self._epoch
            self._active[epoch] = self._active.get(epoch, 0) + 1
            backend, config = self._backend, self._config
        return TranscriptionSession(self, epoch, backend, config, self._settings.asr_window_seconds)

    def status(self) -> Dict[str, Any]:
        backend = self._backend
        config = self._config
        return {
            "engine": backend.name if backend else ACTIVE_ENGINE,
            "model_id": config.model_id if config else None,
            "model_loaded": backend is not None,
            "device": backend.active_device if backend else None,
            "compute_type": backend.active_compute_type if backend else None,
            "accelerator_reason": self._accelerator_reason,
            "epoch": self._epoch,
            "active_sessions": self.active_sessions(),
            "reconfiguring": self._reconfiguring,
        }


_engine: Optional[TranscriptionEngine] = None
_engine_lock = threading.Lock()


def get_transcription_engine(settings: Optional[Settings] = None) -> TranscriptionEngine:
    """Get or create the global transcription engine."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = TranscriptionEngine(get_model_store(settings), settings)
        return _engine
