"""Shared fixtures: a throwaway SQLite database, settings rooted in tmp_path and fakes.

Nothing here downloads models or runs inference.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pytest
from sqlmodel import Session

from meeting_intel.config import Settings
from meeting_intel.models.base import create_db_engine, init_db
from meeting_intel.models.meeting import Meeting
from meeting_intel.repositories.meetings import MeetingsRepository
from meeting_intel.services.asr_engine import ASRConfig, TranscriptionEngine
from meeting_intel.services.llm_client import LLMProvider, RawResponse
from meeting_intel.services.model_store import MARKER_NAME, ModelStore, asr_descriptor
from meeting_intel.services.prompt_composer import RenderedPrompt

FAKE_MODEL_SHA256 = "0" * 64


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    root = tmp_path / "appdata"
    s = Settings(
        appdata_dir=root,
        data_dir=root / "data",
        audio_dir=root / "audio",
        models_dir=root / "models",
        logs_dir=root / "logs",
        database_path=root / "data" / "test.db",
        asr_window_seconds=2.0,
        asr_model_sha256={"tiny": FAKE_MODEL_SHA256},
        llm_timeout_seconds=5.0,
    )
    s.ensure_dirs()
    return s


@pytest.fixture
def db_engine(settings: Settings):
    engine = create_db_engine(settings.database_path)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> Callable[[], Session]:
    return lambda: Session(db_engine)


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as s:
        yield s


@pytest.fixture
def meeting(session: Session) -> Meeting:
    return MeetingsRepository(session).create(Meeting(title="Weekly sync", language="en"))


# ----- transcription fakes -----


class FakeBackend:
    """Recognizes one fragment per window that contains any signal."""

    name = "faster-whisper"

    def __init__(self) -> None:
        self.active_device: Optional[str] = None
        self.active_compute_type: Optional[str] = None
        self.loaded_from: Optional[Path] = None
        self.windows: List[int] = []
        self.fail_with: Optional[Exception] = None

    def load(self, model_dir: Path, device: str, compute_type: str) -> None:
        self.loaded_from = model_dir
        self.active_device = device
        self.active_compute_type = compute_type

    def transcribe(self, audio: np.ndarray, cfg: ASRConfig) -> Tuple[List[dict], dict]:
        self.windows.append(int(audio.size))
        if self.fail_with is not None:
            raise self.fail_with
        if float(np.max(np.abs(audio))) < 0.01:
            return [], {"language": cfg.language or "en"}
        duration_ms = int(audio.size * 1000 / 16000)
        segment = {"start_ms": 0, "end_ms": duration_ms, "text": f"speech {len(self.windows)}", "confidence": 0.9}
        return [segment], {"language": cfg.language or "en"}


def publish_fake_asr_model(store: ModelStore, settings: Settings, model_id: str = "tiny") -> Path:
    """Lay out a verified model directory the way the store publishes one."""
    descriptor = asr_descriptor(settings, model_id)
    path = store.local_path(descriptor)
    path.mkdir(parents=True, exist_ok=True)
    (path / "model.bin").write_bytes(b"weights")
    (path / MARKER_NAME).write_text(descriptor.sha256 or "", encoding="utf-8")
    return path


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def asr_engine(settings: Settings, fake_backend: FakeBackend, monkeypatch) -> TranscriptionEngine:
    monkeypatch.setattr(
        "meeting_intel.services.asr_engine.probe_accelerator",
        lambda preference="auto", feature="whisper_gpu": _cpu_choice(),
    )
    store = ModelStore(settings.models_dir)
    publish_fake_asr_model(store, settings, "tiny")
    return TranscriptionEngine(store, settings, registry={"faster-whisper": lambda: fake_backend})


def _cpu_choice():
    from meeting_intel.services.hardware import AcceleratorChoice

    return AcceleratorChoice("cpu", "int8", "test")


# ----- LLM fakes -----


class FakeLLMClient:
    def __init__(self, provider: LLMProvider = LLMProvider.OPENAI, model_name: str = "fake-model") -> None:
        self.provider = provider
        self.model_name = model_name
        self.responses: List[Any] = []
        self.prompts: List[RenderedPrompt] = []
        self.gate = None

    async def generate(self, prompt: RenderedPrompt, options) -> RawResponse:
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        item = self.responses.pop(0) if self.responses else "{}"
        if isinstance(item, Exception):
            raise item
        return RawResponse(text=item, model=self.model_name, usage={"total_tokens": 42})


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def llm_settings(session: Session) -> Dict[str, Any]:
    from meeting_intel.repositories.settings import save_app_settings

    return save_app_settings(
        session,
        {"language": "en", "llm": {"provider": "openai", "model_name": "fake-model", "api_keys": {"openai": "sk-test"}}},
    )
