from __future__ import annotations

from typing import Iterator, Optional

from sqlmodel import Session

from meeting_intel.config import Settings
from meeting_intel.models.base import get_engine, new_session
from meeting_intel.services.asr_engine import TranscriptionEngine, get_transcription_engine
from meeting_intel.services.ingestion import RecordingManager
from meeting_intel.services.model_store import ModelStore, get_model_store
from meeting_intel.services.orchestrator import GenerationOrchestrator, get_orchestrator

_recording_manager: Optional[RecordingManager] = None


def get_session() -> Iterator[Session]:
    with Session(get_engine()) as session:
        yield session


def get_settings() -> Settings:
    return Settings()


def get_recording_manager() -> RecordingManager:
    global _recording_manager
    if _recording_manager is None:
        _recording_manager = RecordingManager(get_transcription_engine(), new_session)
    return _recording_manager


def transcription_engine() -> TranscriptionEngine:
    return get_transcription_engine()


def model_store() -> ModelStore:
    return get_model_store()


def orchestrator() -> GenerationOrchestrator:
    return get_orchestrator()
