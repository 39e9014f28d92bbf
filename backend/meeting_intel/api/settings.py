from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from meeting_intel.config import Settings
from meeting_intel.deps import get_session, get_settings, model_store, transcription_engine
from meeting_intel.models.app_settings import migrate_settings_dict
from meeting_intel.repositories.settings import get_app_settings, get_language, save_app_settings, set_language
from meeting_intel.services.asr_engine import ASRConfig, TranscriptionEngine
from meeting_intel.services.model_store import ModelStore, asr_descriptor
from meeting_intel.services.prompt_composer import SUPPORTED_LANGUAGES

logger = logging.getLogger("meeting_intel.api")

router = APIRouter(prefix="/settings", tags=["settings"])

# Pending engine switches, referenced until they finish
_background_tasks: Set[asyncio.Task] = set()


class SettingsUpdate(BaseModel):
    language: Optional[str] = None
    asr: Optional[Dict[str, Any]] = None
    # Accept flat llm_device for backward compatibility
    llm_device: Optional[str] = None
    llm: Optional[Dict[str, Any]] = None
    # Older builds stored the engine choice at the top level
    transcription_provider: Optional[str] = None


class LanguageUpdate(BaseModel):
    language: str


def _log_reconfigure_failure(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Transcription engine reconfiguration failed: %s", task.exception())


@router.get("")
def read_settings(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return get_app_settings(session)


@router.post("")
async def update_settings(
    body: SettingsUpdate,
    session: Session = Depends(get_session),
    engine: TranscriptionEngine = Depends(transcription_engine),
    store: ModelStore = Depends(model_store),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    # Accept partial updates
    patch: Dict[str, Any] = migrate_settings_dict(body.dict(exclude_none=True))
    saved = save_app_settings(session, patch)

    # A loaded engine switches once the recordings using the old model have finished
    config = ASRConfig.from_settings(saved.get("asr") or {})
    if engine.is_ready() and engine.config != config and store.is_available(asr_descriptor(settings, config.model_id)):
        task = asyncio.create_task(engine.reconfigure(config))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        task.add_done_callback(_log_reconfigure_failure)
    return saved


@router.get("/language")
def read_language(session: Session = Depends(get_session)) -> Dict[str, Any]:
    return {"language": get_language(session), "supported": list(SUPPORTED_LANGUAGES)}


@router.put("/language")
def update_language(body: LanguageUpdate, session: Session = Depends(get_session)) -> Dict[str, Any]:
    return {"language": set_language(session, body.language), "supported": list(SUPPORTED_LANGUAGES)}
