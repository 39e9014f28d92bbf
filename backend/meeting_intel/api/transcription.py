from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from meeting_intel.api.status import PipelineStatus, derive_status, display_text
from meeting_intel.config import Settings
from meeting_intel.deps import get_recording_manager, get_session, get_settings, model_store, orchestrator, transcription_engine
from meeting_intel.repositories.settings import get_app_settings, get_language
from meeting_intel.services.asr_engine import TranscriptionEngine
from meeting_intel.services.audio_capture import list_input_devices
from meeting_intel.services.hardware import missing_cuda_libraries, probe_accelerator
from meeting_intel.services.ingestion import RecordingManager
from meeting_intel.services.model_store import ModelStore, asr_descriptor
from meeting_intel.services.orchestrator import GenerationOrchestrator

logger = logging.getLogger("meeting_intel.api")

router = APIRouter(tags=["transcription"])

# Background downloads, referenced until they finish
_background_tasks: Set[asyncio.Task] = set()


class AsrDownloadRequest(BaseModel):
    model_id: Optional[str] = None
    wait: bool = False


def _log_task_failure(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Background model download failed: %s", task.exception())


@router.get("/transcription/status")
def transcription_status(
    session: Session = Depends(get_session),
    engine: TranscriptionEngine = Depends(transcription_engine),
    recordings: RecordingManager = Depends(get_recording_manager),
    jobs: GenerationOrchestrator = Depends(orchestrator),
) -> Dict[str, Any]:
    active = recordings.active()
    if active:
        status = derive_status(active[0], None)
    elif jobs.is_busy(slot="summary"):
        status = PipelineStatus.SUMMARIZING
    elif jobs.is_busy(slot="chat"):
        status = PipelineStatus.ANSWERING
    else:
        status = PipelineStatus.IDLE
    asr = get_app_settings(session).get("asr") or {}
    accelerator = probe_accelerator(str(asr.get("device", "auto")))
    return {
        "engine": engine.status(),
        "accelerator": {
            "device": accelerator.device,
            "compute_type": accelerator.compute_type,
            "reason": accelerator.reason,
            "missing_cuda_libraries": missing_cuda_libraries("whisper_gpu"),
        },
        "recordings": active,
        "jobs": [j for j in jobs.jobs() if j["status"] in ("queued", "running")],
        "status": status.value,
        "display_text": display_text(status, get_language(session)),
    }


@router.get("/transcription/devices")
def transcription_devices() -> Dict[str, List[Dict[str, Any]]]:
    return {"inputs": list_input_devices()}


@router.post("/models/asr/download")
async def download_asr_model(
    body: Optional[AsrDownloadRequest] = None,
    session: Session = Depends(get_session),
    store: ModelStore = Depends(model_store),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    body = body or AsrDownloadRequest()
    model_id = body.model_id or str((get_app_settings(session).get("asr") or {}).get("model_id", "large-v3"))
    descriptor = asr_descriptor(settings, model_id)
    if body.wait:
        path = await store.ensure_available(descriptor, timeout=settings.download_timeout_seconds)
        return {**store.download_state(descriptor), "model_id": model_id, "path": str(path)}
    if not store.is_available(descriptor):
        task = asyncio.create_task(store.ensure_available(descriptor, timeout=settings.download_timeout_seconds))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        task.add_done_callback(_log_task_failure)
        # let the download register its state before answering
        await asyncio.sleep(0)
    return {**store.download_state(descriptor), "model_id": model_id, "present": store.is_available(descriptor)}


@router.get("/models/asr/state")
def asr_model_state(
    model_id: Optional[str] = None,
    session: Session = Depends(get_session),
    store: ModelStore = Depends(model_store),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    model_id = model_id or str((get_app_settings(session).get("asr") or {}).get("model_id", "large-v3"))
    descriptor = asr_descriptor(settings, model_id)
    return {
        **store.download_state(descriptor),
        "model_id": model_id,
        "present": store.is_available(descriptor),
        "path": str(store.local_path(descriptor)),
    }
