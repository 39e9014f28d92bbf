from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from meeting_intel.deps import get_recording_manager, get_session
from meeting_intel.models.transcript import Transcript
from meeting_intel.repositories.settings import get_app_settings
from meeting_intel.repositories.transcripts import TranscriptsRepository
from meeting_intel.services.asr_engine import ASRConfig
from meeting_intel.services.ingestion import RecordingManager

router = APIRouter(prefix="/meetings", tags=["recording"])


class StartRecordingRequest(BaseModel):
    mic_device_id: Optional[str] = None


class TranscribeFileRequest(BaseModel):
    path: str


def _asr_config(session: Session) -> ASRConfig:
    return ASRConfig.from_settings(get_app_settings(session).get("asr") or {})


def _transcript_dict(transcript: Transcript, session: Session) -> Dict[str, Any]:
    return {
        "meeting_id": transcript.meeting_id,
        "state": transcript.state,
        "finalized_at": transcript.finalized_at.isoformat() if transcript.finalized_at else None,
        "fragments": TranscriptsRepository(session).count_for_meeting(transcript.meeting_id),
    }


@router.post("/{meeting_id}/recording/start")
async def start_recording(
    meeting_id: str,
    body: Optional[StartRecordingRequest] = None,
    session: Session = Depends(get_session),
    recordings: RecordingManager = Depends(get_recording_manager),
) -> Dict[str, Any]:
    device_id = body.mic_device_id if body else None
    recording = await recordings.start(meeting_id, _asr_config(session), device_id=device_id)
    return recording.snapshot()


@router.post("/{meeting_id}/recording/pause")
def pause_recording(meeting_id: str, recordings: RecordingManager = Depends(get_recording_manager)) -> Dict[str, Any]:
    return recordings.pause(meeting_id).snapshot()


@router.post("/{meeting_id}/recording/resume")
def resume_recording(meeting_id: str, recordings: RecordingManager = Depends(get_recording_manager)) -> Dict[str, Any]:
    return recordings.resume(meeting_id).snapshot()


@router.post("/{meeting_id}/recording/stop")
async def stop_recording(
    meeting_id: str,
    session: Session = Depends(get_session),
    recordings: RecordingManager = Depends(get_recording_manager),
) -> Dict[str, Any]:
    transcript = await recordings.stop(meeting_id)
    return {"transcript": _transcript_dict(transcript, session)}


@router.post("/{meeting_id}/recording/abort")
async def abort_recording(meeting_id: str, recordings: RecordingManager = Depends(get_recording_manager)) -> Dict[str, Any]:
    await recordings.abort(meeting_id)
    return recordings.state_for(meeting_id)


@router.post("/{meeting_id}/transcribe-file")
async def transcribe_file(
    meeting_id: str,
    body: TranscribeFileRequest,
    session: Session = Depends(get_session),
    recordings: RecordingManager = Depends(get_recording_manager),
) -> Dict[str, Any]:
    transcript = await recordings.ingest_file(meeting_id, Path(body.path), _asr_config(session))
    return {"transcript": _transcript_dict(transcript, session)}
