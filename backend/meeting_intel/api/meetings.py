from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlmodel import Session
import logging

from meeting_intel.api.status import derive_status, display_text
from meeting_intel.deps import get_recording_manager, get_session, orchestrator
from meeting_intel.errors import MeetingNotFoundError
from meeting_intel.models.chat_message import ChatMessage
from meeting_intel.models.meeting import Meeting
from meeting_intel.models.summary import SUMMARY_SECTIONS, Summary
from meeting_intel.repositories.chat_messages import ChatMessagesRepository, message_metadata
from meeting_intel.repositories.meetings import MeetingsRepository
from meeting_intel.repositories.settings import get_language
from meeting_intel.repositories.summaries import SummariesRepository
from meeting_intel.repositories.transcripts import TranscriptsRepository
from meeting_intel.services.ingestion import RecordingManager
from meeting_intel.services.orchestrator import GenerationOrchestrator

logger = logging.getLogger("meeting_intel.api")


router = APIRouter(prefix="/meetings", tags=["meetings"])


class CreateMeetingRequest(BaseModel):
    title: Optional[str] = None
    language: Optional[str] = None


class UpdateMeetingRequest(BaseModel):
    title: Optional[str] = None


class SummaryRequest(BaseModel):
    custom_prompt: Optional[str] = None
    template: str = "summary"
    provider: Optional[str] = None
    model_name: Optional[str] = None


class RegenerateRequest(BaseModel):
    provider: Optional[str] = None
    model_name: Optional[str] = None


class AskQuestionRequest(BaseModel):
    question: str = Field(..., min_length=1)
    model_provider: Optional[str] = None
    model_name: Optional[str] = None


def _meeting_dict(meeting: Meeting) -> Dict[str, Any]:
    return {
        "id": meeting.id,
        "title": meeting.title,
        "created_at": meeting.created_at.isoformat(),
        "language": meeting.language,
    }


def summary_dict(summary: Summary) -> Dict[str, Any]:
    data: Dict[str, Any] = {section: list(getattr(summary, section) or []) for section in SUMMARY_SECTIONS}
    data.update(
        {
            "meeting_id": summary.meeting_id,
            "raw_markdown": summary.raw_markdown,
            "custom_prompt": summary.custom_prompt,
            "language": summary.language,
            "model": summary.model,
            "created_at": summary.created_at.isoformat(),
        }
    )
    return data


def message_dict(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "meeting_id": message.meeting_id,
        "role": message.role,
        "content": message.content,
        "created_at": message.created_at.isoformat(),
        "metadata": message_metadata(message),
    }


@router.post("")
def create_meeting(body: CreateMeetingRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    meeting = Meeting(title=(body.title or "").strip() or "Untitled Meeting", language=body.language)
    meeting = MeetingsRepository(session).create(meeting)
    logger.info("Created meeting %s", meeting.id)
    return _meeting_dict(meeting)


@router.get("")
def list_meetings(limit: int = 50, offset: int = 0, session: Session = Depends(get_session)) -> List[Dict[str, Any]]:
    return [_meeting_dict(m) for m in MeetingsRepository(session).list(limit=limit, offset=offset)]


@router.get("/{meeting_id}")
def get_meeting(meeting_id: str, session: Session = Depends(get_session)) -> Dict[str, Any]:
    meeting = MeetingsRepository(session).require(meeting_id)
    transcripts = TranscriptsRepository(session)
    transcript = transcripts.get(meeting_id)
    summary = SummariesRepository(session).get_by_meeting(meeting_id)
    data = _meeting_dict(meeting)
    data.update(
        {
            "transcript": {
                "state": transcript.state if transcript else None,
                "finalized_at": transcript.finalized_at.isoformat() if transcript and transcript.finalized_at else None,
                "fragments": [
                    {
                        "seq": f.seq,
                        "start_ms": f.start_ms,
                        "end_ms": f.end_ms,
                        "text": f.text,
                        "confidence": f.confidence,
                        "language": f.language,
                    }
                    for f in transcripts.list_by_meeting(meeting_id)
                ],
            },
            "summary": summary_dict(summary) if summary else None,
            "chat_messages": ChatMessagesRepository(session).count_for_meeting(meeting_id),
        }
    )
    return data


@router.put("/{meeting_id}")
def update_meeting(meeting_id: str, body: UpdateMeetingRequest, session: Session = Depends(get_session)) -> Dict[str, Any]:
    repo = MeetingsRepository(session)
    meeting = repo.require(meeting_id)
    if body.title is not None and body.title.strip():
        meeting.title = body.title.strip()
    return _meeting_dict(repo.update(meeting))


@router.delete("/{meeting_id}")
async def delete_meeting(
    meeting_id: str,
    session: Session = Depends(get_session),
    recordings: RecordingManager = Depends(get_recording_manager),
) -> Dict[str, bool]:
    if recordings.get(meeting_id) is not None:
        await recordings.abort(meeting_id)
    if not MeetingsRepository(session).delete(meeting_id):
        raise MeetingNotFoundError(f"Meeting not found: {meeting_id}")
    return {"ok": True}


@router.get("/{meeting_id}/status")
def meeting_status(
    meeting_id: str,
    session: Session = Depends(get_session),
    recordings: RecordingManager = Depends(get_recording_manager),
    jobs: GenerationOrchestrator = Depends(orchestrator),
) -> Dict[str, Any]:
    MeetingsRepository(session).require(meeting_id)
    recording = recordings.state_for(meeting_id)
    generation = jobs.status_for(meeting_id)
    status = derive_status(recording, generation)
    return {
        "status": status.value,
        "display_text": display_text(status, get_language(session)),
        "recording": recording,
        "generation": generation,
    }


# ----- Summary -----


@router.post("/{meeting_id}/summary")
async def generate_summary(
    meeting_id: str,
    body: SummaryRequest,
    jobs: GenerationOrchestrator = Depends(orchestrator),
) -> Dict[str, Any]:
    summary = await jobs.generate_summary(
        meeting_id,
        custom_prompt=body.custom_prompt,
        template_key=body.template,
        provider=body.provider,
        model_name=body.model_name,
    )
    return {"summary": summary_dict(summary)}


@router.post("/{meeting_id}/summary/regenerate")
async def regenerate_summary(
    meeting_id: str,
    body: Optional[RegenerateRequest] = None,
    jobs: GenerationOrchestrator = Depends(orchestrator),
) -> Dict[str, Any]:
    body = body or RegenerateRequest()
    summary = await jobs.regenerate_summary(meeting_id, provider=body.provider, model_name=body.model_name)
    return {"summary": summary_dict(summary)}


@router.get("/{meeting_id}/summary")
def get_summary(meeting_id: str, session: Session = Depends(get_session)) -> Dict[str, Any]:
    MeetingsRepository(session).require(meeting_id)
    summary = SummariesRepository(session).get_by_meeting(meeting_id)
    return {"summary": summary_dict(summary) if summary else None}


# ----- Chat -----


@router.get("/{meeting_id}/chat")
def get_chat_messages(meeting_id: str, session: Session = Depends(get_session)) -> List[Dict[str, Any]]:
    MeetingsRepository(session).require(meeting_id)
    return [message_dict(m) for m in ChatMessagesRepository(session).list_by_meeting(meeting_id)]


@router.post("/{meeting_id}/chat")
async def ask_question(
    meeting_id: str,
    body: AskQuestionRequest,
    jobs: GenerationOrchestrator = Depends(orchestrator),
) -> Dict[str, Any]:
    turn = await jobs.ask_question(
        meeting_id,
        body.question,
        model_provider=body.model_provider,
        model_name=body.model_name,
    )
    return {
        "answer": turn.answer,
        "user_message": message_dict(turn.user_message),
        "assistant_message": message_dict(turn.assistant_message),
    }
