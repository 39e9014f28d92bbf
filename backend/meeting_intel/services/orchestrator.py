"""
Generation orchestrator: summaries and transcript-grounded chat turns.

At most one job runs per (meeting, slot). Summary generation and regeneration
share a slot because they write the same row; chat turns use their own slot so
a question can be answered while a summary is being written.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlmodel import Session

from meeting_intel.config import Settings
from meeting_intel.errors import (
    AlreadyInProgressError,
    GenerationTimeoutError,
    MalformedResponseError,
    MeetingNotFoundError,
    NoModelConfiguredError,
    NoTranscriptError,
    PipelineError,
    SummaryMissingError,
)
from meeting_intel.models.chat_message import ChatMessage
from meeting_intel.models.summary import Summary
from meeting_intel.repositories.chat_messages import ChatMessagesRepository
from meeting_intel.repositories.meetings import MeetingsRepository
from meeting_intel.repositories.settings import get_app_settings, get_language
from meeting_intel.repositories.summaries import SummariesRepository
from meeting_intel.repositories.transcripts import TranscriptsRepository
from meeting_intel.services.llm_client import GenerationOptions, LLMClient, LLMProvider, RawResponse, build_llm_client
from meeting_intel.services.prompt_composer import (
    PromptTemplate,
    RenderedPrompt,
    chunk_text,
    clean_llm_output,
    compose,
    rough_token_count,
)
from meeting_intel.services.summary_format import parse_summary_response, render_markdown, summary_as_text

logger = logging.getLogger("meeting_intel.orchestrator")

SessionFactory = Callable[[], Session]
ClientFactory = Callable[..., LLMClient]

MAX_FINISHED_JOBS = 200


class GenerationKind(str, Enum):
    SUMMARY = "summary"
    REGENERATE_SUMMARY = "regenerate-summary"
    CHAT_TURN = "chat-turn"

    @property
    def slot(self) -> str:
        return "chat" if self is GenerationKind.CHAT_TURN else "summary"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GenerationJob:
    meeting_id: str
    kind: GenerationKind
    language: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    prompt: Optional[RenderedPrompt] = None
    error: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "meeting_id": self.meeting_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "language": self.language,
            "template": self.prompt.template_key if self.prompt else None,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ChatTurn:
    answer: str
    user_message: ChatMessage
    assistant_message: ChatMessage


class GenerationOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        templates: Optional[Dict[str, Dict[str, PromptTemplate]]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or Settings()
        self._client_factory = client_factory or build_llm_client
        self._templates = templates
        self._lock = threading.Lock()
        self._inflight: Dict[Tuple[str, str], GenerationJob] = {}
        self._jobs: "OrderedDict[str, GenerationJob]" = OrderedDict()

    def set_templates(self, templates: Optional[Dict[str, Dict[str, PromptTemplate]]]) -> None:
        self._templates = templates

    # -- job bookkeeping ----------------------------------------------------

    def _claim(self, meeting_id: str, kind: GenerationKind) -> GenerationJob:
        key = (meeting_id, kind.slot)
        with self._lock:
            running = self._inflight.get(key)
            if running is not None:
                raise AlreadyInProgressError(
                    f"A {running.kind.value} job is already running for meeting {meeting_id}"
                )
            job = GenerationJob(meeting_id=meeting_id, kind=kind)
            self._inflight[key] = job
            self._jobs[job.id] = job
            while len(self._jobs) > MAX_FINISHED_JOBS:
                self._jobs.popitem(last=False)
        logger.info("Job %s queued: %s for meeting %s", job.id, kind.value, meeting_id)
        return job

    def _start(self, job: GenerationJob) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = datetime.utcnow()
        logger.info("Job %s running", job.id)

    def _finish(self, job: GenerationJob, error: Optional[BaseException] = None) -> None:
        job.finished_at = datetime.utcnow()
        if error is None:
            job.status = JobStatus.COMPLETED
            logger.info("Job %s completed", job.id)
        else:
            job.status = JobStatus.FAILED
            job.error = error.to_dict() if isinstance(error, PipelineError) else {
                "status": "error", "message": str(error), "retryable": False}
            logger.info("Job %s failed: %s", job.id, job.error["message"])
        with self._lock:
            key = (job.meeting_id, job.kind.slot)
            if self._inflight.get(key) is job:
                del self._inflight[key]

    def jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.to_dict() for job in self._jobs.values()]

    def status_for(self, meeting_id: str) -> Dict[str, Any]:
        """Running job per slot and the latest job of each kind for one meeting."""
        with self._lock:
            running = {slot: job.to_dict() for (mid, slot), job in self._inflight.items() if mid == meeting_id}
            latest: Dict[str, Dict[str, Any]] = {}
            for job in self._jobs.values():
                if job.meeting_id == meeting_id:
                    latest[job.kind.value] = job.to_dict()
        return {"meeting_id": meeting_id, "running": running, "latest": latest}

    def is_busy(self, meeting_id: Optional[str] = None, slot: Optional[str] = None) -> bool:
        with self._lock:
            return any(
                (meeting_id is None or mid == meeting_id) and (slot is None or s == slot)
                for mid, s in self._inflight
            )

    # -- LLM calls --------------------------------------------------------

    async def _call(self, client: LLMClient, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        timeout = self._settings.llm_timeout_seconds
        try:
            return await asyncio.wait_for(client.generate(prompt, options), timeout=timeout)
        except GenerationTimeoutError:
            raise
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(f"The model did not answer within {timeout:.0f} seconds") from None

    def _client_for(self, provider: Optional[str], model_name: Optional[str], app_settings: Dict[str, Any]) -> LLMClient:
        if not provider or not model_name:
            llm = app_settings.get("llm") or {}
            if not (provider == LLMProvider.LOCAL.value and llm.get("model_path")):
                raise NoModelConfiguredError()
        return self._client_factory(provider, model_name, app_settings, self._settings)

    # -- summaries --------------------------------------------------------

    async def generate_summary(
        self,
        meeting_id: str,
        custom_prompt: Optional[str] = None,
        template_key: str = "summary",
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> Summary:
        """Summarize the meeting transcript and replace the stored summary."""
        with self._session_factory() as s:
            MeetingsRepository(s).require(meeting_id)
        job = self._claim(meeting_id, GenerationKind.SUMMARY)
        return await self._run_summary(job, custom_prompt, template_key, provider, model_name)

    async def regenerate_summary(
        self,
        meeting_id: str,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> Summary:
        """Write a fresh summary using the custom prompt of the current one."""
        with self._session_factory() as s:
            MeetingsRepository(s).require(meeting_id)
        job = self._claim(meeting_id, GenerationKind.REGENERATE_SUMMARY)
        try:
            with self._session_factory() as s:
                existing = SummariesRepository(s).get_by_meeting(meeting_id)
                if existing is None:
                    raise SummaryMissingError()
                custom_prompt = existing.custom_prompt
        except BaseException as exc:
            self._finish(job, exc)
            raise
        return await self._run_summary(job, custom_prompt, "summary", provider, model_name)

    async def _run_summary(
        self,
        job: GenerationJob,
        custom_prompt: Optional[str],
        template_key: str,
        provider: Optional[str],
        model_name: Optional[str],
    ) -> Summary:
        meeting_id = job.meeting_id
        try:
            with self._session_factory() as s:
                transcript = TranscriptsRepository(s).transcript_text(meeting_id)
                app_settings = get_app_settings(s)
                language = get_language(s)
            if not transcript.strip():
                raise NoTranscriptError()
            llm = app_settings.get("llm") or {}
            provider = provider or llm.get("provider")
            model_name = model_name or llm.get("model_name")
            client = self._client_for(provider, model_name, app_settings)
            job.language = language
            self._start(job)

            text, model = await self._summarize_text(job, client, transcript, language, custom_prompt, template_key)
            sections = parse_summary_response(text)
            if sections is None:
                logger.warning("Summary for meeting %s is not structured, storing raw text", meeting_id)
                summary = Summary(meeting_id=meeting_id, raw_markdown=text)
            else:
                summary = Summary(meeting_id=meeting_id, raw_markdown=render_markdown(sections, language), **sections)
            summary.custom_prompt = custom_prompt
            summary.language = language
            summary.model = f"{provider}/{model}"
            try:
                with self._session_factory() as s:
                    stored = SummariesRepository(s).replace_for_meeting(summary)
            except DBIntegrityError as exc:
                raise MeetingNotFoundError(f"Meeting {meeting_id} was deleted while its summary was generated") from exc
        except BaseException as exc:
            self._finish(job, exc)
            raise
        self._finish(job)
        return stored

    async def _summarize_text(
        self,
        job: GenerationJob,
        client: LLMClient,
        transcript: str,
        language: str,
        custom_prompt: Optional[str],
        template_key: str,
    ) -> Tuple[str, str]:
        threshold = self._settings.summary_token_threshold
        notes_options = GenerationOptions(temperature=0.2, max_tokens=2048)
        source = transcript
        if client.provider.is_local and rough_token_count(transcript) > threshold:
            # Small local context windows: condense chunks, merge, then summarize the notes
            chunks = chunk_text(transcript, threshold, overlap_tokens=threshold // 10)
            logger.info("Summarizing meeting %s in %d chunks", job.meeting_id, len(chunks))
            notes: List[str] = []
            for chunk in chunks:
                prompt = compose("summary_chunk", language, chunk, templates=self._templates)
                notes.append(await self._text(client, prompt, notes_options))
            source = "\n\n".join(n for n in notes if n)
            if len(notes) > 1:
                prompt = compose("summary_combine", language, source, templates=self._templates)
                source = await self._text(client, prompt, notes_options)

        prompt = compose(template_key, language, source, custom_prompt=custom_prompt, templates=self._templates)
        job.prompt = prompt
        raw = await self._call(client, prompt, GenerationOptions(temperature=0.2, max_tokens=4096, json_mode=True))
        text = clean_llm_output(raw.text)
        if not text:
            raise MalformedResponseError("The model returned an empty summary")
        return text, raw.model

    async def _text(self, client: LLMClient, prompt: RenderedPrompt, options: GenerationOptions) -> str:
        raw = await self._call(client, prompt, options)
        text = clean_llm_output(raw.text)
        if not text:
            raise MalformedResponseError("The model returned an empty response")
        return text

    # -- chat -------------------------------------------------------------

    async def ask_question(
        self,
        meeting_id: str,
        question: str,
        model_provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> ChatTurn:
        """Answer a question about a meeting and persist the turn.

        The user message is stored before anything else; if the turn fails it
        stays without an assistant reply. Asking the same question again right
        after a failure reuses that message instead of storing a duplicate.
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("question cannot be empty")
        with self._session_factory() as s:
            meeting = MeetingsRepository(s).require(meeting_id)
            title = meeting.title
        job = self._claim(meeting_id, GenerationKind.CHAT_TURN)
        try:
            with self._session_factory() as s:
                repo = ChatMessagesRepository(s)
                last = repo.last_for_meeting(meeting_id)
                if last is not None and last.role == "user" and last.content == question:
                    user_message = last
                    logger.info("Retrying unanswered question for meeting %s", meeting_id)
                else:
                    user_message = repo.save(meeting_id, "user", question)
                prior = [m for m in repo.list_by_meeting(meeting_id) if m.created_at < user_message.created_at]
                app_settings = get_app_settings(s)
                language = get_language(s)
                transcript = TranscriptsRepository(s).transcript_text(meeting_id)
                summary_text = summary_as_text(SummariesRepository(s).get_by_meeting(meeting_id))

            llm = app_settings.get("llm") or {}
            provider = model_provider or llm.get("provider")
            model_name = model_name or llm.get("model_name")
            client = self._client_for(provider, model_name, app_settings)
            if not transcript.strip():
                raise NoTranscriptError("This meeting has no transcript to answer questions about")
            job.language = language

            prompt = compose(
                "chat",
                language,
                transcript,
                prior,
                question=question,
                meeting_title=title,
                summary_text=summary_text,
                budget_tokens=self._settings.chat_context_tokens,
                history_turns=self._settings.chat_history_turns,
                templates=self._templates,
            )
            job.prompt = prompt
            self._start(job)
            raw = await self._call(client, prompt, GenerationOptions(temperature=0.3, max_tokens=2048))
            answer = clean_llm_output(raw.text)
            if not answer:
                raise MalformedResponseError("The model returned an empty answer")

            metadata = {
                "provider": provider,
                "model": raw.model,
                "usage": raw.usage,
                "context_truncated": prompt.truncated,
            }
            try:
                with self._session_factory() as s:
                    assistant_message = ChatMessagesRepository(s).save(meeting_id, "assistant", answer, metadata)
            except DBIntegrityError as exc:
                raise MeetingNotFoundError(f"Meeting {meeting_id} was deleted while its answer was generated") from exc
        except BaseException as exc:
            self._finish(job, exc)
            raise
        self._finish(job)
        return ChatTurn(answer=answer, user_message=user_message, assistant_message=assistant_message)


_orchestrator: Optional[GenerationOrchestrator] = None


def get_orchestrator() -> GenerationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from meeting_intel.models.base import new_session

        _orchestrator = GenerationOrchestrator(new_session)
    return _orchestrator
