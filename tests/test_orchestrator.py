from __future__ import annotations

import asyncio
import json
from typing import List

import pytest

from meeting_intel.errors import (
    AlreadyInProgressError,
    GenerationTimeoutError,
    LLMCallError,
    MalformedResponseError,
    MeetingNotFoundError,
    NoModelConfiguredError,
    NoTranscriptError,
    SummaryMissingError,
)
from meeting_intel.models.transcript import TranscriptFragment
from meeting_intel.repositories.chat_messages import ChatMessagesRepository, message_metadata
from meeting_intel.repositories.meetings import MeetingsRepository
from meeting_intel.repositories.summaries import SummariesRepository
from meeting_intel.repositories.transcripts import TranscriptsRepository
from meeting_intel.services.llm_client import LLMProvider, RawResponse
from meeting_intel.services.orchestrator import GenerationOrchestrator, JobStatus

from conftest import FakeLLMClient

SUMMARY_JSON = json.dumps(
    {
        "key_points": ["Budget approved"],
        "action_items": ["Bob sends the invoice by Friday"],
        "decisions": ["Launch in May"],
        "main_topics": ["Budget", "Launch"],
    }
)


def _write_transcript(session_factory, meeting_id: str, lines: List[str]) -> None:
    with session_factory() as s:
        repo = TranscriptsRepository(s)
        repo.start(meeting_id)
        for i, line in enumerate(lines):
            repo.append_fragment(
                TranscriptFragment(meeting_id=meeting_id, seq=i, start_ms=i * 1000, end_ms=i * 1000 + 900, text=line)
            )


@pytest.fixture
def orchestrator(session_factory, settings, fake_llm) -> GenerationOrchestrator:
    return GenerationOrchestrator(session_factory, settings, client_factory=lambda *args: fake_llm)


@pytest.fixture
def transcribed(session_factory, meeting):
    _write_transcript(session_factory, meeting.id, ["Alice: the budget is approved", "Bob: I'll send the invoice"])
    return meeting


def _messages(session_factory, meeting_id: str):
    with session_factory() as s:
        return ChatMessagesRepository(s).list_by_meeting(meeting_id)


# ----- summaries -----


@pytest.mark.asyncio
async def test_generate_summary_stores_sections(orchestrator, fake_llm, transcribed, llm_settings, session_factory) -> None:
    fake_llm.responses = [SUMMARY_JSON]
    summary = await orchestrator.generate_summary(transcribed.id, custom_prompt="focus on money")

    assert summary.key_points == ["Budget approved"]
    assert summary.decisions == ["Launch in May"]
    assert summary.model == "openai/fake-model"
    assert summary.language == "en"
    assert summary.custom_prompt == "focus on money"
    assert "## Key Points" in summary.raw_markdown
    prompt = fake_llm.prompts[0]
    assert "Alice: the budget is approved\nBob: I'll send the invoice" in prompt.user
    assert "focus on money" in prompt.user
    assert orchestrator.status_for(transcribed.id)["latest"]["summary"]["status"] == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_second_summary_replaces_first(orchestrator, fake_llm, transcribed, llm_settings, session_factory) -> None:
    fake_llm.responses = [SUMMARY_JSON, json.dumps({"key_points": ["Only this"]})]
    await orchestrator.generate_summary(transcribed.id)
    await orchestrator.generate_summary(transcribed.id)

    with session_factory() as s:
        stored = SummariesRepository(s).get_by_meeting(transcribed.id)
    assert stored.key_points == ["Only this"]
    assert stored.action_items == [] and stored.decisions == [] and stored.main_topics == []


@pytest.mark.asyncio
async def test_unstructured_answer_is_kept_as_raw_text(orchestrator, fake_llm, transcribed, llm_settings) -> None:
    fake_llm.responses = ["<think>hmm</think>The team agreed on the budget."]
    summary = await orchestrator.generate_summary(transcribed.id)
    assert summary.raw_markdown == "The team agreed on the budget."
    assert summary.key_points == []


@pytest.mark.asyncio
async def test_empty_answer_is_malformed(orchestrator, fake_llm, transcribed, llm_settings, session_factory) -> None:
    fake_llm.responses = ["<think>nothing to say</think>  "]
    with pytest.raises(MalformedResponseError):
        await orchestrator.generate_summary(transcribed.id)
    with session_factory() as s:
        assert SummariesRepository(s).get_by_meeting(transcribed.id) is None
    latest = orchestrator.status_for(transcribed.id)["latest"]["summary"]
    assert latest["status"] == "failed"
    assert latest["error"]["status"] == "malformed_response"
    assert not orchestrator.is_busy(transcribed.id)


@pytest.mark.asyncio
async def test_summary_requires_transcript(orchestrator, meeting, llm_settings) -> None:
    with pytest.raises(NoTranscriptError):
        await orchestrator.generate_summary(meeting.id)


@pytest.mark.asyncio
async def test_summary_requires_model(orchestrator, transcribed) -> None:
    with pytest.raises(NoModelConfiguredError):
        await orchestrator.generate_summary(transcribed.id)


@pytest.mark.asyncio
async def test_regenerate_reuses_custom_prompt(orchestrator, fake_llm, transcribed, llm_settings) -> None:
    with pytest.raises(SummaryMissingError):
        await orchestrator.regenerate_summary(transcribed.id)

    fake_llm.responses = [SUMMARY_JSON, SUMMARY_JSON]
    await orchestrator.generate_summary(transcribed.id, custom_prompt="mention deadlines")
    summary = await orchestrator.regenerate_summary(transcribed.id)

    assert summary.custom_prompt == "mention deadlines"
    assert "mention deadlines" in fake_llm.prompts[-1].user


@pytest.mark.asyncio
async def test_concurrent_regenerate_is_rejected(orchestrator, fake_llm, transcribed, llm_settings) -> None:
    fake_llm.responses = [SUMMARY_JSON, SUMMARY_JSON]
    await orchestrator.generate_summary(transcribed.id)

    fake_llm.gate = asyncio.Event()
    first = asyncio.create_task(orchestrator.regenerate_summary(transcribed.id))
    while len(fake_llm.prompts) < 2:
        await asyncio.sleep(0.01)

    with pytest.raises(AlreadyInProgressError):
        await orchestrator.regenerate_summary(transcribed.id)
    with pytest.raises(AlreadyInProgressError):
        await orchestrator.generate_summary(transcribed.id)
    running = [job for job in orchestrator.jobs() if job["status"] == "running"]
    assert len(running) == 1
    assert orchestrator.is_busy(transcribed.id, "summary")
    assert not orchestrator.is_busy(transcribed.id, "chat")

    fake_llm.gate.set()
    await first
    assert not orchestrator.is_busy(transcribed.id)


@pytest.mark.asyncio
async def test_slow_model_times_out(orchestrator, fake_llm, transcribed, llm_settings, settings) -> None:
    settings.llm_timeout_seconds = 0.05
    fake_llm.gate = asyncio.Event()
    with pytest.raises(GenerationTimeoutError):
        await orchestrator.generate_summary(transcribed.id)
    assert orchestrator.status_for(transcribed.id)["latest"]["summary"]["error"]["status"] == "timeout"


class ChunkingClient(FakeLLMClient):
    async def generate(self, prompt, options) -> RawResponse:
        self.prompts.append(prompt)
        text = {"summary_chunk": "notes", "summary_combine": "merged notes"}.get(prompt.template_key, SUMMARY_JSON)
        return RawResponse(text=text, model=self.model_name)


@pytest.mark.asyncio
async def test_local_model_summarizes_long_transcript_in_chunks(session_factory, settings, meeting, llm_settings) -> None:
    settings.summary_token_threshold = 50
    client = ChunkingClient(provider=LLMProvider.OLLAMA)
    orchestrator = GenerationOrchestrator(session_factory, settings, client_factory=lambda *args: client)
    _write_transcript(session_factory, meeting.id, [f"Speaker {i}: point number {i} about the launch" for i in range(40)])

    summary = await orchestrator.generate_summary(meeting.id)

    keys = [p.template_key for p in client.prompts]
    assert keys.count("summary_chunk") > 1
    assert keys[-2:] == ["summary_combine", "summary"]
    assert "merged notes" in client.prompts[-1].user
    assert summary.key_points == ["Budget approved"]


# ----- chat -----


@pytest.mark.asyncio
async def test_chat_turns_are_persisted_in_order(orchestrator, fake_llm, transcribed, llm_settings, session_factory) -> None:
    fake_llm.responses = ["Bob sends it.", "By Friday.", "Yes."]
    for question in ("Who sends the invoice?", "When?", "Is the budget approved?"):
        turn = await orchestrator.ask_question(transcribed.id, question)
        assert turn.assistant_message.content == turn.answer

    messages = _messages(session_factory, transcribed.id)
    assert [m.role for m in messages] == ["user", "assistant"] * 3
    assert [m.content for m in messages][:2] == ["Who sends the invoice?", "Bob sends it."]
    meta = message_metadata(messages[-1])
    assert meta["provider"] == "openai"
    assert meta["model"] == "fake-model"
    assert meta["usage"] == {"total_tokens": 42}
    assert meta["context_truncated"] is False
    # earlier turns are part of the prompt context
    assert "Who sends the invoice?" in fake_llm.prompts[-1].user
    assert "Bob sends it." in fake_llm.prompts[-1].user


@pytest.mark.asyncio
async def test_failed_turn_keeps_question_and_retry_reuses_it(
    orchestrator, fake_llm, transcribed, llm_settings, session_factory
) -> None:
    fake_llm.responses = [LLMCallError("upstream 500"), "Bob sends it."]
    with pytest.raises(LLMCallError):
        await orchestrator.ask_question(transcribed.id, "Who sends the invoice?")

    messages = _messages(session_factory, transcribed.id)
    assert [(m.role, m.content) for m in messages] == [("user", "Who sends the invoice?")]

    turn = await orchestrator.ask_question(transcribed.id, "Who sends the invoice?")
    messages = _messages(session_factory, transcribed.id)
    assert [m.role for m in messages] == ["user", "assistant"]
    assert turn.user_message.id == messages[0].id
    assert "Previous Conversation" not in fake_llm.prompts[-1].user


@pytest.mark.asyncio
async def test_chat_without_transcript_keeps_only_question(orchestrator, meeting, llm_settings, session_factory) -> None:
    with pytest.raises(NoTranscriptError):
        await orchestrator.ask_question(meeting.id, "Anything?")
    assert [m.role for m in _messages(session_factory, meeting.id)] == ["user"]


@pytest.mark.asyncio
async def test_chat_without_model_keeps_only_question(orchestrator, transcribed, session_factory) -> None:
    with pytest.raises(NoModelConfiguredError):
        await orchestrator.ask_question(transcribed.id, "Anything?")
    assert [m.content for m in _messages(session_factory, transcribed.id)] == ["Anything?"]


@pytest.mark.asyncio
async def test_empty_question_is_rejected(orchestrator, transcribed, llm_settings, session_factory) -> None:
    with pytest.raises(ValueError):
        await orchestrator.ask_question(transcribed.id, "   ")
    assert _messages(session_factory, transcribed.id) == []


# ----- concurrency across slots and deleted meetings -----


class PerKindClient(FakeLLMClient):
    """Holds summary prompts at ``gate``; chat prompts answer right away."""

    async def generate(self, prompt, options) -> RawResponse:
        self.prompts.append(prompt)
        if prompt.template_key == "chat":
            return RawResponse(text="Bob sends it.", model=self.model_name)
        await self.gate.wait()
        return RawResponse(text=SUMMARY_JSON, model=self.model_name)


@pytest.mark.asyncio
async def test_chat_is_answered_while_summary_is_running(
    session_factory, settings, transcribed, llm_settings
) -> None:
    client = PerKindClient()
    client.gate = asyncio.Event()
    orchestrator = GenerationOrchestrator(session_factory, settings, client_factory=lambda *args: client)

    summary_task = asyncio.create_task(orchestrator.generate_summary(transcribed.id))
    while not client.prompts:
        await asyncio.sleep(0.01)
    assert orchestrator.is_busy(transcribed.id, "summary")

    turn = await orchestrator.ask_question(transcribed.id, "Who sends the invoice?")
    assert turn.answer == "Bob sends it."
    assert [m.role for m in _messages(session_factory, transcribed.id)] == ["user", "assistant"]
    assert not summary_task.done()

    client.gate.set()
    summary = await summary_task
    assert summary.key_points == ["Budget approved"]


@pytest.mark.asyncio
async def test_meeting_deleted_during_summary_is_typed(orchestrator, fake_llm, transcribed, llm_settings,
                                                       session_factory) -> None:
    fake_llm.responses = [SUMMARY_JSON]
    fake_llm.gate = asyncio.Event()
    task = asyncio.create_task(orchestrator.generate_summary(transcribed.id))
    while not fake_llm.prompts:
        await asyncio.sleep(0.01)

    with session_factory() as s:
        assert MeetingsRepository(s).delete(transcribed.id)
    fake_llm.gate.set()

    with pytest.raises(MeetingNotFoundError):
        await task
    latest = orchestrator.status_for(transcribed.id)["latest"]["summary"]
    assert latest["error"]["status"] == "meeting_not_found"
    assert not orchestrator.is_busy(transcribed.id)


@pytest.mark.asyncio
async def test_meeting_deleted_during_chat_is_typed(orchestrator, fake_llm, transcribed, llm_settings,
                                                    session_factory) -> None:
    fake_llm.responses = ["Bob sends it."]
    fake_llm.gate = asyncio.Event()
    task = asyncio.create_task(orchestrator.ask_question(transcribed.id, "Who sends the invoice?"))
    while not fake_llm.prompts:
        await asyncio.sleep(0.01)

    with session_factory() as s:
        assert MeetingsRepository(s).delete(transcribed.id)
    fake_llm.gate.set()

    with pytest.raises(MeetingNotFoundError):
        await task
    assert _messages(session_factory, transcribed.id) == []
