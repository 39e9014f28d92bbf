from __future__ import annotations

import asyncio
import json
import wave

import httpx
import numpy as np
import pytest
import pytest_asyncio
from sqlmodel import Session

from meeting_intel import deps
from meeting_intel.main import app
from meeting_intel.models.transcript import TranscriptFragment
from meeting_intel.repositories.settings import save_app_settings
from meeting_intel.repositories.transcripts import TranscriptsRepository
from meeting_intel.services.hardware import AcceleratorChoice
from meeting_intel.services.ingestion import RecordingManager
from meeting_intel.services.model_store import ModelStore
from meeting_intel.services.orchestrator import GenerationOrchestrator

SUMMARY_JSON = json.dumps({"key_points": ["Budget approved"], "action_items": [], "decisions": [], "main_topics": []})


class SilentCapture:
    def __init__(self, on_chunk, loop, device_id=None, chunk_seconds=1.0, on_error=None) -> None:
        self.running = False

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False


@pytest.fixture
def orch(session_factory, settings, fake_llm) -> GenerationOrchestrator:
    return GenerationOrchestrator(session_factory, settings, client_factory=lambda *args: fake_llm)


@pytest_asyncio.fixture
async def client(db_engine, settings, session_factory, asr_engine, orch, monkeypatch):
    def _session():
        with Session(db_engine) as s:
            yield s

    manager = RecordingManager(asr_engine, session_factory, settings, capture_factory=SilentCapture)
    monkeypatch.setattr(
        "meeting_intel.api.transcription.probe_accelerator",
        lambda preference="auto", feature="whisper_gpu": AcceleratorChoice("cpu", "int8", "test"),
    )
    app.dependency_overrides[deps.get_session] = _session
    app.dependency_overrides[deps.get_settings] = lambda: settings
    app.dependency_overrides[deps.get_recording_manager] = lambda: manager
    app.dependency_overrides[deps.orchestrator] = lambda: orch
    app.dependency_overrides[deps.transcription_engine] = lambda: asr_engine
    app.dependency_overrides[deps.model_store] = lambda: ModelStore(settings.models_dir)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _create(client: httpx.AsyncClient, title: str = "Standup") -> str:
    response = await client.post("/meetings", json={"title": title})
    assert response.status_code == 200
    return response.json()["id"]


def _add_transcript(session_factory, meeting_id: str) -> None:
    with session_factory() as s:
        repo = TranscriptsRepository(s)
        repo.start(meeting_id)
        repo.append_fragment(TranscriptFragment(meeting_id=meeting_id, seq=0, start_ms=0, end_ms=900,
                                                text="Alice: budget approved"))
        repo.finalize(meeting_id)


def _configure_llm(session_factory) -> None:
    with session_factory() as s:
        save_app_settings(s, {"language": "en", "llm": {"provider": "openai", "model_name": "fake-model",
                                                        "api_keys": {"openai": "sk"}}})


@pytest.mark.asyncio
async def test_meeting_crud(client) -> None:
    meeting_id = await _create(client, "  Standup  ")

    listed = (await client.get("/meetings")).json()
    assert [m["title"] for m in listed] == ["Standup"]

    detail = (await client.get(f"/meetings/{meeting_id}")).json()
    assert detail["transcript"] == {"state": None, "finalized_at": None, "fragments": []}
    assert detail["summary"] is None
    assert detail["chat_messages"] == 0

    updated = await client.put(f"/meetings/{meeting_id}", json={"title": "Retro"})
    assert updated.json()["title"] == "Retro"

    assert (await client.delete(f"/meetings/{meeting_id}")).json() == {"ok": True}
    missing = await client.get(f"/meetings/{meeting_id}")
    assert missing.status_code == 404
    assert missing.json()["status"] == "meeting_not_found"
    assert (await client.delete(f"/meetings/{meeting_id}")).status_code == 404


@pytest.mark.asyncio
async def test_chat_round_trip(client, fake_llm, session_factory) -> None:
    meeting_id = await _create(client)
    _add_transcript(session_factory, meeting_id)
    _configure_llm(session_factory)
    fake_llm.responses = ["It was approved."]

    response = await client.post(f"/meetings/{meeting_id}/chat", json={"question": "Was the budget approved?"})
    assert response.status_code == 200
    body = response.json()
    assert body["answer"] == "It was approved."
    assert body["assistant_message"]["metadata"]["model"] == "fake-model"

    history = (await client.get(f"/meetings/{meeting_id}/chat")).json()
    assert [m["role"] for m in history] == ["user", "assistant"]

    assert (await client.post(f"/meetings/{meeting_id}/chat", json={"question": ""})).status_code == 422
    blank = await client.post(f"/meetings/{meeting_id}/chat", json={"question": "   "})
    assert blank.status_code == 422
    assert blank.json()["status"] == "invalid_request"


@pytest.mark.asyncio
async def test_summary_precondition_errors(client, session_factory) -> None:
    meeting_id = await _create(client)

    no_transcript = await client.post(f"/meetings/{meeting_id}/summary", json={})
    assert no_transcript.status_code == 412
    assert no_transcript.json() == {
        "status": "no_transcript",
        "message": "This meeting has no transcript yet",
        "retryable": False,
    }

    _add_transcript(session_factory, meeting_id)
    no_model = await client.post(f"/meetings/{meeting_id}/summary", json={})
    assert no_model.status_code == 412
    assert no_model.json()["status"] == "no_model_configured"

    missing = await client.post(f"/meetings/{meeting_id}/summary/regenerate")
    assert missing.status_code == 412
    assert missing.json()["status"] == "summary_missing"


@pytest.mark.asyncio
async def test_concurrent_summary_request_conflicts(client, fake_llm, session_factory) -> None:
    meeting_id = await _create(client)
    _add_transcript(session_factory, meeting_id)
    _configure_llm(session_factory)
    fake_llm.responses = [SUMMARY_JSON]
    fake_llm.gate = asyncio.Event()

    first = asyncio.create_task(client.post(f"/meetings/{meeting_id}/summary", json={"custom_prompt": "short"}))
    while not fake_llm.prompts:
        await asyncio.sleep(0.01)

    status = (await client.get(f"/meetings/{meeting_id}/status")).json()
    assert status["status"] == "summarizing"
    assert status["display_text"] == "Generating summary…"

    conflict = await client.post(f"/meetings/{meeting_id}/summary", json={})
    assert conflict.status_code == 409
    assert conflict.json()["status"] == "already_in_progress"

    fake_llm.gate.set()
    response = await first
    assert response.status_code == 200
    assert response.json()["summary"]["key_points"] == ["Budget approved"]
    stored = (await client.get(f"/meetings/{meeting_id}/summary")).json()["summary"]
    assert stored["custom_prompt"] == "short"


@pytest.mark.asyncio
async def test_language_endpoints(client) -> None:
    assert (await client.get("/settings/language")).json() == {"language": "pt-BR", "supported": ["en", "pt-BR"]}
    updated = await client.put("/settings/language", json={"language": "en-US"})
    assert updated.json()["language"] == "en"
    assert (await client.get("/settings/language")).json()["language"] == "en"


@pytest.mark.asyncio
async def test_settings_update_migrates_values(client) -> None:
    response = await client.post("/settings", json={"asr": {"engine": "localWhisper", "device": "tpu"}})
    assert response.status_code == 200
    asr = response.json()["asr"]
    assert asr["engine"] == "faster-whisper"
    assert asr["device"] == "auto"
    assert (await client.get("/settings")).json()["asr"]["engine"] == "faster-whisper"


@pytest.mark.asyncio
async def test_recording_lifecycle(client, session_factory) -> None:
    meeting_id = await _create(client)
    await client.post("/settings", json={"asr": {"model_id": "tiny"}})

    started = await client.post(f"/meetings/{meeting_id}/recording/start", json={})
    assert started.status_code == 200
    assert started.json()["state"] == "recording"
    assert (await client.get(f"/meetings/{meeting_id}/status")).json()["status"] == "recording"

    duplicate = await client.post(f"/meetings/{meeting_id}/recording/start", json={})
    assert duplicate.status_code == 409

    assert (await client.post(f"/meetings/{meeting_id}/recording/pause")).json()["paused"] is True
    assert (await client.post(f"/meetings/{meeting_id}/recording/resume")).json()["paused"] is False

    stopped = await client.post(f"/meetings/{meeting_id}/recording/stop")
    assert stopped.json()["transcript"]["state"] == "final"

    again = await client.post(f"/meetings/{meeting_id}/recording/start", json={})
    assert again.status_code == 409
    assert again.json()["status"] == "transcript_finalized"


@pytest.mark.asyncio
async def test_recording_requires_downloaded_model(client) -> None:
    meeting_id = await _create(client)
    await client.post("/settings", json={"asr": {"model_id": "medium"}})
    response = await client.post(f"/meetings/{meeting_id}/recording/start", json={})
    assert response.status_code == 503
    assert response.json()["status"] == "model_not_ready"


@pytest.mark.asyncio
async def test_transcribe_file_endpoint(client, tmp_path) -> None:
    meeting_id = await _create(client)
    await client.post("/settings", json={"asr": {"model_id": "tiny"}})
    wav_path = tmp_path / "clip.wav"
    t = np.arange(16000) / 16000
    with wave.open(str(wav_path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(16000)
        wf.writeframes((0.3 * np.sin(2 * np.pi * 220 * t) * 32767).astype("<i2").tobytes())

    response = await client.post(f"/meetings/{meeting_id}/transcribe-file", json={"path": str(wav_path)})
    assert response.status_code == 200
    assert response.json()["transcript"] == {
        "meeting_id": meeting_id,
        "state": "final",
        "finalized_at": response.json()["transcript"]["finalized_at"],
        "fragments": 1,
    }


@pytest.mark.asyncio
async def test_transcription_status_and_model_state(client) -> None:
    status = (await client.get("/transcription/status")).json()
    assert status["status"] == "idle"
    assert status["display_text"] == "Pronto"
    assert status["accelerator"]["device"] == "cpu"
    assert status["engine"]["model_loaded"] is False

    state = (await client.get("/models/asr/state", params={"model_id": "tiny"})).json()
    assert state["present"] is True
    missing = (await client.get("/models/asr/state", params={"model_id": "small"})).json()
    assert missing["present"] is False
    assert missing["status"] == "idle"
