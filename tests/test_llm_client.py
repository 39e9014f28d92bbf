from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Dict, List

import httpx
import pytest

from meeting_intel.errors import (
    AuthError,
    LLMCallError,
    LLMNetworkError,
    MalformedResponseError,
    ModelUnavailableError,
    NoModelConfiguredError,
    RateLimitedError,
)
from meeting_intel.services.llm_client import (
    ClaudeClient,
    GenerationOptions,
    LlamaCppClient,
    LLMProvider,
    OllamaClient,
    OpenAICompatibleClient,
    build_llm_client,
    resolve_local_model_path,
)
from meeting_intel.services.prompt_composer import RenderedPrompt

PROMPT = RenderedPrompt(system="Be brief.", user="What happened?", language="en", template_key="chat")


class Recorder:
    def __init__(self, status: int = 200, body: Dict | str | None = None) -> None:
        self.status = status
        self.body = body if body is not None else {}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json=self.body)

    @property
    def payload(self) -> Dict:
        return json.loads(self.requests[-1].content)


def _openai(recorder: Recorder) -> OpenAICompatibleClient:
    return OpenAICompatibleClient(LLMProvider.OPENAI, "gpt-4o-mini", "sk-test", transport=httpx.MockTransport(recorder))


@pytest.mark.asyncio
async def test_openai_request_and_response() -> None:
    recorder = Recorder(body={
        "model": "gpt-4o-mini-2024",
        "choices": [{"message": {"role": "assistant", "content": "A budget review."}}],
        "usage": {"total_tokens": 12},
    })
    response = await _openai(recorder).generate(PROMPT, GenerationOptions(json_mode=True, max_tokens=100))

    request = recorder.requests[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    assert recorder.payload["messages"][0] == {"role": "system", "content": "Be brief."}
    assert recorder.payload["response_format"] == {"type": "json_object"}
    assert recorder.payload["max_tokens"] == 100
    assert response.text == "A budget review."
    assert response.model == "gpt-4o-mini-2024"
    assert response.usage == {"total_tokens": 12}


@pytest.mark.parametrize(
    "status, error",
    [(429, RateLimitedError), (401, AuthError), (403, AuthError), (404, ModelUnavailableError), (500, LLMCallError)],
)
@pytest.mark.asyncio
async def test_http_errors_are_typed(status, error) -> None:
    with pytest.raises(error) as info:
        await _openai(Recorder(status=status, body={"error": "nope"})).generate(PROMPT, GenerationOptions())
    assert info.value.retryable is (status == 429)


@pytest.mark.asyncio
async def test_unreachable_provider_is_network_error() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = OllamaClient("llama3", transport=httpx.MockTransport(_refuse))
    with pytest.raises(LLMNetworkError) as info:
        await client.generate(PROMPT, GenerationOptions())
    assert info.value.retryable is True


@pytest.mark.asyncio
async def test_invalid_json_and_bad_shape_are_malformed() -> None:
    with pytest.raises(MalformedResponseError):
        await _openai(Recorder(body="<html>oops</html>")).generate(PROMPT, GenerationOptions())
    with pytest.raises(MalformedResponseError):
        await _openai(Recorder(body={"choices": []})).generate(PROMPT, GenerationOptions())


@pytest.mark.asyncio
async def test_ollama_payload() -> None:
    recorder = Recorder(body={"model": "llama3", "message": {"content": "ok"}, "prompt_eval_count": 10, "eval_count": 3})
    client = OllamaClient("llama3", endpoint="http://gpu-box:11434/", transport=httpx.MockTransport(recorder))
    response = await client.generate(PROMPT, GenerationOptions(json_mode=True, max_tokens=64))

    assert str(recorder.requests[0].url) == "http://gpu-box:11434/api/chat"
    assert recorder.payload["stream"] is False
    assert recorder.payload["format"] == "json"
    assert recorder.payload["options"]["num_predict"] == 64
    assert response.text == "ok"
    assert response.usage == {"prompt_tokens": 10, "completion_tokens": 3}


@pytest.mark.asyncio
async def test_claude_payload() -> None:
    recorder = Recorder(body={
        "model": "claude-3-5-haiku",
        "content": [{"type": "text", "text": "Part one. "}, {"type": "text", "text": "Part two."}],
        "usage": {"input_tokens": 5, "output_tokens": 4},
    })
    client = ClaudeClient("claude-3-5-haiku", "key-123", transport=httpx.MockTransport(recorder))
    response = await client.generate(PROMPT, GenerationOptions())

    request = recorder.requests[0]
    assert str(request.url) == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "key-123"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert recorder.payload["system"] == "Be brief."
    assert recorder.payload["messages"] == [{"role": "user", "content": "What happened?"}]
    assert response.text == "Part one. Part two."


def test_build_client_requires_selection() -> None:
    with pytest.raises(NoModelConfiguredError):
        build_llm_client(None, "gpt-4o")
    with pytest.raises(NoModelConfiguredError):
        build_llm_client("openai", None)
    with pytest.raises(NoModelConfiguredError):
        build_llm_client("mystery", "x")
    with pytest.raises(AuthError):
        build_llm_client("groq", "llama-3.1-8b", {"llm": {"api_keys": {}}})


def test_build_client_per_provider() -> None:
    app_settings = {"llm": {"endpoint": "http://localhost:1234/v1", "api_keys": {"openai": "a", "groq": "b",
                                                                                "claude": "c"}}}
    openai = build_llm_client("openai", "m", app_settings)
    groq = build_llm_client("groq", "m", app_settings)
    assert isinstance(openai, OpenAICompatibleClient) and openai.provider == LLMProvider.OPENAI
    assert openai._base_url == "http://localhost:1234/v1"
    assert groq._base_url == "https://api.groq.com/openai/v1"
    assert isinstance(build_llm_client("claude", "m", app_settings), ClaudeClient)
    ollama = build_llm_client("ollama", "llama3", app_settings)
    assert isinstance(ollama, OllamaClient) and ollama.provider.is_local


def test_local_model_resolution(settings, tmp_path) -> None:
    with pytest.raises(NoModelConfiguredError):
        resolve_local_model_path(None, None, settings)
    with pytest.raises(ModelUnavailableError):
        resolve_local_model_path(None, str(tmp_path / "missing.gguf"), settings)

    llm_dir = settings.models_dir / "llm"
    llm_dir.mkdir(parents=True)
    (llm_dir / "b.gguf").write_bytes(b"")
    (llm_dir / "a.gguf").write_bytes(b"")
    assert resolve_local_model_path(None, None, settings).name == "a.gguf"
    assert resolve_local_model_path("b.gguf", None, settings).name == "b.gguf"

    client = build_llm_client("local", None, {"llm": {"model_path": str(llm_dir / "b.gguf")}}, settings)
    assert isinstance(client, LlamaCppClient)
    assert client.model_name == "b.gguf"


class CountingLlama:
    """Records how many completions run inside one model at the same time."""

    loaded: List["CountingLlama"] = []

    def __init__(self, model_path: str, **kwargs) -> None:
        self.model_path = model_path
        self.active = 0
        self.peak = 0
        self._guard = threading.Lock()
        CountingLlama.loaded.append(self)

    def create_chat_completion(self, **kwargs) -> Dict:
        with self._guard:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._guard:
            self.active -= 1
        return {"choices": [{"message": {"content": "done"}}], "usage": {"total_tokens": 1}}


@pytest.mark.asyncio
async def test_local_model_runs_one_completion_at_a_time(tmp_path, monkeypatch) -> None:
    CountingLlama.loaded = []
    monkeypatch.setattr("meeting_intel.services.llm_client.Llama", CountingLlama)
    monkeypatch.setattr("meeting_intel.services.llm_client.llama_gpu_layers", lambda device: 0)
    monkeypatch.setattr(LlamaCppClient, "_cache", {})
    model_path = tmp_path / "model.gguf"
    model_path.write_bytes(b"")

    responses = await asyncio.gather(
        LlamaCppClient(model_path).generate(PROMPT, GenerationOptions()),
        LlamaCppClient(model_path).generate(PROMPT, GenerationOptions()),
        LlamaCppClient(model_path).generate(PROMPT, GenerationOptions()),
    )

    assert [r.text for r in responses] == ["done"] * 3
    assert len(CountingLlama.loaded) == 1
    assert CountingLlama.loaded[0].peak == 1


@pytest.mark.asyncio
async def test_switching_local_model_evicts_previous(tmp_path, monkeypatch) -> None:
    CountingLlama.loaded = []
    monkeypatch.setattr("meeting_intel.services.llm_client.Llama", CountingLlama)
    monkeypatch.setattr("meeting_intel.services.llm_client.llama_gpu_layers", lambda device: 0)
    monkeypatch.setattr(LlamaCppClient, "_cache", {})
    first, second = tmp_path / "a.gguf", tmp_path / "b.gguf"
    first.write_bytes(b"")
    second.write_bytes(b"")

    await asyncio.gather(
        LlamaCppClient(first).generate(PROMPT, GenerationOptions()),
        LlamaCppClient(second).generate(PROMPT, GenerationOptions()),
    )

    assert len(LlamaCppClient._cache) == 1
    assert len(CountingLlama.loaded) == 2
    assert all(llm.peak == 1 for llm in CountingLlama.loaded)
