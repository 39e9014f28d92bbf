from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

try:
    from llama_cpp import Llama  # type: ignore
except Exception:  # pragma: no cover
    Llama = None  # type: ignore

from meeting_intel.config import Settings
from meeting_intel.errors import (
    AuthError,
    LLMCallError,
    LLMNetworkError,
    MalformedResponseError,
    ModelUnavailableError,
    NoModelConfiguredError,
    RateLimitedError,
)
from meeting_intel.services.hardware import llama_gpu_layers
from meeting_intel.services.prompt_composer import RenderedPrompt

logger = logging.getLogger("meeting_intel.llm")


class LLMProvider(str, Enum):
    LOCAL = "local"
    OLLAMA = "ollama"
    OPENAI = "openai"
    GROQ = "groq"
    OPENROUTER = "openrouter"
    CLAUDE = "claude"

    @property
    def is_local(self) -> bool:
        # Both run on this machine with a small context window
        return self in (LLMProvider.LOCAL, LLMProvider.OLLAMA)


OPENAI_COMPATIBLE_URLS = {
    LLMProvider.OPENAI: "https://api.openai.com/v1",
    LLMProvider.GROQ: "https://api.groq.com/openai/v1",
    LLMProvider.OPENROUTER: "https://openrouter.ai/api/v1",
}
OLLAMA_URL = "http://localhost:11434"
CLAUDE_URL = "https://api.anthropic.com/v1"
CLAUDE_API_VERSION = "2023-06-01"


@dataclass
class GenerationOptions:
    temperature: float = 0.2
    top_p: float = 0.9
    max_tokens: int = 2048
    json_mode: bool = False
    timeout: Optional[float] = None


@dataclass
class RawResponse:
    text: str
    model: str
    usage: Dict[str, Any] = field(default_factory=dict)


class LLMClient(Protocol):
    provider: LLMProvider
    model_name: str

    async def generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        ...


def _raise_for_status(response: httpx.Response, provider: LLMProvider, model: str) -> None:
    if response.is_success:
        return
    code = response.status_code
    detail = response.text[:300]
    if code == 429:
        raise RateLimitedError(f"{provider.value} rate limited the request: {detail}")
    if code in (401, 403):
        raise AuthError(f"{provider.value} rejected the API key ({code})")
    if code == 404:
        raise ModelUnavailableError(f"Model '{model}' is not available on {provider.value}")
    raise LLMCallError(f"{provider.value} returned HTTP {code}: {detail}")


class _HttpClient:
    """Shared request plumbing for the HTTP providers."""

    provider: LLMProvider

    def __init__(self, model_name: str, base_url: str, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.model_name = model_name
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, path: str, payload: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        async with httpx.AsyncClient(headers=self._headers(), timeout=timeout, transport=self._transport) as client:
            try:
                response = await client.post(f"{self._base_url}{path}", json=payload)
            except httpx.TimeoutException as exc:
                # the orchestrator's deadline normally fires first
                raise LLMNetworkError(f"{self.provider.value} request timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise LLMNetworkError(f"Could not reach {self.provider.value}: {exc}") from exc
        _raise_for_status(response, self.provider, self.model_name)
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"{self.provider.value} returned invalid JSON") from exc


class OpenAICompatibleClient(_HttpClient):
    """Chat completions for OpenAI, Groq and OpenRouter."""

    def __init__(self, provider: LLMProvider, model_name: str, api_key: Optional[str],
                 base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if not api_key:
            raise AuthError(f"No API key configured for {provider.value}")
        super().__init__(model_name, base_url or OPENAI_COMPATIBLE_URLS[provider], api_key, transport)
        self.provider = provider

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "messages": prompt.as_messages(),
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_tokens,
        }
        if options.json_mode:
            payload["response_format"] = {"type": "json_object"}
        data = await self._post("/chat/completions", payload, options.timeout)
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError(f"Unexpected {self.provider.value} response shape") from exc
        return RawResponse(text=str(text), model=str(data.get("model") or self.model_name), usage=data.get("usage") or {})


class OllamaClient(_HttpClient):
    provider = LLMProvider.OLLAMA

    def __init__(self, model_name: str, endpoint: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__(model_name, endpoint or OLLAMA_URL, None, transport)

    async def generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        payload: Dict[str, Any] = {
            "model": self.model_name,
            "messages": prompt.as_messages(),
            "stream": False,
            "options": {
                "temperature": options.temperature,
                "top_p": options.top_p,
                "num_predict": options.max_tokens,
            },
        }
        if options.json_mode:
            payload["format"] = "json"
        data = await self._post("/api/chat", payload, options.timeout)
        message = data.get("message") or {}
        usage = {
            "prompt_tokens": data.get("prompt_eval_count"),
            "completion_tokens": data.get("eval_count"),
        }
        return RawResponse(text=str(message.get("content") or ""), model=str(data.get("model") or self.model_name),
                           usage={k: v for k, v in usage.items() if v is not None})


class ClaudeClient(_HttpClient):
    provider = LLMProvider.CLAUDE

    def __init__(self, model_name: str, api_key: Optional[str], base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        if not api_key:
            raise AuthError("No API key configured for claude")
        super().__init__(model_name, base_url or CLAUDE_URL, api_key, transport)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["x-api-key"] = str(self._api_key)
        headers["anthropic-version"] = CLAUDE_API_VERSION
        return headers

    async def generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        payload = {
            "model": self.model_name,
            "system": prompt.system,
            "messages": [{"role": "user", "content": prompt.user}],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        data = await self._post("/messages", payload, options.timeout)
        blocks = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        return RawResponse(text=text, model=str(data.get("model") or self.model_name), usage=data.get("usage") or {})


class LlamaCppClient:
    """GGUF model through llama-cpp-python, run in a worker thread."""

    provider = LLMProvider.LOCAL
    n_ctx = 32768

    # One loaded model per (path, gpu layers); loading takes seconds to minutes.
    # A llama.cpp context serves one completion at a time, guarded by its lock.
    _cache: Dict[Tuple[str, int], Tuple[Any, threading.Lock]] = {}
    _cache_lock = threading.Lock()

    def __init__(self, model_path: Path, device: str = "auto") -> None:
        self.model_path = Path(model_path)
        self.model_name = self.model_path.name
        self._device = device

    def _load(self) -> Tuple[Any, threading.Lock]:
        if Llama is None:
            raise ModelUnavailableError("llama-cpp-python is not available. Install it to use local models.")
        n_gpu_layers = llama_gpu_layers(self._device)
        key = (str(self.model_path), n_gpu_layers)
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                logger.info("Loading local model %s (gpu layers=%d)", self.model_path, n_gpu_layers)
                try:
                    llm = Llama(model_path=str(self.model_path), n_ctx=self.n_ctx, n_gpu_layers=n_gpu_layers,
                                verbose=False)
                except Exception as exc:  # llama.cpp reports load failures as ValueError/RuntimeError
                    raise ModelUnavailableError(f"Could not load local model {self.model_path}: {exc}") from exc
                # evict the previous model only once its running completion is done
                for old_key, (_, old_lock) in list(self._cache.items()):
                    with old_lock:
                        del self._cache[old_key]
                entry = (llm, threading.Lock())
                self._cache[key] = entry
            return entry

    def _complete(self, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        llm, lock = self._load()
        kwargs: Dict[str, Any] = {
            "messages": prompt.as_messages(),
            "temperature": options.temperature,
            "top_p": options.top_p,
            "max_tokens": options.max_tokens,
        }
        if options.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            with lock:
                resp = llm.create_chat_completion(**kwargs)
            content = resp["choices"][0]["message"]["content"]
        except Exception as exc:
            raise LLMCallError(f"Local model failed: {exc}") from exc
        return RawResponse(text=str(content or ""), model=self.model_name, usage=dict(resp.get("usage") or {}))

    async def generate(self, prompt: RenderedPrompt, options: GenerationOptions) -> RawResponse:
        return await asyncio.to_thread(self._complete, prompt, options)


def _find_local_model(models_dir: Path) -> Optional[Path]:
    found: List[Path] = []
    if models_dir.exists():
        for root, _, files in os.walk(models_dir):
            for f in files:
                if f.lower().endswith(".gguf"):
                    found.append(Path(root) / f)
    return sorted(found)[0] if found else None


def resolve_local_model_path(model_name: Optional[str], model_path: Optional[str], settings: Settings) -> Path:
    """Configured GGUF path, else a file named ``model_name`` in the llm models dir, else the first one found."""
    llm_dir = settings.models_dir / "llm"
    if model_path:
        p = Path(os.path.expandvars(str(model_path))).expanduser()
        if p.exists():
            return p
        raise ModelUnavailableError(f"LLM model file not found: {p}")
    if model_name:
        p = llm_dir / model_name
        if p.exists():
            return p
    found = _find_local_model(llm_dir)
    if found is None:
        raise NoModelConfiguredError("No local LLM model configured or found. Configure a GGUF model path in Settings.")
    return found


def build_llm_client(
    provider: Optional[str],
    model_name: Optional[str],
    app_settings: Optional[Dict[str, Any]] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMClient:
    """Create the client for a provider/model selection.

    Raises ``NoModelConfiguredError`` when either part of the selection is missing.
    """
    app_settings = app_settings or {}
    llm_cfg = app_settings.get("llm") or {}
    if not provider or not (model_name or (provider == LLMProvider.LOCAL.value and llm_cfg.get("model_path"))):
        raise NoModelConfiguredError()
    try:
        kind = LLMProvider(provider)
    except ValueError:
        raise NoModelConfiguredError(f"Unknown model provider '{provider}'") from None

    api_keys = llm_cfg.get("api_keys") or {}
    endpoint = llm_cfg.get("endpoint") or None
    if kind == LLMProvider.LOCAL:
        path = resolve_local_model_path(model_name, llm_cfg.get("model_path"), settings or Settings())
        return LlamaCppClient(path, device=str(app_settings.get("llm_device", "auto")))
    if kind == LLMProvider.OLLAMA:
        return OllamaClient(str(model_name), endpoint=endpoint, transport=transport)
    if kind == LLMProvider.CLAUDE:
        return ClaudeClient(str(model_name), api_keys.get("claude"), transport=transport)
    base_url = endpoint if kind == LLMProvider.OPENAI else None
    return OpenAICompatibleClient(kind, str(model_name), api_keys.get(kind.value), base_url=base_url,
                                  transport=transport)
