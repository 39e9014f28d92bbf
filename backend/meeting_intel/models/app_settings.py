from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Literal
from pydantic import BaseModel, Field

from meeting_intel.services.asr_engine import ACTIVE_ENGINE, resolve_engine_name
from meeting_intel.services.prompt_composer import DEFAULT_LANGUAGE, normalize_language

logger = logging.getLogger("meeting_intel.settings")

LLM_PROVIDERS = {"local", "ollama", "openai", "groq", "openrouter", "claude"}


class ASRSettings(BaseModel):
    """Settings for local speech recognition."""

    # Only one engine is built in; older values are migrated on load
    engine: Literal["faster-whisper"] = Field(default=ACTIVE_ENGINE)

    # faster-whisper model id; also the model store version of the artifact
    model_id: Literal[
        "tiny",
        "base",
        "small",
        "medium",
        "large-v3",
        "distil-large-v3",
    ] = Field(default="large-v3")

    mode: Literal["fast", "accurate"] = Field(default="fast")
    device: Literal["auto", "cpu", "cuda"] = Field(default="auto")

    # Fixed recognition language (e.g. "pt", "en"); None -> auto-detect
    language: Optional[str] = Field(default=None)
    vad: bool = Field(default=True)


class LLMSettings(BaseModel):
    """Model selection for summaries and chat."""

    provider: Optional[str] = Field(default=None)
    model_name: Optional[str] = Field(default=None)
    # GGUF file for the local provider
    model_path: Optional[str] = Field(default=None)
    # Base URL override (Ollama or an OpenAI-compatible server)
    endpoint: Optional[str] = Field(default=None)
    api_keys: Dict[str, str] = Field(default_factory=dict)


class AppSettingsModel(BaseModel):
    language: str = Field(default=DEFAULT_LANGUAGE)
    asr: ASRSettings = Field(default_factory=ASRSettings)
    llm_device: Literal["auto", "cpu", "cuda"] = Field(default="auto")
    llm: LLMSettings = Field(default_factory=LLMSettings)

    def to_dict(self) -> Dict[str, Any]:
        return self.dict()


def deep_merge_dict(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = deep_merge_dict(dict(dst.get(k, {})), v)
        else:
            dst[k] = v
    return dst


def _clean_str(value: Any) -> Optional[str]:
    return value.strip() if isinstance(value, str) and value.strip() else None


def migrate_settings_dict(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Migrate an arbitrary (possibly legacy or partial) settings payload.

    Only keys present in ``raw`` are emitted so the result can be used as a
    patch. Legacy transcription engines map onto the active engine, invalid
    devices fall back to ``auto`` and unrelated keys are dropped.
    """
    if not isinstance(raw, dict):
        return {}
    result: Dict[str, Any] = {}

    if "language" in raw:
        result["language"] = normalize_language(raw.get("language"))

    asr_in = raw.get("asr")
    # Older payloads stored the engine as a flat "transcription_provider"
    legacy_provider = raw.get("transcription_provider") or raw.get("provider")
    if isinstance(asr_in, dict) or legacy_provider:
        asr_in = dict(asr_in or {})
        normalized_asr: Dict[str, Any] = {}
        engine_raw = asr_in.get("engine", legacy_provider)
        if engine_raw is not None:
            normalized_asr["engine"] = resolve_engine_name(str(engine_raw))
        if "model_id" in asr_in:
            model_id = str(asr_in.get("model_id") or "")
            if model_id in {"large-v1", "large-v2"}:
                logger.warning("ASR model %s is no longer offered, using large-v3", model_id)
                model_id = "large-v3"
            normalized_asr["model_id"] = model_id or "large-v3"
        if "mode" in asr_in:
            mode = str(asr_in.get("mode")).lower()
            normalized_asr["mode"] = mode if mode in {"fast", "accurate"} else "fast"
        if "device" in asr_in:
            dev = str(asr_in.get("device", "auto")).lower()
            normalized_asr["device"] = dev if dev in {"auto", "cpu", "cuda"} else "auto"
        if "language" in asr_in:
            normalized_asr["language"] = _clean_str(asr_in.get("language"))
        if "vad" in asr_in:
            normalized_asr["vad"] = bool(asr_in.get("vad"))
        result["asr"] = normalized_asr

    if "llm_device" in raw:
        llm_dev = str(raw.get("llm_device") or "auto").lower()
        result["llm_device"] = llm_dev if llm_dev in {"auto", "cpu", "cuda"} else "auto"

    llm_in = raw.get("llm")
    if isinstance(llm_in, dict):
        normalized_llm: Dict[str, Any] = {}
        if "provider" in llm_in:
            provider = _clean_str(llm_in.get("provider"))
            provider = provider.lower() if provider else None
            if provider is not None and provider not in LLM_PROVIDERS:
                logger.warning("Unknown LLM provider %r dropped from settings", provider)
                provider = None
            normalized_llm["provider"] = provider
        for key in ("model_name", "model_path", "endpoint"):
            if key in llm_in:
                normalized_llm[key] = _clean_str(llm_in.get(key))
        if isinstance(llm_in.get("api_keys"), dict):
            normalized_llm["api_keys"] = {
                str(k).lower(): str(v) for k, v in llm_in["api_keys"].items() if _clean_str(v)
            }
        result["llm"] = normalized_llm

    return result
