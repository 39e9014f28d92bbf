"""User-facing pipeline status shown next to a meeting."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from meeting_intel.services.prompt_composer import normalize_language


class PipelineStatus(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    SUMMARIZING = "summarizing"
    ANSWERING = "answering"
    ERROR = "error"


_DISPLAY_TEXT = {
    "en": {
        PipelineStatus.IDLE: "Ready",
        PipelineStatus.RECORDING: "Recording…",
        PipelineStatus.PROCESSING: "Processing transcript…",
        PipelineStatus.SUMMARIZING: "Generating summary…",
        PipelineStatus.ANSWERING: "Thinking…",
        PipelineStatus.ERROR: "Something went wrong",
    },
    "pt-BR": {
        PipelineStatus.IDLE: "Pronto",
        PipelineStatus.RECORDING: "Gravando…",
        PipelineStatus.PROCESSING: "Processando transcrição…",
        PipelineStatus.SUMMARIZING: "Gerando resumo…",
        PipelineStatus.ANSWERING: "Pensando…",
        PipelineStatus.ERROR: "Algo deu errado",
    },
}


def display_text(status: PipelineStatus, language: Optional[str]) -> str:
    return _DISPLAY_TEXT[normalize_language(language)][PipelineStatus(status)]


def derive_status(recording: Optional[Dict[str, Any]], generation: Optional[Dict[str, Any]]) -> PipelineStatus:
    """Collapse recording and generation state into the single status shown to the user."""
    recording = recording or {}
    generation = generation or {}
    state = recording.get("state")
    if state == "recording":
        return PipelineStatus.RECORDING
    if state in ("finalizing", "aborted"):
        return PipelineStatus.PROCESSING
    running = generation.get("running") or {}
    if "summary" in running:
        return PipelineStatus.SUMMARIZING
    if "chat" in running:
        return PipelineStatus.ANSWERING
    if recording.get("error"):
        return PipelineStatus.ERROR
    latest = generation.get("latest") or {}
    if latest:
        newest = max(latest.values(), key=lambda j: j.get("created_at") or "")
        if newest.get("status") == "failed":
            return PipelineStatus.ERROR
    return PipelineStatus.IDLE
