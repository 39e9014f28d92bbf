from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional
from pydantic import Field
from pydantic_settings import BaseSettings
import os


def _appdata_root() -> Path:
    # %APPDATA% on Windows, XDG data home elsewhere
    raw = os.getenv("APPDATA") or os.getenv("XDG_DATA_HOME")
    if raw:
        return Path(raw) / "MeetingIntel"
    return Path.home() / ".local" / "share" / "MeetingIntel"


class Settings(BaseSettings):
    app_name: str = "Meeting Intel"

    appdata_dir: Path = Field(default_factory=_appdata_root)
    data_dir: Path = Field(default_factory=lambda: _appdata_root() / "data")
    audio_dir: Path = Field(default_factory=lambda: _appdata_root() / "audio")
    models_dir: Path = Field(default_factory=lambda: _appdata_root() / "models")
    logs_dir: Path = Field(default_factory=lambda: _appdata_root() / "logs")

    database_path: Path = Field(default_factory=lambda: _appdata_root() / "data" / "meeting_intel.db")

    # Audio ingestion: 16 kHz mono chunks of this duration
    chunk_seconds: float = 1.0
    # Audio accumulated before one ASR inference pass
    asr_window_seconds: float = 5.0

    # Transcription model artifact (CT2 archive published by the model store)
    asr_model_url: Optional[str] = None
    # Expected sha256 per model id, e.g. MI_ASR_MODEL_SHA256='{"large-v3": "..."}'
    asr_model_sha256: Dict[str, str] = Field(default_factory=dict)

    # Optional prompt template pack (JSON) fetched through the model store
    template_pack_url: Optional[str] = None
    template_pack_sha256: Optional[str] = None
    template_pack_version: str = "1"

    llm_timeout_seconds: float = 300.0
    download_timeout_seconds: float = 600.0

    # Chat context budget (rough tokens, 4 chars each)
    chat_context_tokens: int = 12000
    chat_history_turns: int = 6
    # Transcripts above this size are summarized in chunks by local models
    summary_token_threshold: int = 4000

    class Config:
        env_prefix = "MI_"
        case_sensitive = False

    def ensure_dirs(self) -> None:
        for d in [self.appdata_dir, self.data_dir, self.audio_dir, self.models_dir, self.logs_dir]:
            d.mkdir(parents=True, exist_ok=True)
