from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
import copy
import json
import logging

from pydantic import ValidationError
from sqlmodel import Session, select

from meeting_intel.models.setting import Setting
from meeting_intel.models.app_settings import (
    AppSettingsModel,
    migrate_settings_dict,
    deep_merge_dict,
)
from meeting_intel.services.prompt_composer import normalize_language

logger = logging.getLogger("meeting_intel.settings")

DEFAULT_SETTINGS: Dict[str, Any] = AppSettingsModel().to_dict()

APP_SETTINGS_KEY = "app_settings"


def _load_json_or_default(value_json: Optional[str]) -> Dict[str, Any]:
    if not value_json:
        return copy.deepcopy(DEFAULT_SETTINGS)
    try:
        parsed = json.loads(value_json)
        # migrate legacy keys and values (e.g. retired transcription engines)
        migrated = migrate_settings_dict(parsed)
        # deep-merge defaults to ensure new fields exist
        merged = deep_merge_dict(copy.deepcopy(DEFAULT_SETTINGS), migrated)
        return AppSettingsModel(**merged).to_dict()
    except (ValueError, ValidationError) as exc:
        logger.warning("Stored settings are unreadable, using defaults: %s", exc)
        return copy.deepcopy(DEFAULT_SETTINGS)


def get_app_settings(session: Session) -> Dict[str, Any]:
    stmt = select(Setting).where(Setting.key == APP_SETTINGS_KEY)
    row = session.exec(stmt).first()
    return _load_json_or_default(row.value_json if row else None)


def save_app_settings(session: Session, settings_data: Dict[str, Any]) -> Dict[str, Any]:
    current = get_app_settings(session)
    incoming = migrate_settings_dict(settings_data)
    merged = deep_merge_dict(current, incoming)
    normalized = AppSettingsModel(**merged).to_dict()
    payload = json.dumps(normalized, ensure_ascii=False)
    stmt = select(Setting).where(Setting.key == APP_SETTINGS_KEY)
    row = session.exec(stmt).first()
    if row is None:
        row = Setting(key=APP_SETTINGS_KEY, value_json=payload)
    else:
        row.value_json = payload
        row.updated_at = datetime.utcnow()
    session.add(row)
    session.commit()
    return normalized


def get_language(session: Session) -> str:
    return normalize_language(get_app_settings(session).get("language"))


def set_language(session: Session, language: str) -> str:
    saved = save_app_settings(session, {"language": language})
    return str(saved["language"])


def get_llm_selection(session: Session) -> Dict[str, Any]:
    llm = get_app_settings(session).get("llm") or {}
    return dict(llm) if isinstance(llm, dict) else {}
