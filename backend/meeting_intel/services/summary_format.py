"""Turning model output into the four summary sections and back into text."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional

from meeting_intel.models.summary import SUMMARY_SECTIONS, Summary
from meeting_intel.services.prompt_composer import normalize_language

# Heading words accepted for each section when the model answers in markdown
_HEADING_ALIASES = {
    "key_points": ("key points", "key_points", "highlights", "pontos-chave", "pontos chave", "principais pontos"),
    "action_items": ("action items", "action_items", "next steps", "itens de ação", "itens de acao",
                     "próximos passos", "tarefas"),
    "decisions": ("decisions", "decisões", "decisoes"),
    "main_topics": ("main topics", "main_topics", "topics", "principais tópicos", "tópicos principais",
                    "tópicos", "topicos"),
}

_SECTION_TITLES = {
    "en": {"key_points": "Key Points", "action_items": "Action Items", "decisions": "Decisions",
           "main_topics": "Main Topics"},
    "pt-BR": {"key_points": "Pontos-chave", "action_items": "Itens de Ação", "decisions": "Decisões",
              "main_topics": "Principais Tópicos"},
}

_HEADING_RE = re.compile(r"^\s*(?:#{1,6}\s*(.+?)|\*\*([^*]+?)\*\*)\s*:?\s*$")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")


def _blocks(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("text") or item.get("content") or " ".join(str(v) for v in item.values())
        text = str(item).strip()
        if text:
            out.append(text)
    return out


def _parse_json_lenient(text: str) -> Any:
    t = (text or "").strip()
    try:
        return json.loads(t)
    except ValueError:
        pass
    # Try to extract the first {...} block
    start = t.find("{")
    end = t.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            return json.loads(t[start:end + 1])
        except ValueError:
            pass
    return None


def _from_markdown(text: str) -> Optional[Dict[str, List[str]]]:
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in text.splitlines():
        if not line.strip():
            continue
        heading = _HEADING_RE.match(line)
        if heading and not _BULLET_RE.match(line):
            title = (heading.group(1) or heading.group(2)).strip().rstrip(":").strip().lower()
            current = next((key for key, aliases in _HEADING_ALIASES.items() if title in aliases), None)
            if current is not None:
                sections.setdefault(current, [])
            continue
        if current is not None:
            block = _BULLET_RE.sub("", line).strip()
            if block:
                sections[current].append(block)
    if not sections:
        return None
    return {key: sections.get(key, []) for key in SUMMARY_SECTIONS}


def parse_summary_response(text: str) -> Optional[Dict[str, List[str]]]:
    """Extract the four sections from model output.

    Accepts strict JSON, JSON embedded in prose, or markdown with section
    headings. Returns None when no section can be recognized.
    """
    data = _parse_json_lenient(text)
    if isinstance(data, dict):
        lowered = {str(k).strip().lower().replace(" ", "_"): v for k, v in data.items()}
        if any(key in lowered for key in SUMMARY_SECTIONS):
            return {key: _blocks(lowered.get(key)) for key in SUMMARY_SECTIONS}
    return _from_markdown(text or "")


def render_markdown(sections: Dict[str, List[str]], language: Optional[str]) -> str:
    titles = _SECTION_TITLES[normalize_language(language)]
    parts: List[str] = []
    for key in SUMMARY_SECTIONS:
        blocks = sections.get(key) or []
        if not blocks:
            continue
        parts.append(f"## {titles[key]}")
        parts.extend(f"- {b}" for b in blocks)
        parts.append("")
    return "\n".join(parts).strip()


def summary_as_text(summary: Optional[Summary]) -> Optional[str]:
    """Plain-text rendering of a stored summary for use as chat context."""
    if summary is None:
        return None
    sections = {key: list(getattr(summary, key) or []) for key in SUMMARY_SECTIONS}
    if any(sections.values()):
        return render_markdown(sections, summary.language)
    return (summary.raw_markdown or "").strip() or None
