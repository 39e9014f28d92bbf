"""Prompt composition for meeting summaries and transcript-grounded chat."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger("meeting_intel.prompt_composer")


SUPPORTED_LANGUAGES = ("en", "pt-BR")
DEFAULT_LANGUAGE = "pt-BR"

TRUNCATION_MARKER = "\n[... middle of the meeting omitted ...]\n"


@dataclass(frozen=True)
class PromptTemplate:
    system: str
    user: str


@dataclass(frozen=True)
class RenderedPrompt:
    system: str
    user: str
    language: str
    template_key: str
    truncated: bool = False

    def as_messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


_SUMMARY_JSON_SHAPE = (
    '{"key_points": [...], "action_items": [...], "decisions": [...], "main_topics": [...]}'
)

BUILTIN_TEMPLATES: Dict[str, Dict[str, PromptTemplate]] = {
    "en": {
        "summary": PromptTemplate(
            system=(
                "You write structured meeting summaries. Return ONLY strict JSON shaped like "
                f"{_SUMMARY_JSON_SHAPE}. Every value is an array of short, self-contained text blocks. "
                "Use an empty array when a section has nothing to report. Write in English."
            ),
            user=(
                "Summarize the meeting below.\n"
                "key_points: the most important facts and conclusions.\n"
                "action_items: concrete tasks, with owner and due date when stated.\n"
                "decisions: what was agreed.\n"
                "main_topics: the subjects discussed.\n\n"
                "<transcript>\n{transcript}\n</transcript>{custom_prompt}"
            ),
        ),
        "summary_chunk": PromptTemplate(
            system=(
                "You condense a portion of a meeting transcript into concise notes. Keep names, "
                "numbers, dates, decisions and tasks. Write in English."
            ),
            user="Condense this transcript portion into notes:\n\n<transcript_chunk>\n{transcript}\n</transcript_chunk>",
        ),
        "summary_combine": PromptTemplate(
            system=(
                "You merge partial meeting notes into one coherent, deduplicated set of notes in "
                "chronological order. Write in English."
            ),
            user="Merge these partial notes:\n\n{transcript}",
        ),
        "chat": PromptTemplate(
            system=(
                "You are an AI assistant helping users understand their meeting notes. Today's date "
                "is {today}. You have access to the meeting transcript, summary and previous "
                "conversation history. Answer questions accurately based on the context provided. "
                "If information is not in the context, say so clearly. Be concise but comprehensive "
                "in your responses. Respond in English."
            ),
            user=(
                "# Meeting Title\n{meeting_title}\n\n"
                "# Transcript\n{transcript}\n\n"
                "{summary}"
                "{history}"
                "# Current Question\n{question}"
            ),
        ),
    },
    "pt-BR": {
        "summary": PromptTemplate(
            system=(
                "Você escreve resumos estruturados de reuniões. Retorne SOMENTE JSON estrito no formato "
                f"{_SUMMARY_JSON_SHAPE}. Cada valor é uma lista de blocos de texto curtos e "
                "independentes. Use uma lista vazia quando uma seção não tiver conteúdo. "
                "Escreva em português do Brasil."
            ),
            user=(
                "Resuma a reunião abaixo.\n"
                "key_points: os fatos e conclusões mais importantes.\n"
                "action_items: tarefas concretas, com responsável e prazo quando mencionados.\n"
                "decisions: o que foi decidido.\n"
                "main_topics: os assuntos discutidos.\n\n"
                "<transcript>\n{transcript}\n</transcript>{custom_prompt}"
            ),
        ),
        "summary_chunk": PromptTemplate(
            system=(
                "Você condensa uma parte da transcrição de uma reunião em notas concisas. Preserve "
                "nomes, números, datas, decisões e tarefas. Escreva em português do Brasil."
            ),
            user="Condense esta parte da transcrição em notas:\n\n<transcript_chunk>\n{transcript}\n</transcript_chunk>",
        ),
        "summary_combine": PromptTemplate(
            system=(
                "Você combina notas parciais de uma reunião em um único conjunto coerente, sem "
                "repetições e em ordem cronológica. Escreva em português do Brasil."
            ),
            user="Combine estas notas parciais:\n\n{transcript}",
        ),
        "chat": PromptTemplate(
            system=(
                "Você é um assistente de IA ajudando usuários a entender suas anotações de reunião. "
                "A data de hoje é {today}. Você tem acesso à transcrição da reunião, ao resumo e ao "
                "histórico de conversas anteriores. Responda perguntas com precisão baseado no "
                "contexto fornecido. Se a informação não estiver no contexto, deixe isso claro. "
                "Seja conciso mas abrangente em suas respostas. Responda em português do Brasil."
            ),
            user=(
                "# Título da Reunião\n{meeting_title}\n\n"
                "# Transcrição\n{transcript}\n\n"
                "{summary}"
                "{history}"
                "# Pergunta Atual\n{question}"
            ),
        ),
    },
}

_SECTION_LABELS = {
    "en": {"summary": "# Summary", "history": "# Previous Conversation", "user": "User", "assistant": "Assistant",
           "context": "User Provided Context"},
    "pt-BR": {"summary": "# Resumo", "history": "# Conversa Anterior", "user": "Usuário", "assistant": "Assistente",
              "context": "Contexto fornecido pelo usuário"},
}


def normalize_language(tag: Optional[str]) -> str:
    """Map a locale tag onto a supported template language.

    Unknown or empty tags fall back to ``DEFAULT_LANGUAGE``; this never raises.
    """
    if not isinstance(tag, str):
        return DEFAULT_LANGUAGE
    primary = re.split(r"[-_]", tag.strip().lower(), maxsplit=1)[0]
    if primary == "en":
        return "en"
    if primary == "pt":
        return "pt-BR"
    return DEFAULT_LANGUAGE


def rough_token_count(text: str) -> int:
    # ~4 characters per token
    return int(math.ceil(len(text or "") / 4.0))


def truncate_middle(text: str, max_tokens: int) -> tuple[str, bool]:
    """Cut ``text`` down to ``max_tokens`` keeping its opening and closing parts."""
    if rough_token_count(text) <= max_tokens:
        return text, False
    max_chars = max(0, max_tokens * 4 - len(TRUNCATION_MARKER))
    if max_chars <= 0:
        return "", True
    head_len = max_chars // 2
    tail_len = max_chars - head_len
    head = text[:head_len]
    tail = text[len(text) - tail_len:] if tail_len else ""
    # Avoid cutting words in half
    cut = head.rfind(" ")
    if cut > head_len // 2:
        head = head[:cut]
    cut = tail.find(" ")
    if 0 <= cut < tail_len // 2:
        tail = tail[cut + 1:]
    return head + TRUNCATION_MARKER + tail, True


def chunk_text(text: str, chunk_tokens: int, overlap_tokens: int = 0) -> List[str]:
    """Split text into overlapping chunks on whitespace boundaries."""
    if not text or chunk_tokens <= 0:
        return []
    chunk_chars = chunk_tokens * 4
    overlap_chars = overlap_tokens * 4
    if len(text) <= chunk_chars:
        return [text]
    step = max(1, chunk_chars - overlap_chars)
    chunks: List[str] = []
    pos = 0
    n = len(text)
    while pos < n:
        end = min(pos + chunk_chars, n)
        if end < n:
            boundary = end
            while boundary > pos and not text[boundary].isspace():
                boundary -= 1
            if boundary > pos:
                end = boundary
        chunks.append(text[pos:end])
        if end >= n:
            break
        next_pos = end - overlap_chars
        pos = next_pos if next_pos > pos else pos + step
    logger.debug("Split %d chars into %d chunks", n, len(chunks))
    return chunks


_THINK_RE = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", re.DOTALL)
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n(.*)\n?```$", re.DOTALL)


def clean_llm_output(text: str) -> str:
    """Drop reasoning blocks and a surrounding code fence from model output."""
    cleaned = _THINK_RE.sub("", text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def load_template_pack(path: Path) -> Dict[str, Dict[str, PromptTemplate]]:
    """Read a JSON template pack published by the model store.

    Layout: ``{"version": "...", "templates": {"en": {"chat": {"system": "...", "user": "..."}}}}``.
    Unknown languages are ignored; missing keys keep their built-in text.
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    pack: Dict[str, Dict[str, PromptTemplate]] = {}
    for lang, entries in (raw.get("templates") or {}).items():
        norm = normalize_language(lang)
        if norm != lang and lang not in SUPPORTED_LANGUAGES:
            continue
        for key, entry in (entries or {}).items():
            if isinstance(entry, dict) and "system" in entry and "user" in entry:
                pack.setdefault(norm, {})[key] = PromptTemplate(system=str(entry["system"]), user=str(entry["user"]))
    logger.info("Loaded template pack %s (version %s)", path, raw.get("version"))
    return pack


def select_template(
    template_key: str,
    language: str,
    templates: Optional[Mapping[str, Mapping[str, PromptTemplate]]] = None,
) -> PromptTemplate:
    lang = normalize_language(language)
    if templates and template_key in templates.get(lang, {}):
        return templates[lang][template_key]
    builtin = BUILTIN_TEMPLATES[lang]
    if template_key not in builtin:
        raise KeyError(f"Unknown prompt template: {template_key}")
    return builtin[template_key]


def _role_and_content(message: Any) -> tuple[str, str]:
    if isinstance(message, Mapping):
        return str(message.get("role", "")), str(message.get("content", ""))
    return str(getattr(message, "role", "")), str(getattr(message, "content", ""))


def _render_history(messages: Sequence[Any], lang: str) -> str:
    if not messages:
        return ""
    labels = _SECTION_LABELS[lang]
    lines = [labels["history"]]
    for message in messages:
        role, content = _role_and_content(message)
        label = labels["user"] if role == "user" else labels["assistant"]
        lines.append(f"{label}: {content}\n")
    return "\n".join(lines) + "\n"


def compose(
    template_key: str,
    language: Optional[str],
    transcript: str,
    prior_messages: Optional[Sequence[Any]] = None,
    *,
    question: Optional[str] = None,
    meeting_title: Optional[str] = None,
    summary_text: Optional[str] = None,
    custom_prompt: Optional[str] = None,
    budget_tokens: Optional[int] = None,
    history_turns: Optional[int] = None,
    today: Optional[date] = None,
    templates: Optional[Mapping[str, Mapping[str, PromptTemplate]]] = None,
) -> RenderedPrompt:
    """Build the LLM request for ``template_key`` in ``language``.

    For chat the context window is spent in priority order: system
    instructions, then the most recent ``history_turns`` turns, then the
    transcript. A transcript that does not fit is cut from the middle so the
    opening and closing of the meeting stay visible.
    """
    lang = normalize_language(language)
    template = select_template(template_key, lang, templates)
    labels = _SECTION_LABELS[lang]
    system = template.system.replace("{today}", (today or date.today()).isoformat())

    if template_key != "chat":
        context = ""
        if custom_prompt and custom_prompt.strip():
            context = f"\n\n{labels['context']}:\n<user_context>\n{custom_prompt.strip()}\n</user_context>"
        user = template.user.format(transcript=transcript, custom_prompt=context)
        return RenderedPrompt(system=system, user=user, language=lang, template_key=template_key)

    history: List[Any] = list(prior_messages or [])
    if history_turns is not None:
        history = history[-2 * history_turns:] if history_turns > 0 else []

    fields = {
        "meeting_title": meeting_title or "",
        "question": question or "",
        "transcript": "",
        "summary": "",
        "history": "",
    }
    if budget_tokens is None:
        fields["history"] = _render_history(history, lang)
        if summary_text:
            fields["summary"] = f"{labels['summary']}\n{summary_text}\n\n"
        fields["transcript"] = transcript
        return RenderedPrompt(system=system, user=template.user.format(**fields), language=lang,
                              template_key=template_key)

    remaining = budget_tokens - rough_token_count(system) - rough_token_count(template.user.format(**fields))

    # Recent turns outrank the transcript; drop the oldest until they fit
    while history and rough_token_count(_render_history(history, lang)) > max(0, remaining):
        history = history[1:]
    fields["history"] = _render_history(history, lang)
    remaining -= rough_token_count(fields["history"])

    if summary_text:
        block = f"{labels['summary']}\n{summary_text}\n\n"
        if rough_token_count(block) <= max(0, remaining) // 4:
            fields["summary"] = block
            remaining -= rough_token_count(block)

    excerpt, truncated = truncate_middle(transcript, max(0, remaining))
    fields["transcript"] = excerpt
    if truncated:
        logger.info("Chat transcript truncated to ~%d tokens", max(0, remaining))
    return RenderedPrompt(
        system=system,
        user=template.user.format(**fields),
        language=lang,
        template_key=template_key,
        truncated=truncated,
    )
