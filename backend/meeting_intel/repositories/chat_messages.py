from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from sqlalchemy import func
from sqlmodel import Session, select

from meeting_intel.models.chat_message import ChatMessage

logger = logging.getLogger("meeting_intel.repositories")

CHAT_ROLES = ("user", "assistant")


class ChatMessagesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_by_meeting(self, meeting_id: str) -> list[ChatMessage]:
        statement = (
            select(ChatMessage)
            .where(ChatMessage.meeting_id == meeting_id)
            .order_by(ChatMessage.created_at.asc())
        )
        return list(self.session.exec(statement))

    def last_for_meeting(self, meeting_id: str) -> Optional[ChatMessage]:
        statement = (
            select(ChatMessage)
            .where(ChatMessage.meeting_id == meeting_id)
            .order_by(ChatMessage.created_at.desc())
            .limit(1)
        )
        return self.session.exec(statement).first()

    def save(
        self,
        meeting_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        if not meeting_id.strip():
            raise ValueError("meeting_id cannot be empty")
        if role not in CHAT_ROLES:
            raise ValueError("role must be 'user' or 'assistant'")

        # Messages of a meeting are totally ordered by created_at
        created_at = datetime.utcnow()
        last = self.last_for_meeting(meeting_id)
        if last is not None and created_at <= last.created_at:
            created_at = last.created_at + timedelta(microseconds=1)

        message = ChatMessage(
            meeting_id=meeting_id,
            role=role,
            content=content,
            created_at=created_at,
            metadata_json=json.dumps(metadata, ensure_ascii=False) if metadata else None,
        )
        self.session.add(message)
        self.session.commit()
        self.session.refresh(message)
        logger.info("Saved chat message (role: %s) for meeting %s", role, meeting_id)
        return message

    def count_for_meeting(self, meeting_id: str) -> int:
        statement = select(func.count()).select_from(ChatMessage).where(ChatMessage.meeting_id == meeting_id)
        return int(self.session.exec(statement).one())

    def delete_for_meeting(self, meeting_id: str) -> int:
        to_delete = self.list_by_meeting(meeting_id)
        for message in to_delete:
            self.session.delete(message)
        count = len(to_delete)
        self.session.commit()
        logger.info("Deleted %d chat messages for meeting %s", count, meeting_id)
        return count


def message_metadata(message: ChatMessage) -> Dict[str, Any]:
    if not message.metadata_json:
        return {}
    try:
        parsed = json.loads(message.metadata_json)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
