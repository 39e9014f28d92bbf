from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlalchemy import Index
from sqlmodel import SQLModel, Field

from meeting_intel.models.meeting import new_id


class ChatMessage(SQLModel, table=True):
    __table_args__ = (Index("idx_chatmessage_meeting_created", "meeting_id", "created_at"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    meeting_id: str = Field(foreign_key="meeting.id", ondelete="CASCADE")
    role: str  # user|assistant
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    metadata_json: Optional[str] = None
