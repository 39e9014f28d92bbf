from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field


class Transcript(SQLModel, table=True):
    """Header row for a meeting transcript; fragments hang off the meeting."""

    meeting_id: str = Field(primary_key=True, foreign_key="meeting.id", ondelete="CASCADE")
    state: str = Field(default="recording")  # recording|final
    created_at: datetime = Field(default_factory=datetime.utcnow)
    finalized_at: Optional[datetime] = None


class TranscriptFragment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    meeting_id: str = Field(index=True, foreign_key="meeting.id", ondelete="CASCADE")
    seq: int = Field(index=True)
    start_ms: int
    end_ms: int
    text: str
    confidence: Optional[float] = None
    language: Optional[str] = None
