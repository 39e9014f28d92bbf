from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


SUMMARY_SECTIONS = ("key_points", "action_items", "decisions", "main_topics")


class Summary(SQLModel, table=True):
    meeting_id: str = Field(primary_key=True, foreign_key="meeting.id", ondelete="CASCADE")
    # Each section is an ordered list of text blocks
    key_points: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    action_items: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    decisions: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    main_topics: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    raw_markdown: Optional[str] = None
    custom_prompt: Optional[str] = None
    language: Optional[str] = None
    model: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
