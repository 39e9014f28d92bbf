from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


class Meeting(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str = Field(default="Untitled Meeting")
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    language: Optional[str] = None
