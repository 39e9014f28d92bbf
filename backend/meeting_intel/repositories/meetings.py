from __future__ import annotations

import logging
from typing import Optional
from sqlmodel import Session, select

from meeting_intel.errors import MeetingNotFoundError
from meeting_intel.models.meeting import Meeting

logger = logging.getLogger("meeting_intel.repositories")


class MeetingsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, meeting: Meeting) -> Meeting:
        self.session.add(meeting)
        self.session.commit()
        self.session.refresh(meeting)
        return meeting

    def get(self, meeting_id: str) -> Optional[Meeting]:
        return self.session.get(Meeting, meeting_id)

    def require(self, meeting_id: str) -> Meeting:
        meeting = self.get(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting not found: {meeting_id}")
        return meeting

    def list(self, limit: int = 50, offset: int = 0) -> list[Meeting]:
        statement = select(Meeting).order_by(Meeting.created_at.desc()).limit(limit).offset(offset)
        return list(self.session.exec(statement))

    def update(self, meeting: Meeting) -> Meeting:
        self.session.add(meeting)
        self.session.commit()
        self.session.refresh(meeting)
        return meeting

    def delete(self, meeting_id: str) -> bool:
        """Delete a meeting; transcript, summary and chat rows go with it via FK cascade."""
        meeting = self.get(meeting_id)
        if meeting is None:
            return False
        self.session.delete(meeting)
        self.session.commit()
        # Drop cached child rows that the database removed behind the ORM's back
        self.session.expire_all()
        logger.info("Deleted meeting %s", meeting_id)
        return True
