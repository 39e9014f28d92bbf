from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from sqlmodel import Session, select

from meeting_intel.models.summary import SUMMARY_SECTIONS, Summary

logger = logging.getLogger("meeting_intel.repositories")


class SummariesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def replace_for_meeting(self, summary: Summary) -> Summary:
        """Replace the meeting's summary wholesale in a single transaction.

        Readers see either the previous summary or the new one; on failure the
        transaction is rolled back and the previous row is left untouched.
        """
        try:
            existing = self.get_by_meeting(summary.meeting_id)
            if existing is None:
                target = summary
            else:
                target = existing
                for section in SUMMARY_SECTIONS:
                    setattr(target, section, list(getattr(summary, section) or []))
                target.raw_markdown = summary.raw_markdown
                target.custom_prompt = summary.custom_prompt
                target.language = summary.language
                target.model = summary.model
                target.created_at = datetime.utcnow()
            self.session.add(target)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(target)
        logger.info("Stored summary for meeting %s", summary.meeting_id)
        return target

    def get_by_meeting(self, meeting_id: str) -> Optional[Summary]:
        statement = select(Summary).where(Summary.meeting_id == meeting_id)
        return self.session.exec(statement).first()
