from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlalchemy import func
from sqlmodel import Session, select

from meeting_intel.errors import TranscriptFinalizedError
from meeting_intel.models.transcript import Transcript, TranscriptFragment


class TranscriptsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, meeting_id: str) -> Optional[Transcript]:
        return self.session.get(Transcript, meeting_id)

    def start(self, meeting_id: str) -> Transcript:
        """Open (or reopen) the transcript of a meeting for appending."""
        transcript = self.get(meeting_id)
        if transcript is None:
            transcript = Transcript(meeting_id=meeting_id, state="recording")
            self.session.add(transcript)
            self.session.commit()
            self.session.refresh(transcript)
        elif transcript.state == "final":
            raise TranscriptFinalizedError(f"Transcript of meeting {meeting_id} is already finalized")
        return transcript

    def append_fragment(self, fragment: TranscriptFragment) -> TranscriptFragment:
        """Persist one fragment in its own commit so a crash loses at most the unflushed one."""
        transcript = self.get(fragment.meeting_id)
        if transcript is not None and transcript.state == "final":
            raise TranscriptFinalizedError(f"Transcript of meeting {fragment.meeting_id} is already finalized")
        self.session.add(fragment)
        self.session.commit()
        self.session.refresh(fragment)
        return fragment

    def next_seq(self, meeting_id: str) -> int:
        statement = select(func.max(TranscriptFragment.seq)).where(TranscriptFragment.meeting_id == meeting_id)
        current = self.session.exec(statement).one()
        return 0 if current is None else int(current) + 1

    def finalize(self, meeting_id: str) -> Transcript:
        transcript = self.get(meeting_id)
        if transcript is None:
            transcript = Transcript(meeting_id=meeting_id)
        if transcript.state != "final":
            transcript.state = "final"
            transcript.finalized_at = datetime.utcnow()
            self.session.add(transcript)
            self.session.commit()
            self.session.refresh(transcript)
        return transcript

    def list_by_meeting(self, meeting_id: str) -> list[TranscriptFragment]:
        statement = (
            select(TranscriptFragment)
            .where(TranscriptFragment.meeting_id == meeting_id)
            .order_by(TranscriptFragment.seq.asc())
        )
        return list(self.session.exec(statement))

    def count_for_meeting(self, meeting_id: str) -> int:
        statement = select(func.count()).select_from(TranscriptFragment).where(
            TranscriptFragment.meeting_id == meeting_id
        )
        return int(self.session.exec(statement).one())

    def transcript_text(self, meeting_id: str) -> str:
        return "\n".join(f.text.strip() for f in self.list_by_meeting(meeting_id) if f.text.strip())
