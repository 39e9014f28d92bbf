"""
Recording session lifecycle: audio chunks in, ordered transcript fragments out.

A session pushes chunks to the transcription engine as they arrive and writes
every recognized fragment to the database as soon as it is emitted, so an
abrupt termination loses at most the fragment being written.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from sqlmodel import Session

from meeting_intel.config import Settings
from meeting_intel.errors import AlreadyInProgressError, InvalidStateError, PipelineError
from meeting_intel.models.transcript import Transcript, TranscriptFragment
from meeting_intel.repositories.meetings import MeetingsRepository
from meeting_intel.repositories.transcripts import TranscriptsRepository
from meeting_intel.services.asr_engine import ASRConfig, RecognizedFragment, TranscriptionEngine, TranscriptionSession
from meeting_intel.services.audio_capture import MicrophoneCapture
from meeting_intel.services.audio_chunks import AudioChunk, iter_wav_chunks

logger = logging.getLogger("meeting_intel.ingestion")

SessionFactory = Callable[[], Session]

_END = object()


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    ABORTED = "aborted"


class RecordingSession:
    """One meeting's recording, from ``start()`` to ``finalize()`` or ``abort()``."""

    def __init__(
        self,
        meeting_id: str,
        engine: TranscriptionEngine,
        session_factory: SessionFactory,
        on_terminated: Optional[Callable[["RecordingSession"], None]] = None,
    ) -> None:
        self.meeting_id = meeting_id
        self._engine = engine
        self._session_factory = session_factory
        self._on_terminated = on_terminated
        self.state = SessionState.IDLE
        self.paused = False
        self.fragments: List[TranscriptFragment] = []
        self.error: Optional[PipelineError] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._asr: Optional[TranscriptionSession] = None
        self._next_seq = 0

    def _transition(self, new_state: SessionState) -> None:
        logger.info("Recording %s: %s -> %s", self.meeting_id, self.state.value, new_state.value)
        self.state = new_state

    def _require_recording(self, operation: str) -> None:
        if self.state != SessionState.RECORDING:
            raise InvalidStateError(f"Cannot {operation} while {self.state.value}")

    @property
    def dropped_chunks(self) -> int:
        return self._asr.dropped_chunks if self._asr is not None else 0

    async def start(self) -> None:
        if self.state != SessionState.IDLE:
            raise InvalidStateError(f"Cannot start while {self.state.value}")
        with self._session_factory() as s:
            repo = TranscriptsRepository(s)
            repo.start(self.meeting_id)
            self._next_seq = repo.next_seq(self.meeting_id)
        self._asr = self._engine.open_session()
        self._queue = asyncio.Queue()
        self.paused = False
        self.error = None
        self._transition(SessionState.RECORDING)
        self._consumer = asyncio.create_task(self._consume())

    def push(self, chunk: AudioChunk) -> None:
        """Queue one chunk for recognition; ignored while paused."""
        self._require_recording("push audio")
        if self.paused:
            return
        assert self._queue is not None
        self._queue.put_nowait(chunk)

    def pause(self) -> None:
        self._require_recording("pause")
        if not self.paused:
            self.paused = True
            logger.info("Recording %s paused", self.meeting_id)

    def resume(self) -> None:
        self._require_recording("resume")
        if self.paused:
            self.paused = False
            logger.info("Recording %s resumed", self.meeting_id)

    async def finalize(self) -> Transcript:
        """Flush buffered audio, wait for the last fragment and seal the transcript."""
        self._require_recording("finalize")
        self._transition(SessionState.FINALIZING)
        assert self._queue is not None and self._consumer is not None
        self._queue.put_nowait(_END)
        await asyncio.wait({self._consumer})
        if self.state != SessionState.FINALIZING:
            # aborted while flushing
            raise self.error or InvalidStateError("Recording was aborted while finalizing")
        with self._session_factory() as s:
            transcript = TranscriptsRepository(s).finalize(self.meeting_id)
        self._transition(SessionState.IDLE)
        self._terminated()
        return transcript

    async def abort(self, error: Optional[PipelineError] = None) -> None:
        """Stop recording; every fragment already written is kept."""
        if self.state not in (SessionState.RECORDING, SessionState.FINALIZING):
            raise InvalidStateError(f"Cannot abort while {self.state.value}")
        if error is not None:
            self.error = error
        self._transition(SessionState.ABORTED)
        if self._asr is not None:
            self._asr.stop()
        consumer = self._consumer
        if consumer is not None and not consumer.done() and consumer is not asyncio.current_task():
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        if self._asr is not None:
            self._asr.close()
        self._transition(SessionState.IDLE)
        self._terminated()

    def _terminated(self) -> None:
        if self._on_terminated is not None:
            self._on_terminated(self)

    async def _chunks(self) -> AsyncIterator[AudioChunk]:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    def _persist(self, recognized: RecognizedFragment) -> TranscriptFragment:
        fragment = TranscriptFragment(
            meeting_id=self.meeting_id,
            seq=self._next_seq,
            start_ms=recognized.start_ms,
            end_ms=recognized.end_ms,
            text=recognized.text,
            confidence=recognized.confidence,
            language=recognized.language,
        )
        with self._session_factory() as s:
            fragment = TranscriptsRepository(s).append_fragment(fragment)
        self._next_seq += 1
        self.fragments.append(fragment)
        return fragment

    async def _consume(self) -> None:
        assert self._asr is not None
        try:
            async for recognized in self._asr.transcribe_stream(self._chunks()):
                self._persist(recognized)
        except PipelineError as exc:
            logger.error("Recording %s failed: %s", self.meeting_id, exc.message)
            await self.abort(exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Recording %s failed unexpectedly", self.meeting_id)
            await self.abort(PipelineError(str(exc)))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "meeting_id": self.meeting_id,
            "state": self.state.value,
            "paused": self.paused,
            "fragments": len(self.fragments),
            "dropped_chunks": self.dropped_chunks,
            "backend": self._asr.backend_name if self._asr else None,
            "device": self._asr.device if self._asr else None,
            "error": self.error.to_dict() if self.error else None,
        }


class RecordingManager:
    """Owns every active recording; at most one per meeting."""

    def __init__(
        self,
        engine: TranscriptionEngine,
        session_factory: SessionFactory,
        settings: Optional[Settings] = None,
        capture_factory: Optional[Callable[..., MicrophoneCapture]] = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._settings = settings or Settings()
        self._capture_factory = capture_factory or MicrophoneCapture
        self._sessions: Dict[str, RecordingSession] = {}
        self._captures: Dict[str, MicrophoneCapture] = {}
        self._last_error: Dict[str, Dict[str, Any]] = {}
        self._background: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

    def get(self, meeting_id: str) -> Optional[RecordingSession]:
        return self._sessions.get(meeting_id)

    def _require(self, meeting_id: str) -> RecordingSession:
        session = self._sessions.get(meeting_id)
        if session is None:
            raise InvalidStateError(f"Meeting {meeting_id} has no active recording")
        return session

    def active(self) -> List[Dict[str, Any]]:
        return [s.snapshot() for s in list(self._sessions.values())]

    def state_for(self, meeting_id: str) -> Dict[str, Any]:
        session = self._sessions.get(meeting_id)
        if session is not None:
            return session.snapshot()
        return {"meeting_id": meeting_id, "state": SessionState.IDLE.value, "paused": False,
                "error": self._last_error.get(meeting_id)}

    def _release(self, session: RecordingSession) -> None:
        with self._lock:
            if self._sessions.get(session.meeting_id) is session:
                del self._sessions[session.meeting_id]
        capture = self._captures.pop(session.meeting_id, None)
        if capture is not None and capture.running:
            capture.stop()
        if session.error is not None:
            self._last_error[session.meeting_id] = session.error.to_dict()
        else:
            self._last_error.pop(session.meeting_id, None)

    async def _open(self, meeting_id: str, config: ASRConfig) -> RecordingSession:
        with self._session_factory() as s:
            MeetingsRepository(s).require(meeting_id)
        with self._lock:
            if meeting_id in self._sessions:
                raise AlreadyInProgressError(f"Meeting {meeting_id} is already recording")
            session = RecordingSession(meeting_id, self._engine, self._session_factory, on_terminated=self._release)
            self._sessions[meeting_id] = session
        try:
            await self._engine.initialize(config)
            await session.start()
        except Exception:
            with self._lock:
                self._sessions.pop(meeting_id, None)
            raise
        return session

    async def start(self, meeting_id: str, config: ASRConfig, device_id: Optional[str] = None) -> RecordingSession:
        """Start recording a meeting from a microphone."""
        session = await self._open(meeting_id, config)
        loop = asyncio.get_running_loop()

        def _on_chunk(chunk: AudioChunk) -> None:
            if session.state == SessionState.RECORDING:
                session.push(chunk)

        def _on_error(exc: Exception) -> None:
            if session.state == SessionState.RECORDING:
                task = loop.create_task(session.abort(exc if isinstance(exc, PipelineError) else PipelineError(str(exc))))
                self._background.add(task)
                task.add_done_callback(self._background.discard)

        capture = self._capture_factory(
            on_chunk=_on_chunk,
            loop=loop,
            device_id=device_id,
            chunk_seconds=self._settings.chunk_seconds,
            on_error=_on_error,
        )
        self._captures[meeting_id] = capture
        try:
            capture.start()
        except PipelineError as exc:
            await session.abort(exc)
            raise
        return session

    def pause(self, meeting_id: str) -> RecordingSession:
        session = self._require(meeting_id)
        session.pause()
        return session

    def resume(self, meeting_id: str) -> RecordingSession:
        session = self._require(meeting_id)
        session.resume()
        return session

    async def stop(self, meeting_id: str) -> Transcript:
        session = self._require(meeting_id)
        capture = self._captures.pop(meeting_id, None)
        if capture is not None:
            capture.stop()
            # let the tail chunk scheduled by stop() reach the session
            await asyncio.sleep(0)
        return await session.finalize()

    async def abort(self, meeting_id: str) -> None:
        session = self._require(meeting_id)
        await session.abort()

    async def ingest_file(self, meeting_id: str, wav_path: Path, config: ASRConfig) -> Transcript:
        """Run a recorded WAV file through a session and finalize it."""
        if not Path(wav_path).exists():
            raise InvalidStateError(f"Audio file not found: {wav_path}")
        session = await self._open(meeting_id, config)
        try:
            for chunk in iter_wav_chunks(Path(wav_path), self._settings.chunk_seconds):
                if session.state != SessionState.RECORDING:
                    break
                session.push(chunk)
                await asyncio.sleep(0)
        except PipelineError as exc:
            if session.state == SessionState.RECORDING:
                await session.abort(exc)
            raise
        if session.state != SessionState.RECORDING:
            raise session.error or InvalidStateError("Recording ended before the file was processed")
        return await session.finalize()

    async def shutdown(self) -> None:
        for meeting_id in list(self._sessions):
            session = self._sessions.get(meeting_id)
            if session is not None and session.state == SessionState.RECORDING:
                await session.abort()
