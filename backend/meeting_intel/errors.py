"""Typed failures raised by the meeting pipeline.

Every error carries a machine-readable ``status`` and a ``retryable`` flag so
the command boundary can turn it into a typed status plus a human-readable
message. Transient failures are never retried inside the pipeline.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PipelineError(Exception):
    status: str = "error"
    retryable: bool = False
    default_message: str = "Meeting pipeline error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "message": self.message, "retryable": self.retryable}


# Model store
class IntegrityError(PipelineError):
    status = "integrity_error"
    default_message = "Downloaded model failed checksum verification"


class NetworkError(PipelineError):
    status = "network_error"
    retryable = True
    default_message = "Network transfer failed"


class DiskError(PipelineError):
    status = "disk_error"
    default_message = "Not enough disk space or the cache directory is not writable"


# Transcription engine
class ModelNotReadyError(PipelineError):
    status = "model_not_ready"
    default_message = "Transcription model is not downloaded yet"


class DecodeError(PipelineError):
    status = "decode_error"
    default_message = "Malformed audio chunk"


class EngineFatalError(PipelineError):
    status = "engine_fatal"
    default_message = "Transcription engine failed"


class CaptureError(PipelineError):
    status = "capture_failed"
    default_message = "Audio input device failed"


# Orchestrator and LLM client
class AlreadyInProgressError(PipelineError):
    status = "already_in_progress"
    default_message = "A generation of this kind is already running for this meeting"


class NoModelConfiguredError(PipelineError):
    status = "no_model_configured"
    default_message = "No model configured. Select a provider and model in settings first."


class GenerationTimeoutError(PipelineError, TimeoutError):
    status = "timeout"
    retryable = True
    default_message = "The operation timed out"


class MalformedResponseError(PipelineError):
    status = "malformed_response"
    default_message = "The model returned an empty or unusable response"


class NoTranscriptError(PipelineError):
    status = "no_transcript"
    default_message = "This meeting has no transcript yet"


class LLMCallError(PipelineError):
    status = "model_call_failed"
    default_message = "The model call failed"


class RateLimitedError(LLMCallError):
    status = "rate_limited"
    retryable = True
    default_message = "The model provider is rate limiting requests"


class AuthError(LLMCallError):
    status = "auth_error"
    default_message = "The model provider rejected the credentials"


class ModelUnavailableError(LLMCallError):
    status = "model_unavailable"
    default_message = "The requested model is not available"


class LLMNetworkError(LLMCallError, NetworkError):
    status = "network_error"
    retryable = True
    default_message = "Could not reach the model provider"


# Preconditions and state
class MeetingNotFoundError(PipelineError):
    status = "meeting_not_found"
    default_message = "Meeting not found"


class SummaryMissingError(PipelineError):
    status = "summary_missing"
    default_message = "There is no summary to regenerate yet"


class InvalidStateError(PipelineError):
    status = "invalid_state"
    default_message = "Operation not allowed in the current state"


class TranscriptFinalizedError(InvalidStateError):
    status = "transcript_finalized"
    default_message = "Transcript is finalized and can no longer be changed"
