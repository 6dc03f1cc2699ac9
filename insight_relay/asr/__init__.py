"""ASR: streaming speech-to-text sessions (one per meeting)."""
from .base import (
    FinalTurn,
    PartialTurn,
    SessionBegan,
    SessionState,
    SessionTerminated,
    TranscriptEvent,
    TranscriptionFailed,
    TranscriptionSession,
)
from .assemblyai import AssemblyAIStreamingSession, create_transcription_session
from .batch import AssemblyAIBatchTranscriber, BatchTranscriberBase, NoOpBatchTranscriber, create_batch_transcriber

__all__ = [
    "FinalTurn",
    "PartialTurn",
    "SessionBegan",
    "SessionState",
    "SessionTerminated",
    "TranscriptEvent",
    "TranscriptionFailed",
    "TranscriptionSession",
    "AssemblyAIStreamingSession",
    "create_transcription_session",
    "AssemblyAIBatchTranscriber",
    "BatchTranscriberBase",
    "NoOpBatchTranscriber",
    "create_batch_transcriber",
]
