"""Transcript handling: finalized turn buffer; optional per-meeting transcript file."""
from .buffer import TranscriptBuffer, TranscriptTurn
from .writer import TranscriptWriterBase, create_transcript_writer

__all__ = ["TranscriptBuffer", "TranscriptTurn", "TranscriptWriterBase", "create_transcript_writer"]
