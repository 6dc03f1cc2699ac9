"""Error taxonomy for the meeting pipeline.

Transport errors stay inside the owning meeting; validation errors are
raised to the caller (the HTTP layer maps them to 400/404).
"""
from __future__ import annotations


class RelayError(Exception):
    """Base class for all insight_relay errors."""


class InvalidRole(RelayError, ValueError):
    """Role is not one of RoleA / RoleB / Unassigned."""


class EmptyAudioPacket(RelayError, ValueError):
    """Audio packet carried no bytes."""


class UnknownMeeting(RelayError, LookupError):
    """No pipeline (active or finished) for this meeting id."""


class SessionNotFound(RelayError, LookupError):
    """No persisted session record for this session id."""


class AlreadyFinalized(RelayError):
    """The final report for this session was already written."""


class SessionClosed(RelayError):
    """The session record no longer accepts mutations."""


class TranscriptionError(RelayError):
    """Streaming STT connection failed."""


class ExtractionError(RelayError):
    """Extraction model call failed (transport, HTTP status, or timeout)."""


class ExtractionProtocolError(ExtractionError):
    """Model API rejected the context: tool_use / tool_result pairing is broken."""


class AudioTransportError(RelayError):
    """Media-source (RTMS) signaling connection failed."""
