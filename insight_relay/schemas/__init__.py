"""Pydantic schemas: session record, tool calls, HTTP API."""
from insight_relay.schemas.api import (
    SpeakerAssignRequest,
    SpeakerAssignResponse,
    StatusResponse,
    UrlValidationResponse,
    WebhookEvent,
)
from insight_relay.schemas.record import (
    NOT_IDENTIFIED,
    Concern,
    FinalReport,
    OpenQuestion,
    QualificationFramework,
    SessionRecord,
    get_framework,
)
from insight_relay.schemas.tools import ToolArgumentError, ToolCall, parse_tool_call, tool_declarations

__all__ = [
    "NOT_IDENTIFIED",
    "Concern",
    "FinalReport",
    "OpenQuestion",
    "QualificationFramework",
    "SessionRecord",
    "get_framework",
    "SpeakerAssignRequest",
    "SpeakerAssignResponse",
    "StatusResponse",
    "UrlValidationResponse",
    "WebhookEvent",
    "ToolArgumentError",
    "ToolCall",
    "parse_tool_call",
    "tool_declarations",
]
