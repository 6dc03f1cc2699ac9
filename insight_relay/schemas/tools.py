"""
Mutation tools offered to the extraction model.

Each tool is one pydantic model tagged by `name`; ToolCall is the discriminated union.
apply(record) mutates a SessionRecord per the merge rules and returns the tool_result text.
tool_declarations() builds the JSON declarations sent with every model request.
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, StringConstraints, TypeAdapter, ValidationError, model_validator

from insight_relay.schemas.record import (
    NOT_IDENTIFIED,
    Concern,
    OpenQuestion,
    QualificationFramework,
    SessionRecord,
)

NonEmpty = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class ToolArgumentError(ValueError):
    """Tool name unknown for this framework, or arguments failed validation."""


class AppendSummaryPoint(BaseModel):
    name: Literal["append_summary_point"] = "append_summary_point"
    point: NonEmpty

    def apply(self, record: SessionRecord) -> str:
        record.summary.append(self.point.strip())
        return "Summary point added"


class UpdateQualification(BaseModel):
    name: Literal["update_qualification"] = "update_qualification"
    values: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_fields(cls, data: Any) -> Any:
        # The model sends fields flat ({"funds": "...", "timing": "..."}); gather them into values
        if isinstance(data, dict) and "values" not in data:
            values = {k: v for k, v in data.items() if k != "name" and isinstance(v, str)}
            return {"name": data.get("name", "update_qualification"), "values": values}
        return data

    def apply(self, record: SessionRecord) -> str:
        changed = record.merge_qualification(self.values)
        if not changed:
            return "Qualification unchanged (no new information)"
        return "Qualification updated: " + ", ".join(changed)


class AppendSubjectInfo(BaseModel):
    name: Literal["append_subject_info"] = "append_subject_info"
    info: NonEmpty

    def apply(self, record: SessionRecord) -> str:
        record.subject_info.append(self.info.strip())
        return "Information added"


class AppendReminder(BaseModel):
    name: Literal["append_reminder"] = "append_reminder"
    reminder: NonEmpty

    def apply(self, record: SessionRecord) -> str:
        record.reminders.append(self.reminder.strip())
        return "Reminder added"


class AppendConcern(BaseModel):
    name: Literal["append_concern"] = "append_concern"
    issue: NonEmpty
    strategy: NonEmpty

    def apply(self, record: SessionRecord) -> str:
        record.concerns.append(Concern(issue=self.issue.strip(), strategy=self.strategy.strip()))
        return "Concern added"


class AppendQuestion(BaseModel):
    name: Literal["append_question"] = "append_question"
    question: NonEmpty
    rationale: NonEmpty

    def apply(self, record: SessionRecord) -> str:
        record.open_questions.append(
            OpenQuestion(question=self.question.strip(), rationale=self.rationale.strip())
        )
        return "Question added"


ToolCall = Annotated[
    Union[
        AppendSummaryPoint,
        UpdateQualification,
        AppendSubjectInfo,
        AppendReminder,
        AppendConcern,
        AppendQuestion,
    ],
    Field(discriminator="name"),
]

_tool_call_adapter: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)


def tool_names(framework: QualificationFramework) -> list[str]:
    names = [
        "append_summary_point",
        "update_qualification",
        "append_subject_info",
        "append_reminder",
        "append_concern",
    ]
    if framework.with_questions:
        names.append("append_question")
    return names


def parse_tool_call(name: str, arguments: Any, framework: QualificationFramework) -> ToolCall:
    """Validate one tool_use block. Raises ToolArgumentError."""
    if name not in tool_names(framework):
        raise ToolArgumentError(f"Unknown tool: {name}")
    if not isinstance(arguments, dict):
        raise ToolArgumentError(f"Arguments for {name} must be an object")
    try:
        return _tool_call_adapter.validate_python({**arguments, "name": name})
    except ValidationError as e:
        raise ToolArgumentError(f"Invalid arguments for {name}: {e.errors(include_url=False)}") from e


def _string_prop(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def tool_declarations(framework: QualificationFramework) -> list[dict[str, Any]]:
    """Anthropic tool definitions (name, description, input_schema) for this framework."""
    subject = framework.subject
    advisor = framework.advisor
    tools: list[dict[str, Any]] = [
        {
            "name": "append_summary_point",
            "description": (
                f"Add a new bullet point to the {framework.domain} summary when there is significant new "
                "information. Each bullet should be brief. Only add a bullet when there is meaningful new "
                "information."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "point": _string_prop(
                        "A single new bullet point summarizing the latest significant development (no bullet symbol)"
                    )
                },
                "required": ["point"],
            },
        },
        {
            "name": "update_qualification",
            "description": (
                f"Update the {framework.title} assessment. Include only the fields for which this part of "
                "the conversation gives new or changed information; omit every other field."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    f.name: _string_prop(f"{f.description}, or '{NOT_IDENTIFIED}'") for f in framework.fields
                },
            },
        },
        {
            "name": "append_subject_info",
            "description": f"Add information about the {subject} when new personal or background details are discovered.",
            "input_schema": {
                "type": "object",
                "properties": {
                    "info": _string_prop(
                        f"Key information about the {subject}'s situation, family, career, or background"
                    )
                },
                "required": ["info"],
            },
        },
        {
            "name": "append_reminder",
            "description": (
                f"Add a reminder when there is an important new suggestion for the {advisor}. "
                "Each reminder should be brief and actionable."
            ),
            "input_schema": {
                "type": "object",
                "properties": {"reminder": _string_prop(f"A single new reminder for the {advisor} (no bullet symbol)")},
                "required": ["reminder"],
            },
        },
        {
            "name": "append_concern",
            "description": (
                f"Add a new {subject} concern and a strategy to address it when a new worry or hesitation is "
                "identified. Only add when there is a clear new concern."
            ),
            "input_schema": {
                "type": "object",
                "properties": {
                    "issue": _string_prop(f"The new {subject} concern or worry (brief)"),
                    "strategy": _string_prop("Suggested approach to address this concern (brief)"),
                },
                "required": ["issue", "strategy"],
            },
        },
    ]
    if framework.with_questions:
        tools.append(
            {
                "name": "append_question",
                "description": (
                    f"Add a strategic question the {advisor} should ask to fill a clear information gap about "
                    f"the {subject}'s situation, goals, or concerns."
                ),
                "input_schema": {
                    "type": "object",
                    "properties": {
                        "question": _string_prop(f"A specific, actionable question the {advisor} should ask (brief)"),
                        "rationale": _string_prop("What information the answer would reveal (brief)"),
                    },
                    "required": ["question", "rationale"],
                },
            }
        )
    return tools
