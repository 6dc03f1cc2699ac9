"""
Session record: the cumulative structured document for one meeting.

Merge rules (never destructive):
- summary / subject_info / reminders / concerns / open_questions are append-only.
- qualification fields start at NOT_IDENTIFIED; a field is overwritten only by an
  explicit, non-empty, non-sentinel value. A field absent from an update means
  "no new information", never "clear".
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

NOT_IDENTIFIED = "Not identified"


class QualificationField(BaseModel):
    name: str
    description: str


class QualificationFramework(BaseModel):
    """Fixed set of named assessment fields plus the wording used in prompts and tool descriptions."""

    name: str
    title: str
    domain: str
    subject: str
    advisor: str
    fields: list[QualificationField]
    # BANT calls don't get strategic questions
    with_questions: bool = True

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]


FAINT = QualificationFramework(
    name="faint",
    title="FAINT (Funds, Authority, Interest, Need, Timing)",
    domain="financial consultation",
    subject="client",
    advisor="financial advisor",
    fields=[
        QualificationField(
            name="funds",
            description="Identified financial capacity, assets, income, or investment capital information",
        ),
        QualificationField(
            name="authority",
            description="Identified decision-making authority for financial decisions",
        ),
        QualificationField(
            name="interest",
            description="Identified level of interest in financial products/services or investment appetite",
        ),
        QualificationField(
            name="need",
            description="Identified financial needs, goals, or problems to solve",
        ),
        QualificationField(
            name="timing",
            description="Identified timeline for financial decisions or implementation",
        ),
    ],
)

BANT = QualificationFramework(
    name="bant",
    title="BANT (Budget, Authority, Need, Timing)",
    domain="sales call",
    subject="prospect",
    advisor="sales representative",
    fields=[
        QualificationField(name="budget", description="Identified budget or spending capacity"),
        QualificationField(name="authority", description="Identified decision maker or buying process"),
        QualificationField(name="need", description="Identified business need or pain point"),
        QualificationField(name="timing", description="Identified purchase or implementation timeline"),
    ],
    with_questions=False,
)

FRAMEWORKS: dict[str, QualificationFramework] = {"faint": FAINT, "bant": BANT}


def get_framework(name: str) -> QualificationFramework:
    framework = FRAMEWORKS.get((name or "").lower())
    if framework is None:
        raise ValueError(f"Unknown qualification framework {name!r}; expected one of {sorted(FRAMEWORKS)}")
    return framework


def is_informative(value: Any) -> bool:
    """True for a non-empty string that is not the sentinel."""
    if not isinstance(value, str):
        return False
    v = value.strip()
    return bool(v) and v.lower() != NOT_IDENTIFIED.lower()


class Concern(BaseModel):
    issue: str
    strategy: str


class OpenQuestion(BaseModel):
    question: str
    rationale: str


class SessionRecord(BaseModel):
    framework: str = "faint"
    summary: list[str] = Field(default_factory=list)
    qualification: dict[str, str] = Field(default_factory=dict)
    subject_info: list[str] = Field(default_factory=list)
    reminders: list[str] = Field(default_factory=list)
    concerns: list[Concern] = Field(default_factory=list)
    open_questions: list[OpenQuestion] = Field(default_factory=list)

    @classmethod
    def empty(cls, framework: QualificationFramework) -> "SessionRecord":
        return cls(
            framework=framework.name,
            qualification={name: NOT_IDENTIFIED for name in framework.field_names},
        )

    def merge_qualification(self, values: dict[str, Any]) -> list[str]:
        """Overwrite known fields with informative values only. Returns names of fields that changed."""
        changed: list[str] = []
        for name, value in values.items():
            if name not in self.qualification or not is_informative(value):
                continue
            value = value.strip()
            if self.qualification[name] != value:
                self.qualification[name] = value
                changed.append(name)
        return changed

    def counts(self) -> dict[str, int]:
        return {
            "summary": len(self.summary),
            "subject_info": len(self.subject_info),
            "reminders": len(self.reminders),
            "concerns": len(self.concerns),
            "open_questions": len(self.open_questions),
            "qualification_identified": sum(1 for v in self.qualification.values() if is_informative(v)),
        }


class FinalReport(BaseModel):
    """Written once per session at meeting stop."""

    session_id: str
    timestamp: str
    session_record: SessionRecord
    speaker_map: list[dict[str, Any]] = Field(default_factory=list)
    full_transcript: list[dict[str, Any]] = Field(default_factory=list)
    # Text of the post-meeting transcription of the recorded audio (recording enabled only)
    batch_transcript: str | None = None
