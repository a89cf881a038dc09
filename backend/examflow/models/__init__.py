"""Database models using Pydantic for validation."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _naive_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ============ ENUMS ============
class QuestionType(str, Enum):
    MCQ = "MCQ"
    NUMERICAL = "Numerical"
    MCMA = "MCMA"


class AnswerStatus(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    PARTIALLY_CORRECT = "partially_correct"
    UNATTEMPTED = "unattempted"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class ResolutionLevel(str, Enum):
    """Specificity level that produced a resolved marking rule, most specific first."""
    TYPE_SUBJECT_SECTION_STANDARD = "type_subject_section_standard"
    TYPE_SUBJECT_SECTION = "type_subject_section"
    TYPE_SUBJECT_STANDARD = "type_subject_standard"
    TYPE_SUBJECT = "type_subject"
    TYPE_SECTION_STANDARD = "type_section_standard"
    TYPE_SECTION = "type_section"
    TYPE_STANDARD = "type_standard"
    TYPE_ONLY = "type_only"
    SUBJECT_SECTION_STANDARD = "subject_section_standard"
    SUBJECT_SECTION = "subject_section"
    SUBJECT_STANDARD = "subject_standard"
    SUBJECT_ONLY = "subject_only"
    SECTION_STANDARD = "section_standard"
    SECTION_ONLY = "section_only"
    STANDARD_ONLY = "standard_only"
    EXAM_WIDE = "exam_wide"
    STREAM_DEFAULT = "stream_default"
    EXAM_FALLBACK = "exam_fallback"
    SYSTEM_DEFAULT = "system_default"


class RuleSource(str, Enum):
    DATABASE = "database"
    STREAM_DEFAULT = "stream_default"
    EXAM_DEFAULT = "exam_default"
    SYSTEM_DEFAULT = "system_default"
    FALLBACK = "fallback"


# ============ EXAM ============
class Question(BaseModel):
    model_config = ConfigDict(extra="ignore")
    question_id: str
    subject: Optional[str] = None
    section: Optional[Any] = None  # 1/2/3 or a label
    user_input_answer: bool = False
    is_multiple_answer: bool = False
    answer: Optional[Any] = None
    multiple_answer: List[Any] = []
    marks: Optional[float] = None

    @property
    def question_type(self) -> QuestionType:
        if self.is_multiple_answer:
            return QuestionType.MCMA
        if self.user_input_answer:
            return QuestionType.NUMERICAL
        return QuestionType.MCQ


class Exam(BaseModel):
    model_config = ConfigDict(extra="ignore")
    exam_id: str
    exam_name: str = ""
    stream: str = ""
    standard: Optional[str] = None
    subjects: List[str] = []
    section: Optional[str] = None
    duration_minutes: Optional[int] = None
    negative_marks: Optional[float] = None
    total_marks: Optional[float] = None
    reattempt: int = 1
    question_ids: List[str] = []

    @field_validator("standard", mode="before")
    @classmethod
    def _standard_as_text(cls, value):
        if value is None:
            return None
        return str(value).strip()

    @field_validator("reattempt", mode="before")
    @classmethod
    def _at_least_one_attempt(cls, value):
        try:
            return max(int(value or 1), 1)
        except (TypeError, ValueError):
            return 1


# ============ MARKING RULES ============
class PartialMarkingRules(BaseModel):
    three_out_of_four: float = 3
    two_out_of_three: float = 2
    one_out_of_two: float = 1


class MarkingRule(BaseModel):
    """Admin-managed marking rule. Read-only to the pipeline."""
    model_config = ConfigDict(extra="ignore")
    rule_id: Optional[str] = None
    stream: str
    standard: Optional[str] = None
    subject: Optional[str] = None
    section: Optional[str] = None
    question_type: Optional[QuestionType] = None
    positive_marks: float = 4
    negative_marks: float = 0
    partial_marking_enabled: bool = False
    partial_marking_rules: Optional[PartialMarkingRules] = None
    priority: int = 0
    is_active: bool = True
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("standard", mode="before")
    @classmethod
    def _standard_as_text(cls, value):
        if value is None or str(value).strip() == "":
            return None
        return str(value).strip()

    @field_validator("subject", "section", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        # "All" means the rule is not restricted on this field
        if isinstance(value, str) and value.strip().lower() in ("", "all"):
            return None
        return value

    @field_validator("question_type", mode="before")
    @classmethod
    def _question_type_any_case(cls, value):
        if isinstance(value, str):
            if not value.strip():
                return None
            for member in QuestionType:
                if member.value.lower() == value.strip().lower():
                    return member
        return value

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at_utc(cls, value):
        return _naive_utc(value)


class ResolvedRule(BaseModel):
    model_config = ConfigDict(frozen=True)
    positive_marks: float
    negative_marks: float
    partial_marking_enabled: bool = False
    partial_marking_rules: Optional[PartialMarkingRules] = None
    question_type: QuestionType
    description: str
    level: ResolutionLevel
    source: RuleSource
    rule_id: Optional[str] = None


# ============ SUBMISSIONS ============
class SubmissionPayload(BaseModel):
    """Raw submission from the exam client."""
    model_config = ConfigDict(extra="ignore")
    exam_id: str
    student_id: str
    answers: Dict[str, Any]
    total_marks: Optional[float] = None
    time_taken: float
    completed_at: datetime
    visited_questions: List[str] = []
    marked_questions: List[str] = []
    warnings: int = 0
    device_info: Dict[str, Any] = {}

    @field_validator("completed_at", mode="after")
    @classmethod
    def _completed_at_utc(cls, value):
        return _naive_utc(value)


class SubmissionContext(BaseModel):
    model_config = ConfigDict(extra="ignore")
    is_auto_submit: bool = False
    time_remaining: Optional[float] = None  # seconds
    exam_ended: bool = False
    is_retry: bool = False
    session_id: Optional[str] = None


# ============ SUBMISSION QUEUE ============
class ProcessingInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")
    attempts: int = 0
    max_attempts: int = 3
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None


class QueueError(BaseModel):
    model_config = ConfigDict(extra="ignore")
    timestamp: datetime
    attempt: int
    message: str
    code: Optional[str] = None
    error_type: Optional[str] = None


class AuditInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")
    queued_at: Optional[datetime] = None
    queued_by: str = "system"
    session_id: Optional[str] = None
    submission_context: Dict[str, Any] = {}
    is_emergency_backup: bool = False
    original_error: Optional[str] = None


class QueueEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)
    submission_id: str
    exam_id: str
    student_id: str
    status: QueueStatus
    priority: int = 1
    sequence: int = 0
    submission_data: Dict[str, Any]
    processing: ProcessingInfo = Field(default_factory=ProcessingInfo)
    errors: List[QueueError] = []
    exam_result_id: Optional[str] = None
    metrics: Dict[str, Any] = {}
    audit: AuditInfo = Field(default_factory=AuditInfo)
    created_at: datetime
    updated_at: Optional[datetime] = None


# ============ RESULTS ============
class QuestionAnalysis(BaseModel):
    model_config = ConfigDict(use_enum_values=True)
    question_id: str
    question_number: int
    subject: str
    section: str
    question_type: QuestionType
    status: AnswerStatus
    marks: float
    user_answer: Optional[Any] = None
    correct_answer: Optional[Any] = None
    positive_marks: float
    negative_marks: float
    rule_description: str
    resolution_level: ResolutionLevel
    rule_source: RuleSource
    evaluation: Dict[str, Any] = {}


class SubjectPerformance(BaseModel):
    subject: str
    total_questions: int = 0
    attempted: int = 0
    correct: int = 0
    incorrect: int = 0
    unanswered: int = 0
    marks: float = 0
    total_marks: float = 0
    accuracy: float = 0
    percentage: float = 0


class ExamStatistics(BaseModel):
    correct_answers: int = 0
    incorrect_answers: int = 0
    partially_correct: int = 0
    unattempted: int = 0
    total_questions_attempted: int = 0
    accuracy: float = 0


class NegativeMarkingInfo(BaseModel):
    positive_marks: float
    negative_marks: float
    rule_source: str  # super_admin_default or exam_specific
    description: str
    level_usage: Dict[str, int] = {}


class ExamResult(BaseModel):
    model_config = ConfigDict(extra="ignore")
    result_id: str
    submission_id: str
    exam_id: str
    student_id: str
    attempt_number: int
    answers: Dict[str, Any]
    visited_questions: List[str] = []
    marked_questions: List[str] = []
    warnings: int = 0
    score: float
    total_marks: float
    time_taken: float
    completed_at: datetime
    question_analysis: List[QuestionAnalysis]
    statistics: ExamStatistics
    subject_performance: List[SubjectPerformance]
    negative_marking_info: NegativeMarkingInfo
    processing_metadata: Dict[str, Any] = {}
    created_at: datetime
