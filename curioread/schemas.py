# schemas.py
from typing import List, Optional, Literal
from pydantic import BaseModel, Field

from curioread.status import StudyStatus


class CamelModel(BaseModel):
    class Config:
        populate_by_name = True


# -----------------------------------------------------------------------------
# HTTP payloads
# -----------------------------------------------------------------------------
class SubmitIn(CamelModel):
    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    url: str = Field(min_length=1, max_length=2048)


class SubmitOut(CamelModel):
    session_token: str = Field(alias="sessionToken")
    status: str
    worker_invoked: bool = Field(alias="workerInvoked")


class RetryIn(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    session_token: str = Field(alias="sessionToken", min_length=1)


class SessionStatusOut(CamelModel):
    status: str
    quiz_id: Optional[int] = Field(default=None, alias="quizId")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")


class QuestionOption(BaseModel):
    text: str
    rationale: Optional[str] = None


class QuestionOut(CamelModel):
    id: int
    category: str
    prompt: str
    options: List[QuestionOption]
    answer_index: int = Field(alias="answerIndex")
    source_anchor: Optional[str] = Field(default=None, alias="sourceAnchor")
    remediation: Optional[str] = None


class CuriosityOut(CamelModel):
    status: str
    questions: Optional[List[QuestionOut]] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class StudyStatusIn(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    session_token: str = Field(alias="sessionToken", min_length=1)
    study_status: StudyStatus = Field(alias="studyStatus")


class StudyStatusSession(CamelModel):
    session_token: str = Field(alias="sessionToken")
    study_status: str = Field(alias="studyStatus")


class StudyStatusOut(BaseModel):
    success: bool
    session: StudyStatusSession


class BookmarkOut(CamelModel):
    session_token: str = Field(alias="sessionToken")
    article_title: Optional[str] = Field(default=None, alias="articleTitle")
    article_url: str = Field(alias="articleUrl")
    status: str
    study_status: str = Field(alias="studyStatus")
    timestamp: int
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    error_step: Optional[str] = Field(default=None, alias="errorStep")


class BookmarksOut(BaseModel):
    queue: List[BookmarkOut]
    waiting: List[BookmarkOut]
    archived: List[BookmarkOut]


class QueueCountOut(CamelModel):
    count: int
    first_session_token: Optional[str] = Field(default=None, alias="firstSessionToken")


# -----------------------------------------------------------------------------
# LLM payloads (validated before anything is persisted)
# -----------------------------------------------------------------------------
Archetype = Literal["CONCEPTUAL", "ARGUMENTATIVE", "EMPIRICAL", "PROCEDURAL", "NARRATIVE"]


class Label(BaseModel):
    label: str


class ArchetypeLabel(BaseModel):
    label: Archetype


class DomainInfo(BaseModel):
    primary: str
    secondary: str = ""
    specific_topic: str = ""


class Thesis(BaseModel):
    content: str


class SourceLocation(BaseModel):
    section_index: int = 0
    anchor_text: str = ""


class Hook(BaseModel):
    focal_point: Literal["CAUSALITY", "OUTCOME", "METHOD", "ENTITY"]
    dynamic_type: Literal["DISRUPTION", "VINDICATION", "SALIENCE", "VOID"]
    reader_prediction: str
    text_reality: str
    relevant_context: str = ""
    source_location: SourceLocation = Field(default_factory=SourceLocation)
    cognitive_impact_score: float = 0


class Pedagogy(BaseModel):
    hooks: List[Hook]


class ArticleAnalysis(BaseModel):
    archetype: ArchetypeLabel
    logical_schema: Optional[Label] = None
    structural_skeleton: List[str] = Field(default_factory=list)
    domain: DomainInfo
    complexity: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    core_thesis: Thesis
    key_concepts: List[str] = Field(default_factory=list)
    language: str = "en"
    reading_time_minutes: int = 0
    pedagogy: Pedagogy


class CardOption(BaseModel):
    id: str = ""
    text: str
    is_correct: bool = False
    feedback: str = ""


class Remediation(BaseModel):
    key_quote: str = ""
    body: str = ""
    go_read_anchor: str = ""


class QuizCard(BaseModel):
    format: Literal["SCENARIO", "CONFIRMATIVE", "MCQ"]
    strategy_used: str = ""
    question: str
    options: List[CardOption] = Field(min_length=2)
    remediation: Remediation = Field(default_factory=Remediation)


class CuriosityResponse(BaseModel):
    rationale: str = ""
    quiz_cards: List[QuizCard] = Field(min_length=1)


class HookOption(BaseModel):
    text: str
    rationale: Optional[str] = None


class HookQuestion(BaseModel):
    id: int = 0
    type: str = "hook"
    question: str
    options: List[HookOption] = Field(min_length=2)
    remediation: str = ""
    answer_index: int = 0


class HookResponse(BaseModel):
    rationale: str = ""
    hooks: List[HookQuestion] = Field(min_length=1)
