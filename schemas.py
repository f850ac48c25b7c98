"""Pydantic schemas for model outputs, stored records, events and API payloads."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "HexadPlayerType",
    "TutorCategory",
    "ContentType",
    "HintQuestionType",
    "TutorAnswer",
    "HintResponse",
    "CategorizedQuestion",
    "SemanticSearchQuery",
    "OllamaRequest",
    "OllamaResponse",
    "ConversationExchange",
    "PlayerTypeProfile",
    "UserSkillLevel",
    "FeedbackRecord",
    "ProactiveFeedback",
    "DocumentRecordSegment",
    "VideoRecordSegment",
    "MediaRecordSegment",
    "SemanticSearchResult",
    "DocumentSource",
    "VideoSource",
    "LectureQuestionResponse",
    "HintMultipleChoiceInput",
    "HintClozeInput",
    "AssociationPairInput",
    "HintAssociationInput",
    "HintGenerationInput",
    "HintGenerationData",
    "ContentProgressedEvent",
    "UserHexadPlayerTypeSetEvent",
    "UserSkillLevelChangedEvent",
    "AskedTutorAQuestionEvent",
    "RequestUserSkillLevelEvent",
    "parse_json_safe",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HexadPlayerType(str, Enum):
    ACHIEVER = "ACHIEVER"
    PLAYER = "PLAYER"
    SOCIALISER = "SOCIALISER"
    FREE_SPIRIT = "FREE_SPIRIT"
    PHILANTHROPIST = "PHILANTHROPIST"
    DISRUPTOR = "DISRUPTOR"


class TutorCategory(str, Enum):
    SYSTEM = "SYSTEM"
    LECTURE = "LECTURE"
    OTHER = "OTHER"
    UNRECOGNIZABLE = "UNRECOGNIZABLE"
    ERROR = "ERROR"


class ContentType(str, Enum):
    ASSIGNMENT = "ASSIGNMENT"
    QUIZ = "QUIZ"
    FLASHCARDS = "FLASHCARDS"
    MEDIA = "MEDIA"


class HintQuestionType(str, Enum):
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    CLOZE = "CLOZE"
    ASSOCIATION = "ASSOCIATION"


# --------- Result shapes requested from the language model ---------
class TutorAnswer(BaseModel):
    answer: str = Field(description="The tutor's reply shown to the student.")


class HintResponse(BaseModel):
    hint: str = Field(description="A hint that guides without revealing the solution.")


class CategorizedQuestion(BaseModel):
    question: str = Field(description="The student's question, unchanged.")
    category: TutorCategory = Field(description="Which kind of question the student asked.")


class SemanticSearchQuery(BaseModel):
    query: str = Field(description="Search query used to retrieve lecture material.")


# --------- Ollama wire format ---------
class OllamaRequest(BaseModel):
    model: str
    prompt: str
    stream: bool = False
    format: Union[Dict[str, Any], str, None] = None


class OllamaResponse(BaseModel):
    model: Optional[str] = None
    created_at: Optional[str] = None
    response: Optional[str] = None
    done: bool = False
    done_reason: Optional[str] = None
    context: Optional[List[int]] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_count: Optional[int] = None
    eval_duration: Optional[int] = None
    error: Optional[str] = None

    model_config = {
        "extra": "allow",
        "protected_namespaces": (),
    }


# --------- Stored records ---------
class ConversationExchange(BaseModel):
    id: Optional[int] = None
    user_id: str
    course_id: str
    user_message: str
    tutor_response: str
    timestamp: datetime = Field(default_factory=_utcnow)


class PlayerTypeProfile(BaseModel):
    user_id: str
    primary_type: HexadPlayerType
    scores: Dict[HexadPlayerType, Optional[float]] = Field(
        default_factory=dict,
        description="Percentage score per Hexad player type; missing types are unknown.",
    )

    def score(self, player_type: HexadPlayerType) -> Optional[float]:
        return self.scores.get(player_type)


class UserSkillLevel(BaseModel):
    user_id: str
    skill_id: str
    value: float


class ProactiveFeedback(BaseModel):
    """Feedback payload pushed to subscribers and returned by history queries."""

    id: int
    assessment_id: str
    feedback_text: str
    correctness: float
    success: bool
    created_at: datetime


class FeedbackRecord(BaseModel):
    id: Optional[int] = None
    user_id: str
    assessment_id: str
    feedback_text: str
    correctness: float = Field(ge=0.0, le=1.0)
    success: bool
    created_at: Optional[datetime] = None

    def to_dto(self) -> ProactiveFeedback:
        if self.id is None or self.created_at is None:
            raise ValueError("Feedback record must be saved before it can be published")
        return ProactiveFeedback(
            id=self.id,
            assessment_id=self.assessment_id,
            feedback_text=self.feedback_text,
            correctness=self.correctness,
            success=self.success,
            created_at=self.created_at,
        )


# --------- Semantic search (upstream provider contract) ---------
class DocumentRecordSegment(BaseModel):
    kind: Literal["document"] = "document"
    media_record_id: str
    page: int
    text: str


class VideoRecordSegment(BaseModel):
    kind: Literal["video"] = "video"
    media_record_id: str
    start_time: int
    transcript: Optional[str] = None


MediaRecordSegment = Annotated[
    Union[DocumentRecordSegment, VideoRecordSegment], Field(discriminator="kind")
]


class SemanticSearchResult(BaseModel):
    score: float = Field(description="Distance score; lower means more relevant.")
    media_record_segment: Optional[MediaRecordSegment] = None


class DocumentSource(BaseModel):
    kind: Literal["document"] = "document"
    media_record_id: str
    page: int


class VideoSource(BaseModel):
    kind: Literal["video"] = "video"
    media_record_id: str
    start_time: int


class LectureQuestionResponse(BaseModel):
    answer: str
    sources: List[Union[DocumentSource, VideoSource]] = Field(default_factory=list)


# --------- Hint generation input ---------
class HintMultipleChoiceInput(BaseModel):
    text: str
    answers: List[str] = Field(default_factory=list)


class HintClozeInput(BaseModel):
    text: str
    blanks: List[str] = Field(default_factory=list)


class AssociationPairInput(BaseModel):
    left: str
    right: str


class HintAssociationInput(BaseModel):
    text: str
    pairs: List[AssociationPairInput] = Field(default_factory=list)


class HintGenerationInput(BaseModel):
    type: HintQuestionType
    multiple_choice: Optional[HintMultipleChoiceInput] = None
    cloze: Optional[HintClozeInput] = None
    association: Optional[HintAssociationInput] = None


class HintGenerationData(BaseModel):
    question_text: str
    options_text: str
    semantic_search_query: str


# --------- Domain events ---------
class ContentProgressedEvent(BaseModel):
    user_id: str
    content_id: str
    content_type: ContentType
    correctness: float = Field(ge=0.0, le=1.0)
    success: bool
    hints_used: int = 0
    time_to_complete: Optional[int] = None


class UserHexadPlayerTypeSetEvent(BaseModel):
    user_id: str
    primary_player_type: HexadPlayerType
    player_type_percentages: Dict[HexadPlayerType, Optional[float]] = Field(default_factory=dict)


class UserSkillLevelChangedEvent(BaseModel):
    user_id: str
    skill_id: str
    new_value: float
    old_value: Optional[float] = None


class AskedTutorAQuestionEvent(BaseModel):
    user_id: str
    course_id: Optional[str] = None
    question: str
    category: TutorCategory
    timestamp: datetime = Field(default_factory=_utcnow)


class RequestUserSkillLevelEvent(BaseModel):
    user_id: str
    timestamp: datetime = Field(default_factory=_utcnow)


_T = TypeVar("_T", bound=BaseModel)


def _extract_json_object(text: str) -> tuple[str, int]:
    """Return the first balanced, decodable JSON object and its end offset."""

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            payload, end = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(payload, dict):
            return text[start:end], end
        start = text.find("{", end)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model``, tolerating leading chatter but not trailing text."""

    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError) as exc:
        first_error: Exception = exc

    try:
        snippet, end = _extract_json_object(text)
    except ValueError:
        raise first_error

    if text[end:].strip():
        raise first_error

    return model.model_validate_json(snippet)
