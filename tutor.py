"""Tutor use cases: answering questions, hints and proactive feedback.

Every model call goes through :class:`QueryOrchestrator`, so model failures
show up as the fixed fallback texts below. Template and storage errors are
not caught here.
"""

import logging
import threading
from statistics import mean
from typing import List, Optional, Sequence, Union

import db
from engines.conversation_memory import ConversationMemory
from engines.feedback_hub import FeedbackStreamHub
from engines.personalization import PersonalizationPolicy, gamification_prompt
from engines.query_orchestrator import QueryOrchestrator
from env_validation import get_env_float, get_env_int
from events import EventPublisher, publisher_from_env
from prompts import fill_template, get_template
from schemas import (
    AskedTutorAQuestionEvent,
    CategorizedQuestion,
    ContentProgressedEvent,
    ContentType,
    DocumentRecordSegment,
    DocumentSource,
    FeedbackRecord,
    HintGenerationData,
    HintGenerationInput,
    HintQuestionType,
    HintResponse,
    LectureQuestionResponse,
    RequestUserSkillLevelEvent,
    SemanticSearchQuery,
    SemanticSearchResult,
    TutorAnswer,
    TutorCategory,
    UserHexadPlayerTypeSetEvent,
    UserSkillLevelChangedEvent,
    VideoRecordSegment,
    VideoSource,
)
from semantic_search import ContentProvider, SearchProvider, format_numbered_list, providers_from_env, semantic_search

logger = logging.getLogger(__name__)

# --------- Templates ---------
CATEGORIZE_TEMPLATE = "categorize_message_prompt.txt"
LECTURE_ANSWER_TEMPLATE = "answer_lecture_question_prompt.txt"
FEEDBACK_TEMPLATE = "proactive_feedback_prompt.txt"
HINT_TEMPLATE = "generate_hint.md"
QUESTION_TEMPLATE = "question_prompt_{question_type}.md"
SEARCH_QUERY_ASSOCIATION_TEMPLATE = "generate_semantic_search_query_association.md"
SEARCH_QUERY_CLOZE_TEMPLATE = "generate_semantic_search_query_cloze.md"

# --------- Fixed replies ---------
ERROR_MESSAGE = "Oops, something went wrong! The request could not be processed. Please try again."
UNRECOGNIZABLE_MESSAGE = (
    "Unfortunately, I couldn't understand your question. Please rephrase it and ask again. Thank you :)"
)
OTHER_MESSAGE = (
    "I'm currently unable to answer this type of message. "
    "However, I can still help you with questions about lecture materials or the learning platform :)"
)
SYSTEM_MESSAGE = "At the moment, I can't answer any questions about the learning platform :("
NO_COURSE_MESSAGE = (
    "Something went wrong! If your question is about lecture materials, "
    "please navigate to the course it relates to. Thank you! :)"
)
NO_LECTURE_ANSWER = "No answer was found in the lecture."
NO_DOCUMENT_ANSWER = "No answer was found in the documents of the lecture."

NO_HINT_CONTENT = "No relevant content found in the lecture for this question"
NO_HINT_DOCUMENTS = "No relevant content found in the documents of this lecture for this question"
HINT_ERROR = "An error occurred"

FEEDBACK_CONTENT_TYPES = (ContentType.ASSIGNMENT, ContentType.QUIZ)
DEFAULT_SKILL_LEVEL = 0.5

Source = Union[DocumentSource, VideoSource]


def feedback_error_message(correctness: float) -> str:
    return (
        "Oops, something went wrong generating proactive feedback! Your correctness was "
        f"{correctness:.2f}. Please try again later."
    )


def _source_for(result: SemanticSearchResult) -> Optional[Source]:
    segment = result.media_record_segment
    if isinstance(segment, DocumentRecordSegment):
        return DocumentSource(media_record_id=segment.media_record_id, page=segment.page)
    if isinstance(segment, VideoRecordSegment):
        return VideoSource(media_record_id=segment.media_record_id, start_time=segment.start_time)
    return None


def relevant_documents(
    results: Sequence[SemanticSearchResult],
    threshold: float,
    limit: Optional[int] = None,
) -> List[DocumentRecordSegment]:
    """Document segments scoring at or below ``threshold``, highest score first."""
    kept = sorted(
        (r for r in results if r.score <= threshold and r.media_record_segment is not None),
        key=lambda r: r.score,
        reverse=True,
    )
    documents = [r.media_record_segment for r in kept if isinstance(r.media_record_segment, DocumentRecordSegment)]
    if limit is not None:
        documents = documents[:limit]
    return documents


class TutorService:
    def __init__(
        self,
        orchestrator: Optional[QueryOrchestrator] = None,
        memory: Optional[ConversationMemory] = None,
        policy: Optional[PersonalizationPolicy] = None,
        hub: Optional[FeedbackStreamHub] = None,
        publisher: Optional[EventPublisher] = None,
        content_provider: Optional[ContentProvider] = None,
        search_provider: Optional[SearchProvider] = None,
        profiles=None,
    ) -> None:
        self.orchestrator = orchestrator or QueryOrchestrator()
        self.memory = memory or ConversationMemory()
        self.policy = policy or PersonalizationPolicy.from_env()
        self.hub = hub or FeedbackStreamHub()
        self.publisher = publisher or publisher_from_env()
        if content_provider is None or search_provider is None:
            default_content, default_search = providers_from_env()
            content_provider = content_provider or default_content
            search_provider = search_provider or default_search
        self.content_provider = content_provider
        self.search_provider = search_provider
        self.profiles = profiles or db

        self.tutor_threshold = get_env_float("SEMANTIC_SEARCH_THRESHOLD_TUTOR", 0.4)
        self.hint_threshold = get_env_float("SEMANTIC_SEARCH_THRESHOLD_HINT", 0.4)
        self.top_sources = get_env_int("SEMANTIC_SEARCH_TOP_N_TUTOR", 5)

    # ---- question answering ----
    def categorize(self, question: str) -> CategorizedQuestion:
        return self.orchestrator.ask(
            CategorizedQuestion,
            get_template(CATEGORIZE_TEMPLATE),
            [("question", question)],
            CategorizedQuestion(question="", category=TutorCategory.ERROR),
        )

    def handle_user_question(
        self, question: str, course_id: Optional[str], user_id: str
    ) -> LectureQuestionResponse:
        category = self.categorize(question).category

        self.publisher.notify_tutor_question_asked(
            AskedTutorAQuestionEvent(user_id=user_id, course_id=course_id, question=question, category=category)
        )

        if category is TutorCategory.UNRECOGNIZABLE:
            return LectureQuestionResponse(answer=UNRECOGNIZABLE_MESSAGE)
        if category is TutorCategory.OTHER:
            return LectureQuestionResponse(answer=OTHER_MESSAGE)
        if category is TutorCategory.SYSTEM:
            return LectureQuestionResponse(answer=SYSTEM_MESSAGE)
        if category is TutorCategory.LECTURE:
            return self.answer_lecture_question(question, course_id, user_id)
        return LectureQuestionResponse(answer=ERROR_MESSAGE)

    def answer_lecture_question(
        self, question: str, course_id: Optional[str], user_id: str
    ) -> LectureQuestionResponse:
        if not course_id:
            return LectureQuestionResponse(answer=NO_COURSE_MESSAGE)

        results = semantic_search(question, course_id, self.content_provider, self.search_provider)
        segment_results = [r for r in results if r.media_record_segment is not None]
        if not segment_results:
            return LectureQuestionResponse(answer=NO_LECTURE_ANSWER)

        documents = relevant_documents(segment_results, self.tutor_threshold, self.top_sources)
        if not documents:
            return LectureQuestionResponse(answer=NO_DOCUMENT_ANSWER)

        skill_style = self.policy.skill_hint_style(self.average_skill_level(user_id))
        outcome = self.orchestrator.run(
            TutorAnswer,
            get_template(LECTURE_ANSWER_TEMPLATE),
            [
                ("question", question),
                ("content", format_numbered_list([d.text for d in documents])),
                ("skill", skill_style),
                ("history", self.memory.format_for_prompt(user_id, course_id)),
            ],
            TutorAnswer(answer=ERROR_MESSAGE),
        )
        if not outcome.used_fallback:
            self.memory.append(user_id, course_id, question, outcome.value.answer)

        sources = [s for s in (_source_for(r) for r in segment_results) if s is not None]
        return LectureQuestionResponse(answer=outcome.value.answer, sources=sources)

    def average_skill_level(self, user_id: str) -> float:
        levels = self.profiles.list_skill_levels_for_user(user_id)
        if not levels:
            self.publisher.notify_request_user_skill_level(RequestUserSkillLevelEvent(user_id=user_id))
            return DEFAULT_SKILL_LEVEL
        average = mean(level.value for level in levels)
        logger.info("User %s has %d skill levels with average %.3f", user_id, len(levels), average)
        return average

    def clear_history(self, user_id: str, course_id: str) -> None:
        self.memory.clear(user_id, course_id)

    # ---- hints ----
    def generate_hint(self, hint_input: HintGenerationInput, course_id: str, user_id: str) -> HintResponse:
        data = self.generation_data(hint_input)
        question_prompt = fill_template(
            get_template(QUESTION_TEMPLATE.format(question_type=hint_input.type.value)),
            [("questionText", data.question_text), ("options", data.options_text)],
        )

        results = semantic_search(data.semantic_search_query, course_id, self.content_provider, self.search_provider)
        if not results:
            return HintResponse(hint=NO_HINT_CONTENT)

        documents = relevant_documents(results, self.hint_threshold)
        if not documents:
            return HintResponse(hint=NO_HINT_DOCUMENTS)

        return self.orchestrator.ask(
            HintResponse,
            get_template(HINT_TEMPLATE),
            [
                ("questionPrompt", question_prompt),
                ("content", format_numbered_list([d.text for d in documents])),
                ("gamificationPrompt", gamification_prompt(self.profiles.get_user_player_type(user_id))),
            ],
            HintResponse(hint=HINT_ERROR),
        )

    def generation_data(self, hint_input: HintGenerationInput) -> HintGenerationData:
        if hint_input.type is HintQuestionType.MULTIPLE_CHOICE:
            mc = hint_input.multiple_choice
            if mc is None or not mc.text.strip() or not mc.answers:
                raise ValueError("Multiple choice input is invalid or empty")
            return HintGenerationData(
                question_text=mc.text,
                options_text=format_numbered_list(mc.answers),
                semantic_search_query=mc.text,
            )

        if hint_input.type is HintQuestionType.CLOZE:
            cloze = hint_input.cloze
            if cloze is None or not cloze.text.strip() or not cloze.blanks:
                raise ValueError("Cloze input is invalid or empty")
            options = format_numbered_list(cloze.blanks)
            query = self._search_query(
                SEARCH_QUERY_CLOZE_TEMPLATE, [("clozeText", cloze.text), ("answers", options)], cloze.text
            )
            return HintGenerationData(question_text=cloze.text, options_text=options, semantic_search_query=query)

        if hint_input.type is HintQuestionType.ASSOCIATION:
            assoc = hint_input.association
            if assoc is None or not assoc.text.strip() or not assoc.pairs:
                raise ValueError("Association input is invalid or empty")
            options = format_numbered_list([f"Left: {p.left} <-> Right: {p.right}" for p in assoc.pairs])
            query = self._search_query(SEARCH_QUERY_ASSOCIATION_TEMPLATE, [("pairs", options)], assoc.text)
            return HintGenerationData(question_text=assoc.text, options_text=options, semantic_search_query=query)

        raise ValueError(f"Unsupported hint question type: {hint_input.type}")

    def _search_query(self, template_name: str, args, question_text: str) -> str:
        generated = self.orchestrator.ask(
            SemanticSearchQuery,
            get_template(template_name),
            args,
            SemanticSearchQuery(query=question_text),
        )
        logger.info("Generated search query %r", generated.query)
        return generated.query

    # ---- proactive feedback ----
    def handle_content_progressed(self, event: ContentProgressedEvent) -> Optional[str]:
        logger.info(
            "Content progressed for user %s, content %s, type %s",
            event.user_id, event.content_id, event.content_type.value,
        )
        if event.content_type not in FEEDBACK_CONTENT_TYPES:
            return None
        return self.generate_proactive_feedback(event)

    def generate_proactive_feedback(self, event: ContentProgressedEvent) -> str:
        """Generate, save and push feedback for one graded attempt.

        Model failures yield the apology text; template and storage errors
        propagate to the caller.
        """
        profile = self.profiles.get_user_player_type(event.user_id)
        feedback = self.orchestrator.ask(
            TutorAnswer,
            get_template(FEEDBACK_TEMPLATE),
            [
                ("correctness", f"{event.correctness:.2f}"),
                ("performance", self.policy.performance_context(event.correctness, event.success)),
                ("individualizedPrompt", self.policy.individualized_guidance(profile, event.correctness)),
            ],
            TutorAnswer(answer=feedback_error_message(event.correctness)),
        )
        self.hub.record(
            FeedbackRecord(
                user_id=event.user_id,
                assessment_id=event.content_id,
                feedback_text=feedback.answer,
                correctness=event.correctness,
                success=event.success,
            )
        )
        logger.info("Generated and saved feedback for user %s", event.user_id)
        return feedback.answer

    # ---- profile ingestion ----
    def save_player_type(self, event: UserHexadPlayerTypeSetEvent) -> None:
        logger.info("Player type for user %s set to %s", event.user_id, event.primary_player_type.value)
        percentages = {t: v for t, v in event.player_type_percentages.items() if v is not None}
        self.profiles.save_user_player_type(event.user_id, event.primary_player_type, percentages)

    def save_skill_level(self, event: UserSkillLevelChangedEvent) -> None:
        self.profiles.save_user_skill_level(event.user_id, event.skill_id, event.new_value)


_default: Optional[TutorService] = None
_default_lock = threading.Lock()


def get_tutor() -> TutorService:
    global _default
    with _default_lock:
        if _default is None:
            _default = TutorService()
        return _default


def set_tutor(service: Optional[TutorService]) -> None:
    global _default
    with _default_lock:
        _default = service


def handle_user_question(question: str, course_id: Optional[str], user_id: str) -> LectureQuestionResponse:
    return get_tutor().handle_user_question(question, course_id, user_id)


def generate_hint(hint_input: HintGenerationInput, course_id: str, user_id: str) -> HintResponse:
    return get_tutor().generate_hint(hint_input, course_id, user_id)


def generate_proactive_feedback(event: ContentProgressedEvent) -> str:
    return get_tutor().generate_proactive_feedback(event)
