import sqlite3

import pytest

import db
import tutor
from engines import personalization
from engines.conversation_memory import ConversationMemory
from engines.errors import ProviderError, TemplateError, TransportError
from engines.feedback_hub import FeedbackStreamHub
from engines.personalization import PersonalizationPolicy
from engines.query_orchestrator import QueryOrchestrator
from engines.schema_registry import SchemaRegistry
from schemas import (
    AssociationPairInput,
    ContentProgressedEvent,
    ContentType,
    DocumentRecordSegment,
    DocumentSource,
    HexadPlayerType,
    HintAssociationInput,
    HintClozeInput,
    HintGenerationInput,
    HintMultipleChoiceInput,
    HintQuestionType,
    SemanticSearchResult,
    TutorCategory,
    UserHexadPlayerTypeSetEvent,
    UserSkillLevelChangedEvent,
    VideoRecordSegment,
    VideoSource,
)

USER = "student-1"
COURSE = "course-1"


def _doc(score, text, page=1, media="doc-1"):
    return SemanticSearchResult(
        score=score, media_record_segment=DocumentRecordSegment(media_record_id=media, page=page, text=text)
    )


def _video(score, start_time=5, media="video-1"):
    return SemanticSearchResult(
        score=score, media_record_segment=VideoRecordSegment(media_record_id=media, start_time=start_time)
    )


class _RecordingPublisher:
    def __init__(self):
        self.questions = []
        self.skill_requests = []

    def notify_tutor_question_asked(self, event):
        self.questions.append(event)

    def notify_request_user_skill_level(self, event):
        self.skill_requests.append(event)


class _FakeProviders:
    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.queries = []

    def content_ids_for_course(self, course_id):
        if self.error is not None:
            raise self.error
        return ["content-a", "content-b"]

    def semantic_search(self, query, content_ids):
        self.queries.append((query, list(content_ids)))
        return list(self.results)


@pytest.fixture
def make_tutor(temp_db, scripted_gateway):
    def factory(*replies, results=None, provider_error=None):
        gateway = scripted_gateway(*replies)
        providers = _FakeProviders(results, provider_error)
        service = tutor.TutorService(
            orchestrator=QueryOrchestrator(gateway=gateway, registry=SchemaRegistry()),
            memory=ConversationMemory(store=db, max_history_pairs=3, max_age_minutes=30),
            policy=PersonalizationPolicy(),
            hub=FeedbackStreamHub(store=db),
            publisher=_RecordingPublisher(),
            content_provider=providers,
            search_provider=providers,
            profiles=db,
        )
        service.gateway = gateway
        service.providers = providers
        return service

    return factory


def _category(category, question="q"):
    return {"question": question, "category": category}


# ---------- question answering ----------
@pytest.mark.parametrize(
    "category, expected",
    [
        ("UNRECOGNIZABLE", tutor.UNRECOGNIZABLE_MESSAGE),
        ("OTHER", tutor.OTHER_MESSAGE),
        ("SYSTEM", tutor.SYSTEM_MESSAGE),
    ],
)
def test_non_lecture_categories_get_fixed_answers(make_tutor, category, expected):
    service = make_tutor(_category(category))

    response = service.handle_user_question("Where do I upload my assignment?", COURSE, USER)

    assert response.answer == expected
    assert response.sources == []
    assert service.publisher.questions[0].category is TutorCategory(category)
    assert service.providers.queries == []


def test_categorization_failure_returns_error_message(make_tutor):
    service = make_tutor(TransportError("down"))

    response = service.handle_user_question("anything", COURSE, USER)

    assert response.answer == tutor.ERROR_MESSAGE
    assert service.publisher.questions[0].category is TutorCategory.ERROR


def test_lecture_question_without_course(make_tutor):
    service = make_tutor(_category("LECTURE"))
    response = service.handle_user_question("What is supervised learning?", None, USER)
    assert response.answer == tutor.NO_COURSE_MESSAGE


def test_lecture_question_without_segments(make_tutor):
    service = make_tutor(_category("LECTURE"), results=[SemanticSearchResult(score=0.1)])
    response = service.handle_user_question("q", COURSE, USER)
    assert response.answer == tutor.NO_LECTURE_ANSWER


def test_provider_failure_reads_as_nothing_found(make_tutor):
    service = make_tutor(_category("LECTURE"), provider_error=ProviderError("content service down"))
    response = service.handle_user_question("q", COURSE, USER)
    assert response.answer == tutor.NO_LECTURE_ANSWER


def test_lecture_question_with_only_videos(make_tutor):
    service = make_tutor(_category("LECTURE"), results=[_video(0.15), _video(0.28, start_time=9)])
    response = service.handle_user_question("q", COURSE, USER)
    assert response.answer == tutor.NO_DOCUMENT_ANSWER
    assert response.sources == []


def test_lecture_question_is_answered_from_documents(make_tutor):
    results = [
        _doc(0.15, "Supervised learning uses labels.", page=2),
        _doc(0.28, "Unsupervised learning finds structure.", page=3),
        _doc(0.9, "Completely unrelated.", page=7),
        _video(0.2, start_time=30),
    ]
    service = make_tutor(
        _category("LECTURE"),
        {"answer": "Supervised learning needs labelled data."},
        results=results,
    )

    response = service.handle_user_question("Supervised vs unsupervised?", COURSE, USER)

    assert response.answer == "Supervised learning needs labelled data."
    assert response.sources == [
        DocumentSource(media_record_id="doc-1", page=2),
        DocumentSource(media_record_id="doc-1", page=3),
        DocumentSource(media_record_id="doc-1", page=7),
        VideoSource(media_record_id="video-1", start_time=30),
    ]

    prompt = service.gateway.prompts[1]
    assert "[1] Unsupervised learning finds structure.\n\n[2] Supervised learning uses labels." in prompt
    assert "Completely unrelated." not in prompt
    assert personalization.SKILL_HINT_STYLES[1] in prompt
    assert "Supervised vs unsupervised?" in prompt

    assert service.providers.queries == [("Supervised vs unsupervised?", ["content-a", "content-b"])]
    assert [e.user_id for e in service.publisher.skill_requests] == [USER]

    history = db.list_conversation_history(USER, COURSE)
    assert [(e.user_message, e.tutor_response) for e in history] == [
        ("Supervised vs unsupervised?", "Supervised learning needs labelled data.")
    ]


def test_follow_up_question_sees_history(make_tutor):
    results = [_doc(0.1, "Lecture text.")]
    service = make_tutor(
        _category("LECTURE"),
        {"answer": "First answer."},
        _category("LECTURE"),
        {"answer": "Second answer."},
        results=results,
    )

    service.handle_user_question("First question?", COURSE, USER)
    service.handle_user_question("Second question?", COURSE, USER)

    follow_up_prompt = service.gateway.prompts[3]
    assert "Previous Conversation History" in follow_up_prompt
    assert "Student: First question?\nTutor: First answer." in follow_up_prompt


def test_top_sources_limit_documents_in_prompt(make_tutor, monkeypatch):
    monkeypatch.setenv("SEMANTIC_SEARCH_TOP_N_TUTOR", "2")
    results = [_doc(0.1 * n, f"text {n}", page=n) for n in range(1, 5)]
    service = make_tutor(_category("LECTURE"), {"answer": "ok"}, results=results)

    service.handle_user_question("q", COURSE, USER)

    prompt = service.gateway.prompts[1]
    assert "[1] text 4" in prompt
    assert "[2] text 3" in prompt
    assert "text 2" not in prompt


def test_known_skill_levels_pick_matching_style(make_tutor):
    db.save_user_skill_level(USER, "skill-a", 0.8)
    db.save_user_skill_level(USER, "skill-b", 0.9)
    service = make_tutor(_category("LECTURE"), {"answer": "ok"}, results=[_doc(0.1, "t")])

    service.handle_user_question("q", COURSE, USER)

    assert personalization.SKILL_HINT_STYLES[2] in service.gateway.prompts[1]
    assert service.publisher.skill_requests == []


def test_failed_answer_is_not_remembered(make_tutor):
    service = make_tutor(_category("LECTURE"), "garbage", results=[_doc(0.1, "t")])

    response = service.handle_user_question("q", COURSE, USER)

    assert response.answer == tutor.ERROR_MESSAGE
    assert response.sources == [DocumentSource(media_record_id="doc-1", page=1)]
    assert db.list_conversation_history(USER, COURSE) == []


def test_model_answer_is_remembered_even_if_it_reads_like_the_fallback(make_tutor):
    service = make_tutor(_category("LECTURE"), {"answer": tutor.ERROR_MESSAGE}, results=[_doc(0.1, "t")])

    service.handle_user_question("q", COURSE, USER)

    assert [e.tutor_response for e in db.list_conversation_history(USER, COURSE)] == [tutor.ERROR_MESSAGE]


def test_clear_history(make_tutor):
    service = make_tutor()
    service.memory.append(USER, COURSE, "q", "a")
    service.clear_history(USER, COURSE)
    assert db.list_conversation_history(USER, COURSE) == []


# ---------- hints ----------
def _mc_input(answers=("Labels", "Clusters")):
    return HintGenerationInput(
        type=HintQuestionType.MULTIPLE_CHOICE,
        multiple_choice=HintMultipleChoiceInput(text="What does supervised learning need?", answers=list(answers)),
    )


def test_multiple_choice_hint(make_tutor):
    db.save_user_player_type(USER, HexadPlayerType.ACHIEVER, {HexadPlayerType.ACHIEVER: 0.8})
    service = make_tutor({"hint": "Think about what the labelled data provides."}, results=[_doc(0.2, "Labels matter.")])

    response = service.generate_hint(_mc_input(), COURSE, USER)

    assert response.hint == "Think about what the labelled data provides."
    assert service.providers.queries[0][0] == "What does supervised learning need?"
    prompt = service.gateway.prompts[0]
    assert "[1] Labels\n\n[2] Clusters" in prompt
    assert "[1] Labels matter." in prompt
    assert personalization.GAMIFICATION_PROMPTS[HexadPlayerType.ACHIEVER] in prompt


def test_cloze_hint_uses_generated_search_query(make_tutor):
    service = make_tutor({"query": "gradient descent step size"}, {"hint": "h"}, results=[_doc(0.2, "t")])
    hint_input = HintGenerationInput(
        type=HintQuestionType.CLOZE,
        cloze=HintClozeInput(text="The ___ controls the step size.", blanks=["learning rate"]),
    )

    response = service.generate_hint(hint_input, COURSE, USER)

    assert response.hint == "h"
    assert service.providers.queries[0][0] == "gradient descent step size"
    assert "The ___ controls the step size." in service.gateway.prompts[0]
    assert "[1] learning rate" in service.gateway.prompts[0]


def test_association_query_falls_back_to_question_text(make_tutor):
    service = make_tutor(TransportError("down"), {"hint": "h"}, results=[_doc(0.2, "t")])
    hint_input = HintGenerationInput(
        type=HintQuestionType.ASSOCIATION,
        association=HintAssociationInput(
            text="Match the terms.", pairs=[AssociationPairInput(left="SVM", right="margin")]
        ),
    )

    service.generate_hint(hint_input, COURSE, USER)

    assert service.providers.queries[0][0] == "Match the terms."
    assert "[1] Left: SVM <-> Right: margin" in service.gateway.prompts[0]


def test_hint_without_search_results(make_tutor):
    service = make_tutor(results=[])
    assert service.generate_hint(_mc_input(), COURSE, USER).hint == tutor.NO_HINT_CONTENT


def test_hint_without_relevant_documents(make_tutor):
    service = make_tutor(results=[_doc(0.9, "far away"), _video(0.1)])
    assert service.generate_hint(_mc_input(), COURSE, USER).hint == tutor.NO_HINT_DOCUMENTS


def test_hint_model_failure_returns_fallback(make_tutor):
    service = make_tutor("not json", results=[_doc(0.2, "t")])
    assert service.generate_hint(_mc_input(), COURSE, USER).hint == tutor.HINT_ERROR


@pytest.mark.parametrize(
    "hint_input",
    [
        HintGenerationInput(type=HintQuestionType.MULTIPLE_CHOICE),
        HintGenerationInput(
            type=HintQuestionType.MULTIPLE_CHOICE,
            multiple_choice=HintMultipleChoiceInput(text="q", answers=[]),
        ),
        HintGenerationInput(type=HintQuestionType.CLOZE, cloze=HintClozeInput(text="  ", blanks=["x"])),
        HintGenerationInput(type=HintQuestionType.ASSOCIATION, association=HintAssociationInput(text="q")),
    ],
)
def test_invalid_hint_input_raises(make_tutor, hint_input):
    service = make_tutor()
    with pytest.raises(ValueError):
        service.generate_hint(hint_input, COURSE, USER)


# ---------- proactive feedback ----------
def _progress(content_type=ContentType.QUIZ, correctness=0.95, success=True):
    return ContentProgressedEvent(
        user_id=USER,
        content_id="quiz-7",
        content_type=content_type,
        correctness=correctness,
        success=success,
    )


def test_feedback_is_generated_saved_and_pushed(make_tutor):
    db.save_user_player_type(USER, HexadPlayerType.ACHIEVER, {HexadPlayerType.ACHIEVER: 0.9})
    service = make_tutor({"answer": "Great job, try the next quiz!"})
    subscription = service.hub.subscribe(USER)

    text = service.handle_content_progressed(_progress())

    assert text == "Great job, try the next quiz!"
    prompt = service.gateway.prompts[0]
    assert "0.95" in prompt
    assert personalization.SOLID_UNDERSTANDING in prompt
    assert personalization.ACHIEVER_REPEAT in prompt

    pushed = subscription.get(timeout=1)
    assert pushed.feedback_text == text
    assert pushed.assessment_id == "quiz-7"
    assert db.latest_feedback(USER, "quiz-7").id == pushed.id


def test_feedback_fallback_mentions_correctness(make_tutor):
    service = make_tutor(TransportError("down"))

    text = service.generate_proactive_feedback(_progress(ContentType.ASSIGNMENT, correctness=0.5, success=False))

    assert text == tutor.feedback_error_message(0.5)
    assert "0.50" in text
    assert db.fetch_and_delete_latest_feedback(USER) == text


def test_other_content_types_get_no_feedback(make_tutor):
    service = make_tutor()
    assert service.handle_content_progressed(_progress(ContentType.MEDIA)) is None
    assert service.gateway.prompts == []
    assert db.list_feedback_for_user(USER) == []


def test_feedback_store_failure_propagates(make_tutor, monkeypatch):
    service = make_tutor({"answer": "text"})
    subscription = service.hub.subscribe(USER)

    def locked_save(record):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "save_feedback", locked_save)

    with pytest.raises(sqlite3.Error):
        service.generate_proactive_feedback(_progress())
    assert subscription.pending() == 0


def test_feedback_template_failure_propagates(make_tutor, monkeypatch):
    service = make_tutor({"answer": "text"})
    monkeypatch.setattr(tutor, "FEEDBACK_TEMPLATE", "no_such_feedback_prompt.txt")

    with pytest.raises(TemplateError):
        service.handle_content_progressed(_progress(ContentType.QUIZ))
    assert service.gateway.prompts == []
    assert db.list_feedback_for_user(USER) == []


# ---------- profile ingestion ----------
def test_player_type_event_is_stored(make_tutor):
    service = make_tutor()
    service.save_player_type(
        UserHexadPlayerTypeSetEvent(
            user_id=USER,
            primary_player_type=HexadPlayerType.FREE_SPIRIT,
            player_type_percentages={HexadPlayerType.FREE_SPIRIT: 0.6, HexadPlayerType.PLAYER: None},
        )
    )
    profile = db.get_user_player_type(USER)
    assert profile.primary_type is HexadPlayerType.FREE_SPIRIT
    assert profile.score(HexadPlayerType.FREE_SPIRIT) == 0.6
    assert profile.score(HexadPlayerType.PLAYER) is None


def test_skill_level_event_is_stored(make_tutor):
    service = make_tutor()
    service.save_skill_level(UserSkillLevelChangedEvent(user_id=USER, skill_id="s", new_value=0.4, old_value=0.2))
    assert db.get_skill_level(USER, "s") == 0.4
