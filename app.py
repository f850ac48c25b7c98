# app.py — personalized tutor service
# - Event ingestion endpoints (content progressed, player type, skill level)
# - Question answering and hints backed by the local language model
# - Proactive feedback: pull endpoints plus a server-sent event stream

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Iterator, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

import db
import tutor
from engines.errors import TemplateError
from env_validation import get_env_float
from schemas import (
    ContentProgressedEvent,
    HintGenerationInput,
    HintResponse,
    LectureQuestionResponse,
    ProactiveFeedback,
    UserHexadPlayerTypeSetEvent,
    UserSkillLevelChangedEvent,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        tutor.get_tutor()
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Tutor Service", version="1.0.0", lifespan=_lifespan)


# ---------- Request bodies ----------
class ContentProgressedCloudEvent(BaseModel):
    data: Optional[ContentProgressedEvent] = None


class PlayerTypeCloudEvent(BaseModel):
    data: Optional[UserHexadPlayerTypeSetEvent] = None


class SkillLevelCloudEvent(BaseModel):
    data: Optional[UserSkillLevelChangedEvent] = None


class QuestionBody(BaseModel):
    user_id: str
    question: str
    course_id: Optional[str] = None


class HintBody(BaseModel):
    user_id: str
    course_id: str
    input: HintGenerationInput


# ---------- Event ingestion ----------
@app.post("/content-progressed-pubsub")
def on_content_progressed(body: ContentProgressedCloudEvent):
    if body.data is None:
        logger.warning("Received content-progressed event without data")
        return {"status": "ignored"}
    try:
        feedback = tutor.get_tutor().handle_content_progressed(body.data)
    except (sqlite3.Error, TemplateError) as exc:
        logger.exception("Failed to generate feedback for user %s", body.data.user_id)
        raise HTTPException(status_code=500, detail="Failed to generate feedback") from exc
    return {"status": "ok", "feedback_generated": feedback is not None}


@app.post("/user-hexad-player-type-set-pubsub")
def on_player_type_set(body: PlayerTypeCloudEvent):
    if body.data is None:
        logger.warning("Received player-type event without data")
        return {"status": "ignored"}
    tutor.get_tutor().save_player_type(body.data)
    return {"status": "ok"}


@app.post("/user-skill-level-changed-pubsub")
def on_skill_level_changed(body: SkillLevelCloudEvent):
    if body.data is None:
        logger.warning("Received skill-level event without data")
        return {"status": "ignored"}
    tutor.get_tutor().save_skill_level(body.data)
    return {"status": "ok"}


# ---------- Tutor ----------
@app.post("/tutor/question", response_model=LectureQuestionResponse)
def ask_question(body: QuestionBody):
    question = body.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="question required")
    return tutor.get_tutor().handle_user_question(question, body.course_id, body.user_id)


@app.post("/tutor/hint", response_model=HintResponse)
def hint(body: HintBody):
    try:
        return tutor.get_tutor().generate_hint(body.input, body.course_id, body.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/tutor/history")
def clear_history(user_id: str, course_id: str):
    tutor.get_tutor().clear_history(user_id, course_id)
    return {"status": "ok"}


# ---------- Proactive feedback ----------
@app.get("/feedback/latest")
def latest_feedback(user_id: str):
    """Return and consume the newest feedback text for ``user_id``."""
    text = tutor.get_tutor().hub.fetch_and_delete_latest(user_id)
    return {"feedback_text": text}


@app.get("/feedback/history", response_model=List[ProactiveFeedback])
def feedback_history(user_id: str):
    return [record.to_dto() for record in tutor.get_tutor().hub.all_for_user(user_id)]


@app.get("/feedback/assessment", response_model=ProactiveFeedback)
def feedback_for_assessment(user_id: str, assessment_id: str):
    record = tutor.get_tutor().hub.latest(user_id, assessment_id)
    if record is None:
        raise HTTPException(status_code=404, detail="feedback not found")
    return record.to_dto()


def _feedback_events(subscription, heartbeat: float) -> Iterator[str]:
    try:
        while not subscription.cancelled:
            item = subscription.get(timeout=heartbeat)
            if item is None:
                yield ": keep-alive\n\n"
                continue
            yield f"event: feedback\ndata: {item.model_dump_json()}\n\n"
    finally:
        subscription.cancel()


@app.get("/feedback/stream")
def feedback_stream(user_id: str):
    subscription = tutor.get_tutor().hub.subscribe(user_id)
    heartbeat = get_env_float("FEEDBACK_STREAM_HEARTBEAT_SECONDS", 15.0)
    return StreamingResponse(
        _feedback_events(subscription, heartbeat),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
