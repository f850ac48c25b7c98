"""Outbound tutor events.

The tutor announces two things to the rest of the platform: that a student
asked a question, and that it needs a student's skill levels. Delivery is
best effort: a lost event never fails the student's request.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Protocol

import requests
from pydantic import BaseModel

from schemas import AskedTutorAQuestionEvent, RequestUserSkillLevelEvent

LOGGER = logging.getLogger("tutor.events")

TOPIC_TUTOR_QUESTION_ASKED = "asked-tutor-a-question"
TOPIC_REQUEST_USER_SKILL_LEVEL = "request-user-skill-level"


class EventPublisher(Protocol):
    def notify_tutor_question_asked(self, event: AskedTutorAQuestionEvent) -> None: ...

    def notify_request_user_skill_level(self, event: RequestUserSkillLevelEvent) -> None: ...


class LoggingEventPublisher:
    """Default publisher: records events in the log only."""

    def _publish(self, topic: str, event: BaseModel) -> None:
        LOGGER.info("event %s: %s", topic, event.model_dump_json())

    def notify_tutor_question_asked(self, event: AskedTutorAQuestionEvent) -> None:
        self._publish(TOPIC_TUTOR_QUESTION_ASKED, event)

    def notify_request_user_skill_level(self, event: RequestUserSkillLevelEvent) -> None:
        self._publish(TOPIC_REQUEST_USER_SKILL_LEVEL, event)


class HttpEventPublisher(LoggingEventPublisher):
    """POSTs each event as JSON to ``<base_url>/<topic>``."""

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _publish(self, topic: str, event: BaseModel) -> None:
        url = f"{self.base_url}/{topic}"
        try:
            response = requests.post(url, json=event.model_dump(mode="json"), timeout=self.timeout)
            if response.status_code >= 400:
                LOGGER.warning("Event %s rejected with status %s", topic, response.status_code)
        except requests.RequestException as exc:
            LOGGER.warning("Failed to publish event %s: %s", topic, exc)


def publisher_from_env(base_url: Optional[str] = None) -> EventPublisher:
    url = base_url or os.getenv("EVENT_PUBLISH_URL")
    if url:
        return HttpEventPublisher(url)
    return LoggingEventPublisher()
