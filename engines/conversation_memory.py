"""Sliding window of recent tutor exchanges per (user, course).

The window is bounded twice: at most ``max_history_pairs`` exchanges and none
older than ``max_age_minutes``. Both bounds are applied on every write, and
reads filter by age again so an idle window never leaks stale context.
An exchange exactly ``max_age_minutes`` old is still inside the window.

Writes to one (user, course) key are serialized by a per-key lock. Locks are
never dropped, so the lock map grows by one small object per key that was
ever written or cleared, like the channel map in ``engines/feedback_hub.py``.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from env_validation import get_env_int
from schemas import ConversationExchange

logger = logging.getLogger(__name__)

HISTORY_HEADER = "\n\n---\n\nPrevious Conversation History:\n"


class ConversationStore(Protocol):
    def list_conversation_history(self, user_id: str, course_id: str) -> List[ConversationExchange]: ...

    def insert_conversation_exchange(
        self,
        user_id: str,
        course_id: str,
        user_message: str,
        tutor_response: str,
        timestamp: Optional[datetime] = None,
    ) -> ConversationExchange: ...

    def delete_conversation_before(self, user_id: str, course_id: str, cutoff: datetime) -> int: ...

    def delete_conversation_entry(self, entry_id: int) -> None: ...

    def delete_conversation_history(self, user_id: str, course_id: str) -> int: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationMemory:
    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        max_history_pairs: Optional[int] = None,
        max_age_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if store is None:
            import db as store  # type: ignore[no-redef]
        self.store = store
        if max_history_pairs is None:
            max_history_pairs = get_env_int("HISTORY_MAX_PAIRS", 3)
        if max_age_minutes is None:
            max_age_minutes = get_env_int("HISTORY_MAX_AGE_MINUTES", 30)
        self.max_history_pairs = max_history_pairs
        self.max_age_minutes = max_age_minutes
        self._clock = clock
        self._key_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _cutoff(self) -> datetime:
        return self._clock() - timedelta(minutes=self.max_age_minutes)

    def _lock_for(self, user_id: str, course_id: str) -> threading.Lock:
        key = (user_id, course_id)
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def recent(self, user_id: str, course_id: str) -> List[ConversationExchange]:
        """Exchanges inside the window, newest first."""
        cutoff = self._cutoff()
        history = self.store.list_conversation_history(user_id, course_id)
        recent = [entry for entry in history if entry.timestamp >= cutoff][: self.max_history_pairs]
        logger.info(
            "Retrieved %d recent history entries for user %s in course %s (filtered from %d total)",
            len(recent), user_id, course_id, len(history),
        )
        return recent

    def append(self, user_id: str, course_id: str, user_message: str, tutor_response: str) -> ConversationExchange:
        with self._lock_for(user_id, course_id):
            self.store.delete_conversation_before(user_id, course_id, self._cutoff())

            current = self.store.list_conversation_history(user_id, course_id)
            if len(current) >= self.max_history_pairs:
                oldest = current[-1]
                self.store.delete_conversation_entry(oldest.id)
                logger.info(
                    "Removed oldest conversation entry %s for user %s in course %s",
                    oldest.id, user_id, course_id,
                )

            entry = self.store.insert_conversation_exchange(
                user_id, course_id, user_message, tutor_response, timestamp=self._clock()
            )
        logger.info("Added new conversation entry for user %s in course %s", user_id, course_id)
        return entry

    def format_for_prompt(self, user_id: str, course_id: str) -> str:
        history = self.recent(user_id, course_id)
        if not history:
            return ""

        parts = [HISTORY_HEADER]
        for index, entry in enumerate(reversed(history), start=1):
            parts.append(f"\nExchange {index}:\n")
            parts.append(f"Student: {entry.user_message}\n")
            parts.append(f"Tutor: {entry.tutor_response}\n")
        return "".join(parts)

    def clear(self, user_id: str, course_id: str) -> None:
        with self._lock_for(user_id, course_id):
            removed = self.store.delete_conversation_history(user_id, course_id)
        logger.info("Cleared %d conversation entries for user %s in course %s", removed, user_id, course_id)
