"""Per-user delivery of proactive feedback.

Two paths reach the student:

* push: every user has at most one multicast channel, created lazily by the
  first ``subscribe`` call and kept for the life of the process. ``publish``
  hands the item to all current subscribers on the caller's thread. When no
  one has ever subscribed there is no channel and the push is skipped;
  ``publish`` never creates a channel.
* pull: records are saved to the store before any push, so a client that
  was not listening can fetch (and consume) the newest one later.

Channels are never reaped. A deployment with many one-off users grows the
map by one small object per user that ever subscribed.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Dict, Iterator, List, Optional, Protocol

from schemas import FeedbackRecord, ProactiveFeedback

logger = logging.getLogger("tutor.feedback")

_CLOSED = object()


class FeedbackStore(Protocol):
    def save_feedback(self, record: FeedbackRecord) -> FeedbackRecord: ...

    def latest_feedback(self, user_id: str, assessment_id: str) -> Optional[FeedbackRecord]: ...

    def list_feedback_for_user(self, user_id: str) -> List[FeedbackRecord]: ...

    def fetch_and_delete_latest_feedback(self, user_id: str) -> Optional[str]: ...


class Subscription:
    """One consumer's view of a user channel with its own unbounded buffer."""

    def __init__(self, channel: "FeedbackChannel") -> None:
        self._channel = channel
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._cancelled = threading.Event()

    @property
    def user_id(self) -> str:
        return self._channel.user_id

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _offer(self, item: ProactiveFeedback) -> None:
        self._queue.put(item)

    def get(self, timeout: Optional[float] = None) -> Optional[ProactiveFeedback]:
        """Next buffered item, or ``None`` on timeout or after cancellation."""
        if self.cancelled and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        self._channel._remove(self)
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[ProactiveFeedback]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


class FeedbackChannel:
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscribers.remove(subscription)
            except ValueError:
                pass

    def emit(self, item: ProactiveFeedback) -> int:
        with self._lock:
            targets = list(self._subscribers)
        for subscription in targets:
            subscription._offer(item)
        return len(targets)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class FeedbackStreamHub:
    def __init__(self, store: Optional[FeedbackStore] = None) -> None:
        if store is None:
            import db as store  # type: ignore[no-redef]
        self.store = store
        self._channels: Dict[str, FeedbackChannel] = {}
        self._lock = threading.Lock()

    # ---- push ----
    def subscribe(self, user_id: str) -> Subscription:
        with self._lock:
            channel = self._channels.get(user_id)
            if channel is None:
                channel = self._channels[user_id] = FeedbackChannel(user_id)
                logger.debug("Created feedback channel for user %s", user_id)
        return channel.subscribe()

    def publish(self, user_id: str, feedback: ProactiveFeedback) -> int:
        """Deliver to current subscribers; returns how many received it."""
        with self._lock:
            channel = self._channels.get(user_id)
        if channel is None:
            return 0
        delivered = channel.emit(feedback)
        logger.debug("Published feedback %s to %d subscriber(s) of user %s", feedback.id, delivered, user_id)
        return delivered

    def has_channel(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._channels

    @property
    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    # ---- persist, then push ----
    def record(self, record: FeedbackRecord) -> FeedbackRecord:
        """Save ``record`` and push its DTO; store errors propagate, push errors do not."""
        saved = self.store.save_feedback(record)
        try:
            self.publish(saved.user_id, saved.to_dto())
        except Exception:
            logger.exception("Publishing feedback %s for user %s failed; record kept", saved.id, saved.user_id)
        return saved

    # ---- pull ----
    def latest(self, user_id: str, assessment_id: str) -> Optional[FeedbackRecord]:
        return self.store.latest_feedback(user_id, assessment_id)

    def all_for_user(self, user_id: str) -> List[FeedbackRecord]:
        return self.store.list_feedback_for_user(user_id)

    def fetch_and_delete_latest(self, user_id: str) -> Optional[str]:
        text = self.store.fetch_and_delete_latest_feedback(user_id)
        if text is not None:
            logger.info("Retrieved and deleted latest feedback for user %s", user_id)
        return text
