import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import db
from schemas import FeedbackRecord, HexadPlayerType


def _feedback(user_id="user-1", assessment_id="quiz-1", text="text", created_at=None):
    return FeedbackRecord(
        user_id=user_id,
        assessment_id=assessment_id,
        feedback_text=text,
        correctness=0.5,
        success=False,
        created_at=created_at,
    )


def test_init_creates_tables(temp_db):
    with sqlite3.connect(temp_db) as con:
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {"conversation_history", "proactive_feedback", "user_player_type", "user_skill_level"} <= tables


def test_init_is_idempotent(temp_db):
    db.init()
    db.init()


def test_conversation_history_ordering_and_deletes(temp_db):
    base = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    for minutes in (0, 5, 10):
        db.insert_conversation_exchange("u", "c", f"q{minutes}", f"a{minutes}", timestamp=base + timedelta(minutes=minutes))

    history = db.list_conversation_history("u", "c")
    assert [e.user_message for e in history] == ["q10", "q5", "q0"]
    assert history[0].timestamp == base + timedelta(minutes=10)

    assert db.delete_conversation_before("u", "c", base + timedelta(minutes=5)) == 1
    db.delete_conversation_entry(history[0].id)
    assert [e.user_message for e in db.list_conversation_history("u", "c")] == ["q5"]

    assert db.delete_conversation_history("u", "c") == 1
    assert db.list_conversation_history("u", "c") == []


def test_save_feedback_assigns_id_and_created_at(temp_db):
    saved = db.save_feedback(_feedback())
    assert saved.id is not None
    assert saved.created_at is not None
    assert saved.created_at.tzinfo is not None


def test_latest_and_history_are_most_recent_first(temp_db):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    old = db.save_feedback(_feedback(text="old", created_at=base))
    new = db.save_feedback(_feedback(text="new", created_at=base + timedelta(hours=1)))
    db.save_feedback(_feedback(assessment_id="quiz-2", text="other", created_at=base + timedelta(minutes=30)))

    assert db.latest_feedback("user-1", "quiz-1").id == new.id
    assert [r.feedback_text for r in db.list_feedback_for_user("user-1")] == ["new", "other", "old"]
    assert db.latest_feedback("user-1", "missing") is None
    assert old.id != new.id


def test_fetch_and_delete_latest_consumes_newest(temp_db):
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    db.save_feedback(_feedback(text="first", created_at=base))
    db.save_feedback(_feedback(text="second", created_at=base + timedelta(seconds=1)))

    assert db.fetch_and_delete_latest_feedback("user-1") == "second"
    assert db.fetch_and_delete_latest_feedback("user-1") == "first"
    assert db.fetch_and_delete_latest_feedback("user-1") is None


def test_feedback_correctness_is_bounded():
    with pytest.raises(ValueError):
        FeedbackRecord(user_id="u", assessment_id="a", feedback_text="t", correctness=1.5, success=True)


def test_player_type_upsert(temp_db):
    db.save_user_player_type("u", HexadPlayerType.ACHIEVER, {HexadPlayerType.ACHIEVER: 0.6})
    db.save_user_player_type(
        "u", HexadPlayerType.DISRUPTOR, {HexadPlayerType.DISRUPTOR: 0.7, HexadPlayerType.PLAYER: 0.2}
    )

    profile = db.get_user_player_type("u")
    assert profile.primary_type is HexadPlayerType.DISRUPTOR
    assert profile.score(HexadPlayerType.DISRUPTOR) == 0.7
    assert profile.score(HexadPlayerType.PLAYER) == 0.2
    assert profile.score(HexadPlayerType.ACHIEVER) is None
    assert db.get_user_player_type("nobody") is None


def test_skill_level_upsert_and_listing(temp_db):
    db.save_user_skill_level("u", "skill-b", 0.2)
    db.save_user_skill_level("u", "skill-a", 0.4)
    db.save_user_skill_level("u", "skill-b", 0.9)

    assert db.get_skill_level("u", "skill-b") == 0.9
    assert db.get_skill_level("u", "missing") is None
    assert [(s.skill_id, s.value) for s in db.list_skill_levels_for_user("u")] == [("skill-a", 0.4), ("skill-b", 0.9)]
