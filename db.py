import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from db_pool import SQLiteConnectionPool
from schemas import (
    ConversationExchange,
    FeedbackRecord,
    HexadPlayerType,
    PlayerTypeProfile,
    UserSkillLevel,
)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SCORE_COLUMNS: Dict[HexadPlayerType, str] = {
    HexadPlayerType.ACHIEVER: "achiever_score",
    HexadPlayerType.PLAYER: "player_score",
    HexadPlayerType.SOCIALISER: "socialiser_score",
    HexadPlayerType.FREE_SPIRIT: "free_spirit_score",
    HexadPlayerType.PHILANTHROPIST: "philanthropist_score",
    HexadPlayerType.DISRUPTOR: "disruptor_score",
}


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _ts(value: datetime) -> str:
    """Fixed-width UTC text so that lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS conversation_history (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id         TEXT NOT NULL,
              course_id       TEXT NOT NULL,
              user_message    TEXT NOT NULL,
              tutor_response  TEXT NOT NULL,
              timestamp       TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversation_user_course
              ON conversation_history(user_id, course_id, timestamp);

            CREATE TABLE IF NOT EXISTS proactive_feedback (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              assessment_id  TEXT NOT NULL,
              feedback_text  TEXT NOT NULL,
              correctness    REAL NOT NULL,
              success        INTEGER NOT NULL,
              created_at     TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_proactive_feedback_user_id
              ON proactive_feedback(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_proactive_feedback_user_assessment
              ON proactive_feedback(user_id, assessment_id, created_at);

            CREATE TABLE IF NOT EXISTS user_player_type (
              user_id               TEXT PRIMARY KEY,
              primary_player_type   TEXT NOT NULL,
              achiever_score        REAL,
              player_score          REAL,
              socialiser_score      REAL,
              free_spirit_score     REAL,
              philanthropist_score  REAL,
              disruptor_score       REAL,
              updated_at            TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS user_skill_level (
              user_id            TEXT NOT NULL,
              skill_id           TEXT NOT NULL,
              skill_level_value  REAL NOT NULL,
              updated_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (user_id, skill_id)
            );

            CREATE INDEX IF NOT EXISTS idx_user_skill_level_user_id
              ON user_skill_level(user_id);
            """
        )
        con.commit()


# -------------- conversation history --------------
def _row_to_exchange(row: Mapping[str, Any]) -> ConversationExchange:
    return ConversationExchange(
        id=row["id"],
        user_id=row["user_id"],
        course_id=row["course_id"],
        user_message=row["user_message"],
        tutor_response=row["tutor_response"],
        timestamp=_parse_ts(row["timestamp"]),
    )


def list_conversation_history(user_id: str, course_id: str) -> list[ConversationExchange]:
    """All stored exchanges for the key, newest first."""
    rows = _query(
        "SELECT id, user_id, course_id, user_message, tutor_response, timestamp "
        "FROM conversation_history WHERE user_id = ? AND course_id = ? "
        "ORDER BY timestamp DESC, id DESC",
        (user_id, course_id),
    )
    return [_row_to_exchange(row) for row in rows]


def insert_conversation_exchange(
    user_id: str,
    course_id: str,
    user_message: str,
    tutor_response: str,
    timestamp: Optional[datetime] = None,
) -> ConversationExchange:
    stamp = timestamp or _now()
    cur = _exec(
        """
        INSERT INTO conversation_history(user_id, course_id, user_message, tutor_response, timestamp)
        VALUES (?,?,?,?,?)
        """,
        (user_id, course_id, user_message, tutor_response, _ts(stamp)),
    )
    return ConversationExchange(
        id=int(cur.lastrowid),
        user_id=user_id,
        course_id=course_id,
        user_message=user_message,
        tutor_response=tutor_response,
        timestamp=_parse_ts(_ts(stamp)),
    )


def delete_conversation_before(user_id: str, course_id: str, cutoff: datetime) -> int:
    cur = _exec(
        "DELETE FROM conversation_history WHERE user_id = ? AND course_id = ? AND timestamp < ?",
        (user_id, course_id, _ts(cutoff)),
    )
    return cur.rowcount


def delete_conversation_entry(entry_id: int) -> None:
    _exec("DELETE FROM conversation_history WHERE id = ?", (entry_id,))


def delete_conversation_history(user_id: str, course_id: str) -> int:
    cur = _exec(
        "DELETE FROM conversation_history WHERE user_id = ? AND course_id = ?",
        (user_id, course_id),
    )
    return cur.rowcount


# -------------- proactive feedback --------------
def _row_to_feedback(row: Mapping[str, Any]) -> FeedbackRecord:
    return FeedbackRecord(
        id=row["id"],
        user_id=row["user_id"],
        assessment_id=row["assessment_id"],
        feedback_text=row["feedback_text"],
        correctness=float(row["correctness"]),
        success=bool(row["success"]),
        created_at=_parse_ts(row["created_at"]),
    )


_FEEDBACK_COLUMNS = "id, user_id, assessment_id, feedback_text, correctness, success, created_at"


def save_feedback(record: FeedbackRecord) -> FeedbackRecord:
    """Insert ``record`` and return a copy carrying its id and creation time."""
    created_at = record.created_at or _now()
    cur = _exec(
        """
        INSERT INTO proactive_feedback(user_id, assessment_id, feedback_text, correctness, success, created_at)
        VALUES (?,?,?,?,?,?)
        """,
        (
            record.user_id,
            record.assessment_id,
            record.feedback_text,
            float(record.correctness),
            int(bool(record.success)),
            _ts(created_at),
        ),
    )
    return record.model_copy(update={"id": int(cur.lastrowid), "created_at": _parse_ts(_ts(created_at))})


def latest_feedback(user_id: str, assessment_id: str) -> Optional[FeedbackRecord]:
    rows = _query(
        f"SELECT {_FEEDBACK_COLUMNS} FROM proactive_feedback "
        "WHERE user_id = ? AND assessment_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
        (user_id, assessment_id),
    )
    return _row_to_feedback(rows[0]) if rows else None


def list_feedback_for_user(user_id: str) -> list[FeedbackRecord]:
    rows = _query(
        f"SELECT {_FEEDBACK_COLUMNS} FROM proactive_feedback "
        "WHERE user_id = ? ORDER BY created_at DESC, id DESC",
        (user_id,),
    )
    return [_row_to_feedback(row) for row in rows]


def fetch_and_delete_latest_feedback(user_id: str) -> Optional[str]:
    """Remove the user's newest feedback and return its text, in one transaction."""
    with _conn() as con:
        con.execute("BEGIN IMMEDIATE")
        row = con.execute(
            "SELECT id, feedback_text FROM proactive_feedback "
            "WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
            (user_id,),
        ).fetchone()
        if row is None:
            con.rollback()
            return None
        con.execute("DELETE FROM proactive_feedback WHERE id = ?", (row["id"],))
        con.commit()
        return row["feedback_text"]


# -------------- learner profiles --------------
def save_user_player_type(
    user_id: str,
    primary_player_type: HexadPlayerType,
    percentages: Mapping[HexadPlayerType, Optional[float]],
) -> None:
    """Upsert the Hexad profile for ``user_id``; the last write wins."""
    scores = [percentages.get(player_type) for player_type in _SCORE_COLUMNS]
    columns = ", ".join(_SCORE_COLUMNS.values())
    updates = ",\n          ".join(f"{col} = excluded.{col}" for col in _SCORE_COLUMNS.values())
    _exec(
        f"""
        INSERT INTO user_player_type (user_id, primary_player_type, {columns}, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
          primary_player_type = excluded.primary_player_type,
          {updates},
          updated_at = CURRENT_TIMESTAMP
        """,
        [user_id, HexadPlayerType(primary_player_type).value, *scores],
    )


def get_user_player_type(user_id: str) -> Optional[PlayerTypeProfile]:
    rows = _query("SELECT * FROM user_player_type WHERE user_id = ?", (user_id,))
    if not rows:
        return None
    row = rows[0]
    return PlayerTypeProfile(
        user_id=row["user_id"],
        primary_type=HexadPlayerType(row["primary_player_type"]),
        scores={player_type: row[column] for player_type, column in _SCORE_COLUMNS.items()},
    )


def save_user_skill_level(user_id: str, skill_id: str, value: float) -> None:
    _exec(
        """
        INSERT INTO user_skill_level (user_id, skill_id, skill_level_value, updated_at)
        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(user_id, skill_id) DO UPDATE SET
          skill_level_value = excluded.skill_level_value,
          updated_at = CURRENT_TIMESTAMP
        """,
        (user_id, skill_id, float(value)),
    )


def get_skill_level(user_id: str, skill_id: str) -> Optional[float]:
    rows = _query(
        "SELECT skill_level_value FROM user_skill_level WHERE user_id = ? AND skill_id = ?",
        (user_id, skill_id),
    )
    return float(rows[0]["skill_level_value"]) if rows else None


def list_skill_levels_for_user(user_id: str) -> list[UserSkillLevel]:
    rows = _query(
        "SELECT user_id, skill_id, skill_level_value FROM user_skill_level WHERE user_id = ? ORDER BY skill_id",
        (user_id,),
    )
    return [
        UserSkillLevel(user_id=row["user_id"], skill_id=row["skill_id"], value=float(row["skill_level_value"]))
        for row in rows
    ]
