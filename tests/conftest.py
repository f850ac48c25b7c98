import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Fresh pool per test so connections never point at another test's file
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


class ScriptedGateway:
    """Stands in for OllamaGateway and replays canned replies in order.

    A reply is either the generated text (str or dict, dicts are JSON encoded)
    or an exception instance to raise.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []
        self.schemas = []

    def generate(self, prompt, schema=None, *, request_id=None):
        from schemas import OllamaResponse

        self.prompts.append(prompt)
        self.schemas.append(schema)
        if not self.replies:
            raise AssertionError("unexpected model call")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        return OllamaResponse(response=reply, done=True)


@pytest.fixture
def scripted_gateway():
    return ScriptedGateway
