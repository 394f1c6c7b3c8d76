"""
Tests for SQLite session storage.
Uses a temp database for each test.
"""

import pytest

from multimind.storage.models import ChatSession, ConversationTurn
from multimind.storage.sqlite_store import TITLE_MAX_CHARS, SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "nested" / "test.db"))


def _turns(*pairs):
    return [ConversationTurn(role=r, content=c) for r, c in pairs]


def test_creates_parent_directory(tmp_path):
    SQLiteStore(str(tmp_path / "a" / "b" / "x.db"))
    assert (tmp_path / "a" / "b" / "x.db").exists()


def test_upsert_and_get(store):
    """Store a conversation and get it back in order."""
    store.upsert("s1", "gemini-pro", _turns(("user", "hello"), ("assistant", "hi there")), title="hello")

    session = store.get_session("s1")
    assert session.session_id == "s1"
    assert session.model_id == "gemini-pro"
    assert session.title == "hello"
    assert [(m.role, m.content) for m in session.messages] == [
        ("user", "hello"),
        ("assistant", "hi there"),
    ]


def test_upsert_replaces_conversation_and_keeps_title(store):
    store.upsert("s1", "gemini-pro", _turns(("user", "first")), title="first question")
    store.upsert(
        "s1", "qwen-plus",
        _turns(("user", "first"), ("assistant", "a1"), ("user", "second"), ("assistant", "a2")),
        title="second question",
    )

    session = store.get_session("s1")
    assert session.title == "first question"
    assert session.model_id == "qwen-plus"
    assert len(session.messages) == 4
    assert session.messages[-1].content == "a2"


def test_title_is_truncated(store):
    store.upsert("s1", "gemini-pro", _turns(("user", "x")), title="y" * 200)
    assert len(store.get_session("s1").title) == TITLE_MAX_CHARS


def test_upsert_without_title_defaults(store):
    store.upsert("s1", "gemini-pro", [])
    assert store.get_session("s1").title == "New Chat"


def test_image_reference_round_trips(store):
    turn = ConversationTurn(role="user", content="look", image_ref="data:image/png;base64,QUJD")
    store.upsert("s1", "gemini-pro", [turn])
    assert store.get_session("s1").messages[0].image_ref == "data:image/png;base64,QUJD"


def test_get_missing_session(store):
    assert store.get_session("nope") is None


def test_create_session_seeds_messages(store):
    created = store.create_session(
        "s1", "deepseek-chat", title="New Chat",
        messages=_turns(("system", "You are helpful.")),
    )
    assert isinstance(created, ChatSession)

    fetched = store.get_session("s1")
    assert fetched.created_at == created.created_at
    assert [(m.role, m.content) for m in fetched.messages] == [("system", "You are helpful.")]


def test_list_sessions_most_recent_first(store):
    store.upsert("old", "gemini-pro", _turns(("user", "a")))
    store.upsert("new", "gemini-pro", _turns(("user", "b")))
    assert [s.session_id for s in store.list_sessions()] == ["new", "old"]

    # Touching a session moves it to the top
    store.upsert("old", "gemini-pro", _turns(("user", "a"), ("assistant", "c")))
    sessions = store.list_sessions()
    assert [s.session_id for s in sessions] == ["old", "new"]
    assert sessions[0].messages == []


def test_list_sessions_limit(store):
    for i in range(5):
        store.upsert(f"s{i}", "gemini-pro", [])
    assert len(store.list_sessions(limit=2)) == 2


def test_delete_session(store):
    store.upsert("s1", "gemini-pro", _turns(("user", "a")))
    assert store.delete_session("s1") is True
    assert store.get_session("s1") is None
    assert store.get_stats()["messages"] == 0
    assert store.delete_session("s1") is False


def test_sessions_stay_separate(store):
    store.upsert("s1", "gemini-pro", _turns(("user", "one")))
    store.upsert("s2", "qwen-plus", _turns(("user", "two"), ("assistant", "2")))
    assert len(store.get_session("s1").messages) == 1
    assert len(store.get_session("s2").messages) == 2


def test_stats(store):
    """Stats reflect stored data."""
    store.upsert("c1", "gemini-pro", _turns(("user", "a"), ("assistant", "b")))
    store.upsert("c2", "qwen-plus", _turns(("system", "s"), ("user", "c")))

    stats = store.get_stats()
    assert stats["sessions"] == 2
    assert stats["messages"] == 4
    assert stats["user_messages"] == 2
    assert stats["assistant_messages"] == 1
    assert stats["models"] == {"gemini-pro": 1, "qwen-plus": 1}


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def test_turn_from_dict_normalizes_role():
    assert ConversationTurn.from_dict({"role": "tool", "content": "x"}).role == "user"
    assert ConversationTurn.from_dict({"content": "x"}).role == "user"
    assert ConversationTurn.from_dict({"role": "assistant", "content": "x"}).role == "assistant"


def test_turn_from_dict_reads_image_url():
    turn = ConversationTurn.from_dict({"role": "user", "content": "x", "imageUrl": "data:..."})
    assert turn.image_ref == "data:..."
    assert turn.to_dict()["imageUrl"] == "data:..."


def test_session_summary_shape():
    session = ChatSession(session_id="s1", model_id="gemini-pro", title="T")
    assert set(session.to_summary()) == {"sessionId", "title", "modelId", "createdAt", "updatedAt"}
    assert session.to_dict()["messages"] == []
