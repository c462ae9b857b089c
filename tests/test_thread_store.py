from datetime import UTC, datetime

import pytest

from src.composer.domain.chat_models import ChatMessage
from src.composer.infrastructure import thread_store as ts
from src.composer.services import draft_versions


def _message(mid, content="hi", role="user"):
    return ChatMessage(message_id=mid, role=role, content=content, created_at="2024-01-01T00:00:00Z")


@pytest.fixture()
def store():
    return ts.InMemoryThreadStore()


def test_create_and_get_thread(store):
    thread = store.create_thread(user_id="u1", organization_id="org1")
    assert thread.title == "New post"
    fetched = store.get_thread(thread.thread_id)
    assert fetched.user_id == "u1"
    assert fetched.organization_id == "org1"
    assert store.get_thread("missing") is None


def test_list_threads_orders_by_recent_activity(store):
    first = store.create_thread(title="first")
    second = store.create_thread(title="second")
    store.save_message(first.thread_id, _message("m1"))
    threads = store.list_threads()
    assert {t.thread_id for t in threads} == {first.thread_id, second.thread_id}
    assert threads[0].thread_id == first.thread_id
    assert store.list_threads(limit=0) == []


def test_save_message_upserts_by_id(store):
    thread = store.create_thread()
    store.save_message(thread.thread_id, _message("m1", "draft text"))
    store.save_message(thread.thread_id, _message("m1", "final text"))
    store.save_message(thread.thread_id, _message("m2", "reply", role="assistant"))
    messages = store.list_messages(thread.thread_id)
    assert [m.content for m in messages] == ["final text", "reply"]

    messages[0].content = "mutated"
    assert store.list_messages(thread.thread_id)[0].content == "final text"


def test_save_message_unknown_thread_raises(store):
    with pytest.raises(KeyError):
        store.save_message("nope", _message("m1"))


def test_delete_and_clear_messages(store):
    thread = store.create_thread()
    store.save_message(thread.thread_id, _message("m1"))
    store.save_message(thread.thread_id, _message("m2"))
    assert store.delete_message(thread.thread_id, "m1") is True
    assert store.delete_message(thread.thread_id, "m1") is False
    assert store.delete_message("nope", "m2") is False
    store.clear_messages(thread.thread_id)
    assert store.list_messages(thread.thread_id) == []


def test_save_draft_version_records_snapshot(store):
    thread = store.create_thread()
    ts_ = datetime(2024, 1, 1, tzinfo=UTC)
    draft = draft_versions.create_draft("assistant-1", "Post v1", ts_)
    draft = draft_versions.create_version(draft, "Post v2", "shorter", ["trimmed"], ts_)

    external_id = store.save_draft_version(thread.thread_id, draft, 2)
    assert external_id
    records = store.list_draft_versions(thread.thread_id)
    assert len(records) == 1
    assert records[0]["content"] == "Post v2"
    assert records[0]["external_id"] == external_id
    assert records[0]["draft_id"] == draft.id
    assert records[0]["parent_version"] == 1
    assert store.save_draft_version(thread.thread_id, draft, 9) is None
    assert store.list_draft_versions("missing") == []


def test_get_thread_store_is_a_singleton(monkeypatch):
    monkeypatch.setenv("COMPOSER_THREAD_STORE_IMPL", "mongo")
    ts.reset_thread_store()
    try:
        first = ts.get_thread_store()
        assert isinstance(first, ts.InMemoryThreadStore)
        assert ts.get_thread_store() is first
    finally:
        ts.reset_thread_store()
