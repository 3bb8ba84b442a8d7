from __future__ import annotations

from cordbridge.sessions.store import SessionStore


def test_set_get_and_last_writer_wins() -> None:
    store = SessionStore(":memory:")
    assert store.get("c1") is None

    store.set("c1", "s1", "app")
    store.set("c1", "s2", "app")

    assert store.get("c1") == "s2"
    record = store.get_record("c1")
    assert record is not None
    assert record.project_name == "app"
    assert record.updated_at


def test_clear_removes_only_that_channel() -> None:
    store = SessionStore(":memory:")
    store.set("c1", "s1", "app")
    store.set("c2", "s2", "other")

    store.clear("c1")

    assert store.get("c1") is None
    assert store.get("c2") == "s2"
    assert [r.channel_id for r in store.get_all()] == ["c2"]


def test_save_requires_an_active_session() -> None:
    store = SessionStore(":memory:")
    assert store.save("c1", "before-refactor") is False
    assert store.list_saved("c1") == []


def test_save_same_label_overwrites() -> None:
    store = SessionStore(":memory:")
    store.set("c1", "s1", "app")
    assert store.save("c1", "wip") is True
    store.set("c1", "s2", "app")
    assert store.save("c1", "wip") is True

    saved = store.list_saved("c1")
    assert [(s.label, s.session_id) for s in saved] == [("wip", "s2")]


def test_list_saved_is_newest_first_and_per_channel() -> None:
    store = SessionStore(":memory:")
    store.set("c1", "s1", "app")
    store.save("c1", "first")
    store.set("c1", "s2", "app")
    store.save("c1", "second")
    store.set("c2", "x", "other")
    store.save("c2", "elsewhere")

    assert [s.label for s in store.list_saved("c1")] == ["second", "first"]


def test_restore_moves_snapshot_to_active() -> None:
    store = SessionStore(":memory:")
    store.set("c1", "s1", "app")
    store.save("c1", "old")
    store.set("c1", "s2", "app")

    assert store.restore("c1", "old") is True

    assert store.get("c1") == "s1"
    assert store.list_saved("c1") == []
    # One-shot: a second restore finds nothing
    assert store.restore("c1", "old") is False


def test_restore_unknown_label_leaves_active_session() -> None:
    store = SessionStore(":memory:")
    store.set("c1", "s1", "app")
    assert store.restore("c1", "missing") is False
    assert store.get("c1") == "s1"


def test_sessions_survive_reopen(tmp_path) -> None:
    db = tmp_path / "data" / "sessions.db"
    store = SessionStore(db)
    store.set("c1", "s1", "app")
    store.save("c1", "keep")
    store.close()

    reopened = SessionStore(db)
    try:
        assert reopened.get("c1") == "s1"
        assert [s.label for s in reopened.list_saved("c1")] == ["keep"]
    finally:
        reopened.close()


def test_list_all_saved_includes_channels_without_an_active_session() -> None:
    store = SessionStore(":memory:")
    store.set("c2", "x", "other")
    store.save("c2", "elsewhere")
    store.set("c1", "s1", "app")
    store.save("c1", "before")
    store.clear("c1")

    saved = store.list_all_saved()

    assert [(s.channel_id, s.label) for s in saved] == [("c1", "before"), ("c2", "elsewhere")]
