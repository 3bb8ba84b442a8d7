from __future__ import annotations

from cordbridge.logging.error_store import ErrorRecord, ErrorStore


def _record(message: str) -> ErrorRecord:
    return ErrorRecord(ts="2026-01-01T00:00:00", level="ERROR", message=message, where="test:fn:1")


def test_newest_first_and_bounded() -> None:
    store = ErrorStore(max_items=50)
    for i in range(60):
        store.add(_record(f"err {i}"))

    items = store.get(limit=500)

    assert len(items) == 50
    assert items[0]["message"] == "err 59"
    assert items[-1]["message"] == "err 10"


def test_persisted_records_are_reloaded(tmp_path) -> None:
    path = tmp_path / "errors.jsonl"
    store = ErrorStore(path=path)
    store.add(_record("first"))
    store.add(_record("second"))

    reloaded = ErrorStore(path=path)

    assert [r["message"] for r in reloaded.get()] == ["second", "first"]


def test_clear_removes_the_file(tmp_path) -> None:
    path = tmp_path / "errors.jsonl"
    store = ErrorStore(path=path)
    store.add(_record("boom"))

    store.clear()

    assert store.get() == []
    assert not path.exists()


def test_corrupt_lines_are_skipped(tmp_path) -> None:
    path = tmp_path / "errors.jsonl"
    path.write_text('not json\n{"unexpected": 1}\n', encoding="utf-8")
    ErrorStore(path=path).add(_record("ok"))

    assert [r["message"] for r in ErrorStore(path=path).get()] == ["ok"]
