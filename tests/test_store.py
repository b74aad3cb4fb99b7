import pytest

from sep_engine.errors import SEPError, SEP_E_STORE
from sep_engine.store import MemoryStore, SQLiteStore, document_path


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SQLiteStore(str(tmp_path / "store.db"))


def test_set_get_and_merge(any_store):
    any_store.set("runs/r1", {"a": 1, "b": 2})
    assert any_store.get("runs/r1") == {"a": 1, "b": 2}
    any_store.set("runs/r1", {"b": 3}, merge=True)
    assert any_store.get("runs/r1") == {"a": 1, "b": 3}
    any_store.set("runs/r1", {"c": 4})
    assert any_store.get("runs/r1") == {"c": 4}
    assert any_store.get("runs/missing") is None


def test_list_returns_direct_children_only(any_store):
    any_store.set("runs/r1", {"n": 1})
    any_store.set("runs/r1/logs/full_stack-0002", {"t": 2})
    any_store.set("runs/r1/logs/full_stack-0001", {"t": 1})
    assert [k for k, _ in any_store.list("runs")] == ["r1"]
    assert [d["t"] for _, d in any_store.list("runs/r1/logs")] == [1, 2]
    assert any_store.list("runs/r2/logs") == []


def test_add_generates_ids(any_store):
    a = any_store.add("runs", {"x": 1})
    b = any_store.add("runs", {"x": 2})
    assert a != b
    assert any_store.exists(f"runs/{a}")
    assert len(any_store.list("runs")) == 2


def test_reads_are_copies():
    store = MemoryStore()
    store.set("runs/r1", {"blocks": {"a": 1}})
    doc = store.get("runs/r1")
    doc["blocks"]["a"] = 99
    assert store.get("runs/r1")["blocks"]["a"] == 1


def test_sqlite_persists_across_instances(tmp_path):
    path = str(tmp_path / "nested" / "store.db")
    SQLiteStore(path).set("runs/r1/commits/full_stack", {"commit_hash_hex": "ab" * 32})
    assert SQLiteStore(path).get("runs/r1/commits/full_stack")["commit_hash_hex"] == "ab" * 32


def test_invalid_paths():
    store = MemoryStore()
    for bad in ("", "/", "runs/../etc"):
        with pytest.raises(SEPError) as exc_info:
            store.set(bad, {})
        assert exc_info.value.code == SEP_E_STORE
    assert document_path("runs", "r1", "logs", "t1") == "runs/r1/logs/t1"
    with pytest.raises(SEPError):
        document_path("runs", "r1", "logs")
