import pytest

from mnemo.errors import UserInputError
from mnemo.models import IndexRecord
from mnemo.storage import RecordManager


@pytest.fixture
def records():
    manager = RecordManager()
    manager.update([
        IndexRecord("a1", "a.md", 1.0),
        IndexRecord("a2", "a.md", 2.0),
        IndexRecord("b1", "b.md", 3.0),
    ])
    yield manager
    manager.close()


def test_exists_preserves_input_order(records):
    assert records.exists(["b1", "zz", "a1"]) == [True, False, True]


def test_update_refreshes_timestamp(records):
    records.update([IndexRecord("a1", "a.md", 10.0)])
    assert records.get("a1").indexed_at == 10.0
    assert len(records) == 3


def test_get_ids_to_delete_filters_combine(records):
    assert records.get_ids_to_delete(indexed_before=3.0) == ["a1", "a2"]
    assert records.get_ids_to_delete(sources=["b.md"]) == ["b1"]
    assert records.get_ids_to_delete(indexed_before=2.0, sources=["a.md", "b.md"]) == ["a1"]


def test_get_ids_to_delete_empty_sources_matches_nothing(records):
    assert records.get_ids_to_delete(indexed_before=100.0, sources=[]) == []


def test_get_ids_to_delete_requires_a_filter(records):
    with pytest.raises(UserInputError):
        records.get_ids_to_delete()


def test_delete_ids_ignores_unknown(records):
    assert records.delete_ids(["a1", "nope"]) == 1
    assert sorted(records.ids()) == ["a2", "b1"]


def test_list_sources(records):
    sources = records.list_sources()
    assert [s["source_path"] for s in sources] == ["a.md", "b.md"]
    assert sources[0]["records"] == 2


def test_restore_replaces_everything(records):
    dump = records.get_data()
    other = RecordManager()
    other.update([IndexRecord("x", "x.md", 5.0)])
    other.restore(dump)
    assert other.get_data() == dump
    other.close()


def test_file_backed_ledger_persists(tmp_path):
    db_path = str(tmp_path / "nested" / "ledger.db")
    manager = RecordManager(db_path)
    manager.update([IndexRecord("a1", "a.md", 1.0)])
    manager.close()

    reopened = RecordManager(db_path)
    assert reopened.exists(["a1"]) == [True]
    reopened.close()
