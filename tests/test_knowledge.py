import logging

import pytest

from mnemo.errors import ConfigurationError, UserInputError
from mnemo.knowledge import KnowledgeIndex, batch, dedupe, unpack_snapshot
from mnemo.models import ContentUnit
from tests.conftest import FakeEmbeddings, make_clock


def _unit(source, text, order=0):
    return ContentUnit(source, text, order, [source.rsplit(".", 1)[0]])


def test_batch_and_dedupe(units):
    assert [len(b) for b in batch(2, units)] == [2, 1]
    assert dedupe([units[0], units[1], units[0]]) == [units[0], units[1]]


def test_same_content_same_id():
    assert _unit("a.md", "text").id == _unit("a.md", "text").id
    assert _unit("a.md", "text").id != _unit("b.md", "text").id


def test_reindex_is_idempotent(knowledge, units):
    first = knowledge.index_all(units)
    second = knowledge.index_all(units)
    assert first.to_dict() == {"num_added": 3, "num_skipped": 0, "num_deleted": 0}
    assert second.to_dict() == {"num_added": 0, "num_skipped": 3, "num_deleted": 0}
    assert len(knowledge.vector_store) == 3
    assert len(knowledge.record_manager) == 3


def test_duplicates_within_a_batch_are_skipped(knowledge, units):
    stats = knowledge.index_all([units[0], units[0], units[1]])
    assert stats.num_added == 2
    assert stats.num_skipped == 1


def test_duplicates_across_batches_are_skipped(knowledge, units):
    stats = knowledge.index_all([units[0], units[1], units[0]], batch_size=2)
    assert stats.num_added == 2
    assert stats.num_skipped == 1


def test_yields_once_per_batch_plus_final(knowledge, units):
    progress = list(knowledge.index_units(units, batch_size=2))
    assert len(progress) == 3
    assert [p.num_added for p in progress] == [2, 3, 3]


def test_full_mode_deletes_stale_units(knowledge):
    a, b, c, d = (_unit("notes.md", text, i) for i, text in enumerate("ABCD"))
    knowledge.index_all([a, b, c])
    stats = knowledge.index_all([a, b, d])
    assert stats.to_dict() == {"num_added": 1, "num_skipped": 2, "num_deleted": 1}
    assert sorted(knowledge.record_manager.ids()) == sorted([a.id, b.id, d.id])
    assert c.id not in knowledge.vector_store


def test_by_file_mode_only_touches_seen_sources(knowledge):
    a1, a2 = _unit("a.md", "one", 0), _unit("a.md", "two", 1)
    b1 = _unit("b.md", "three")
    knowledge.index_all([a1, a2, b1])

    stats = knowledge.index_all([a1], mode="by_file")
    assert stats.to_dict() == {"num_added": 0, "num_skipped": 1, "num_deleted": 1}
    assert sorted(knowledge.vector_store.ids()) == sorted([a1.id, b1.id])


def test_full_mode_with_no_units_clears_everything(knowledge, units):
    knowledge.index_all(units)
    stats = knowledge.index_all([])
    assert stats.num_deleted == 3
    assert len(knowledge.vector_store) == 0


def test_invalid_arguments_raise_before_running(knowledge, units):
    with pytest.raises(ConfigurationError):
        knowledge.index_units(units, mode="sometimes")
    with pytest.raises(ConfigurationError):
        knowledge.index_units(units, batch_size=0)
    with pytest.raises(ConfigurationError):
        knowledge.set_num_docs_to_retrieve(0)


def test_delete_units_by_source(knowledge, units):
    knowledge.index_all(units)
    assert knowledge.delete_units(sources=["a.md"]) == 2
    assert knowledge.vector_store.ids() == [units[2].id]
    with pytest.raises(UserInputError):
        knowledge.delete_units()


def test_one_sided_delete_failure_is_logged(knowledge, units, monkeypatch, caplog):
    knowledge.index_all(units)

    def broken_delete(ids):
        raise RuntimeError("disk full")

    monkeypatch.setattr(knowledge.vector_store, "delete", broken_delete)
    with caplog.at_level(logging.ERROR, logger="mnemo.knowledge"):
        stats = knowledge.index_all(units[:2])

    assert stats.num_deleted == 1
    assert len(knowledge.consistency_errors) == 1
    assert knowledge.consistency_errors[0].details["failed_side"] == "vector_store"
    assert "out of sync" in caplog.text
    assert units[2].id in knowledge.vector_store
    assert units[2].id not in knowledge.record_manager.ids()

    monkeypatch.undo()
    assert knowledge.reconcile() == {"orphan_vectors": 1, "orphan_records": 0}
    assert units[2].id not in knowledge.vector_store
    assert knowledge.consistency_errors == []


def test_two_sided_delete_failure_raises(knowledge, units, monkeypatch):
    knowledge.index_all(units)

    def broken(ids):
        raise RuntimeError("boom")

    monkeypatch.setattr(knowledge.vector_store, "delete", broken)
    monkeypatch.setattr(knowledge.record_manager, "delete_ids", broken)
    with pytest.raises(RuntimeError, match="boom"):
        knowledge.delete_units(units=units[:1])


def test_search_respects_num_docs_to_retrieve(knowledge, units):
    knowledge.index_all(units)
    knowledge.set_num_docs_to_retrieve(2)
    assert len(knowledge.search("vectors")) == 2
    assert len(knowledge.search("vectors", k=3)) == 3


def test_explicit_zero_k_is_rejected(knowledge, units):
    knowledge.index_all(units)
    with pytest.raises(ConfigurationError):
        knowledge.search("vectors", k=0)
    with pytest.raises(ConfigurationError):
        knowledge.search("vectors", k=-1)


def test_snapshot_round_trip(knowledge, units):
    knowledge.index_all(units)
    before = [(r.unit.id, r.score) for r in knowledge.search(units[0].rendered_text)]
    payload = knowledge.get_data()

    restored = KnowledgeIndex.create(FakeEmbeddings(), 0.0, clock=make_clock(), exact=True)
    restored.load(payload)
    after = [(r.unit.id, r.score) for r in restored.search(units[0].rendered_text)]

    assert [i for i, _ in after] == [i for i, _ in before]
    assert [s for _, s in after] == pytest.approx([s for _, s in before])
    assert restored.record_manager.get_data() == knowledge.record_manager.get_data()
    restored.close()


def test_snapshot_dimensionality_mismatch(knowledge, units):
    knowledge.index_all(units)
    payload = knowledge.get_data()
    smaller = KnowledgeIndex.create(FakeEmbeddings(dim=4), 0.0)
    with pytest.raises(ConfigurationError):
        smaller.load(payload)
    assert len(smaller.vector_store) == 0
    assert len(smaller.record_manager) == 0
    smaller.close()


def test_garbage_snapshot_rejected():
    with pytest.raises(ConfigurationError):
        unpack_snapshot(b"nope")
    with pytest.raises(ConfigurationError):
        unpack_snapshot(b"XXXX" + bytes(8))
