import threading

import numpy as np
import pytest

from mnemo.errors import ConfigurationError, UserInputError
from mnemo.index import VectorStore
from mnemo.models import ContentUnit


@pytest.fixture
def store(embeddings):
    return VectorStore.create(embeddings, 0.0, exact=True)


def test_create_probes_dimensionality(store, embeddings):
    assert store.embedding_dim == embeddings.dim


def test_threshold_out_of_range_rejected(embeddings):
    with pytest.raises(ConfigurationError):
        VectorStore(embeddings, 8, similarity_threshold=1.5)
    with pytest.raises(ConfigurationError):
        VectorStore.create(embeddings, -0.1)


def test_unknown_metric_rejected(embeddings):
    with pytest.raises(ConfigurationError):
        VectorStore(embeddings, 8, metric="hamming")


def test_add_embeds_rendered_text_in_one_call(store, embeddings, units):
    embeddings.calls.clear()
    ids = store.add_documents(units)
    assert ids == [u.id for u in units]
    assert embeddings.calls == [[u.rendered_text for u in units]]
    assert len(store) == 3


def test_search_returns_exact_match_first(store, embeddings, units):
    store.add_documents(units)
    hits = store.similarity_search(embeddings.embed_query(units[2].rendered_text), 3)
    assert hits[0][0].id == units[2].id
    assert hits[0][1] == pytest.approx(1.0, abs=1e-5)
    scores = [score for _, score in hits]
    assert scores == sorted(scores, reverse=True)


def test_threshold_filters_results(store, embeddings, units):
    store.add_documents(units)
    store.set_similarity_threshold(0.999)
    hits = store.similarity_search(embeddings.embed_query(units[0].rendered_text), 3)
    assert [unit.id for unit, _ in hits] == [units[0].id]


def test_non_positive_k_rejected(store, units):
    store.add_documents(units)
    with pytest.raises(ConfigurationError):
        store.similarity_search([0.1] * 8, 0)


def test_blank_query_rejected(store):
    with pytest.raises(UserInputError):
        store.similarity_search_by_text("   ", 3)


def test_search_on_empty_store(store):
    assert store.similarity_search([0.5] * 8, 5) == []


def test_wrong_vector_dimensionality_rejected(store):
    unit = ContentUnit("a.md", "text")
    with pytest.raises(ConfigurationError):
        store.add_vectors([unit], [[0.1, 0.2]])


def test_delete_removes_from_search(store, embeddings, units):
    store.add_documents(units)
    assert store.delete([units[0].id, "unknown"]) == 1
    hits = store.similarity_search(embeddings.embed_query(units[0].rendered_text), 3)
    assert units[0].id not in [unit.id for unit, _ in hits]
    assert units[0].id not in store


def test_readding_an_id_replaces_it(store, units):
    store.add_documents(units)
    store.add_vectors([units[0]], [[0.3] * 8])
    assert len(store) == 3
    assert store.get_data()["vectors"].shape == (3, 8)


def test_dump_and_restore(store, embeddings, units):
    store.add_documents(units)
    dump = store.get_data()
    copy = VectorStore(embeddings, 8, 0.0, exact=True)
    copy.restore(dump)
    assert copy.ids() == store.ids()
    assert np.allclose(copy.get_data()["vectors"], dump["vectors"])


def test_restore_dimensionality_mismatch(store, embeddings, units):
    store.add_documents(units)
    other = VectorStore(embeddings, 4, 0.0)
    with pytest.raises(ConfigurationError):
        other.restore(store.get_data())
    assert len(other) == 0


def test_duplicate_ids_in_one_batch_collapse_to_last(store, embeddings, units):
    store.add_vectors([units[0], units[1], units[0]], [[0.1] * 8, [0.2] * 8, [0.9] * 8])
    assert len(store) == 2
    assert store.ids() == [units[1].id, units[0].id]

    hits = store.similarity_search([0.9] * 8, 5)
    assert [unit.id for unit, _ in hits].count(units[0].id) == 1

    assert store.delete([units[0].id]) == 1
    hits = store.similarity_search([0.9] * 8, 5)
    assert [unit.id for unit, _ in hits] == [units[1].id]


def test_search_while_deleting_from_another_thread(store, embeddings, units):
    store.add_documents(units)
    query = embeddings.embed_query(units[0].rendered_text)
    errors = []

    def churn():
        try:
            for _ in range(50):
                store.delete([units[0].id])
                store.add_documents([units[0]])
        except Exception as exc:
            errors.append(exc)

    worker = threading.Thread(target=churn)
    worker.start()
    for _ in range(50):
        for unit, _score in store.similarity_search(query, 3):
            assert unit.id in {u.id for u in units}
    worker.join()
    assert errors == []
    assert len(store) == 3
