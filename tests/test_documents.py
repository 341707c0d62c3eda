import pytest

from conftest import make_record
from gridlocate.config import GridLocateConfig
from gridlocate.coords import SphereCoord
from gridlocate.documents import DocStatus, GridDocFactory, records_from_dataset

RECORDS = [
    make_record("good", "10.0,20.0", {"a": 2, "b": 1}),
    make_record("bad-coord", "north,east", {"a": 1}),
    make_record("out-of-range", "95.0,20.0", {"a": 1}),
    {"title": "bad-counts", "coord": "1.0,1.0", "split": "training", "unigram-counts": "a:x"},
    {"title": "no-counts", "coord": "1.0,1.0", "split": "training"},
    make_record("nowhere", "", {"a": 1}),
    make_record("query", "", {"a": 1}, split="dev"),
]


def test_statuses_and_counters():
    docfact = GridDocFactory(GridLocateConfig())
    results = list(docfact.raw_documents_to_document_statuses(RECORDS, note_globally=True))
    assert [r.status for r in results] == [
        DocStatus.PROCESSED,
        DocStatus.BAD,
        DocStatus.BAD,
        DocStatus.BAD,
        DocStatus.BAD,
        DocStatus.SKIPPED,
        DocStatus.PROCESSED,
    ]
    counters = docfact.counters
    assert counters.get("documents.num_bad_records") == 4
    assert counters.get("documents.records_by_split.training") == 6
    assert counters.get("documents.records_by_split.dev") == 1
    assert counters.get("documents.num_skipped_records_by_split.training") == 1
    assert counters.get("documents.num_processed_records_by_split.dev") == 1


def test_only_training_documents_are_noted_globally():
    docfact = GridDocFactory(GridLocateConfig())
    docs = list(docfact.raw_documents_to_documents(RECORDS, note_globally=True, finish_globally=True))
    assert [doc.title for doc in docs] == ["good", "query"]
    (factory,) = docfact.lang_model_factory
    assert factory.global_stats.num_documents == 1
    assert factory.global_stats.total_num_word_tokens == 3


def test_coerce_accepts_out_of_range():
    docfact = GridDocFactory(GridLocateConfig(coord_handling="coerce"))
    (doc,) = docfact.raw_documents_to_documents([RECORDS[2]])
    assert doc.coord == SphereCoord(90.0, 20.0)


def test_test_document_is_finished_against_global_stats():
    docfact = GridDocFactory(GridLocateConfig())
    good, query = docfact.raw_documents_to_documents(RECORDS, note_globally=True, finish_globally=True)
    assert good.lang_model.finished is False
    assert docfact.finish_test_document(query) is query
    assert query.grid_lm.finished
    assert query.coord is None and not query.has_coord


def test_separate_rerank_model_reads_its_own_field():
    config = GridLocateConfig(rerank_word_count_field="bigram-counts")
    docfact = GridDocFactory(config)
    record = {"title": "t", "coord": "1,1", "unigram-counts": "a:1", "bigram-counts": "a_b:2 b_c:1"}
    (doc,) = docfact.raw_documents_to_documents([record])
    assert doc.grid_lm.num_tokens == 1
    assert doc.rerank_lm.num_tokens == 3


def test_distance_to_coord():
    docfact = GridDocFactory(GridLocateConfig())
    (doc,) = docfact.raw_documents_to_documents([RECORDS[0]])
    assert doc.distance_to_coord(doc.coord) == pytest.approx(0.0, abs=1e-3)
    assert doc.distance_to_coord(SphereCoord(11.0, 20.0)) == pytest.approx(111.2, rel=1e-2)


def test_records_from_dataset_tags_split():
    rows = [{"title": "a", "coord": "1,1"}, {"title": "b", "coord": "2,2", "split": "training"}]
    records = list(records_from_dataset(rows, split="dev"))
    assert [r["split"] for r in records] == ["dev", "training"]
    assert records[0] is not rows[0]
