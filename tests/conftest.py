import pytest

from gridlocate.config import GridLocateConfig
from gridlocate.documents import GridDocFactory
from gridlocate.grid import FixedGrid
from gridlocate.kdgrid import KdTreeGrid
from gridlocate.langmodel import LangModelFactory
from gridlocate.memoizer import Memoizer
from gridlocate.smoothing import JelinekMercerSmoothing


def make_record(title, coord, counts, split="training"):
    return {
        "title": title,
        "coord": coord,
        "split": split,
        "unigram-counts": " ".join(f"{word}:{count}" for word, count in counts.items()),
    }


def build_grid(config, records, grid_cls=None):
    """Load training records, freeze global stats and return a finalized grid."""
    docfact = GridDocFactory(config)
    docs = list(
        docfact.raw_documents_to_documents(records, note_globally=True, finish_globally=True)
    )
    if grid_cls is None:
        grid_cls = FixedGrid if config.grid_type == "fixed" else KdTreeGrid
    grid = grid_cls(docfact, config)
    grid.add_training_documents_to_grid(docs)
    grid.finish()
    return grid, docs


# Ten documents, each with its own vocabulary, on well separated coordinates.
SEPARATED_RECORDS = [
    make_record(f"doc{i}", f"{-40 + 9 * i}.5,{-150 + 30 * i}.5", {f"place{i}": 5, f"thing{i}": 3, "common": 1})
    for i in range(10)
]


@pytest.fixture
def factory():
    return LangModelFactory(smoothing=JelinekMercerSmoothing(factor=0.3), memoizer=Memoizer())


@pytest.fixture
def fixed_config():
    return GridLocateConfig(grid_type="fixed", degrees_per_cell=1.0, center_method="centroid")


@pytest.fixture
def kd_config():
    return GridLocateConfig(grid_type="kd", kd_bucket_size=2, kd_split_method="median")


@pytest.fixture
def separated_fixed_grid(fixed_config):
    return build_grid(fixed_config, SEPARATED_RECORDS)


def make_test_docs(grid, records):
    """Documents from evaluation records, finished against the grid's frozen statistics."""
    docfact = grid.docfact
    return [docfact.finish_test_document(doc) for doc in docfact.raw_documents_to_documents(records)]
