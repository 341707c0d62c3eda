"""
Documents and the document factory.

A document source yields plain records: mappings with a `title`, an optional
`coord` ("lat,long" text, a coordinate object or a number for time
coordinates), a `split` ("training", "dev" or "test") and one or more named
word-count fields ("word:count word:count ..."). The factory turns records
into `GridDoc`s, each carrying a `DocLangModel`.

Per-record problems never abort a run: a record whose coordinate or counts
cannot be parsed comes back as a bad `DocStatus`, is counted and logged, and
processing continues with the next record.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from tqdm import tqdm

from gridlocate.config import GridLocateConfig
from gridlocate.coords import (
    CoordHandler,
    SphereCoord,
    SphereCoordHandler,
    TimeCoord,
    parse_sphere_coord,
)
from gridlocate.counters import CounterSink, ExperimentStats
from gridlocate.errors import DocValidationError, LangModelCreationError
from gridlocate.langmodel import DocLangModel, DocLangModelFactory

logger = logging.getLogger(__name__)

TRAINING_SPLIT = "training"


class DocStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    BAD = "bad"


@dataclass
class DocResult:
    """Outcome of converting one record."""

    status: DocStatus
    doc: GridDoc | None = None
    reason: str = ""
    split: str = ""


class GridDoc:
    def __init__(
        self,
        title: str,
        coord,
        split: str,
        lang_model: DocLangModel,
        coord_handler: CoordHandler,
    ):
        self.title = title
        self.coord = coord
        self.split = split
        self.lang_model = lang_model
        self.coord_handler = coord_handler

    def __repr__(self) -> str:
        return f"GridDoc({self.title!r}, {self.coord}, {self.split})"

    @property
    def has_coord(self) -> bool:
        return self.coord is not None

    @property
    def grid_lm(self):
        return self.lang_model.grid_lm

    @property
    def rerank_lm(self):
        return self.lang_model.rerank_lm

    def distance_to_coord(self, coord) -> float:
        return self.coord_handler.distance(self.coord, coord)


def parse_time_coord(text: str, method=None) -> TimeCoord:
    try:
        return TimeCoord(float(text))
    except ValueError as e:
        raise DocValidationError(f"Bad time coordinate {text!r}: {e}", e) from e


class GridDocFactory:
    """
    Creates `GridDoc`s from records and owns the global language-model statistics.

    Args:
        config: Run configuration.
        lang_model_factory: Factories for the grid and rerank models.
        counters: Sink for per-split record counters.
        coord_handler: Distance and formatting for this coordinate type.
        coord_parser: Parses a coordinate field given as text.
    """

    def __init__(
        self,
        config: GridLocateConfig,
        lang_model_factory: DocLangModelFactory | None = None,
        counters: CounterSink | None = None,
        coord_handler: CoordHandler | None = None,
        coord_parser: Callable[..., Any] = parse_sphere_coord,
    ):
        self.config = config
        self.lang_model_factory = lang_model_factory or DocLangModelFactory.from_config(config)
        self.counters = counters if counters is not None else ExperimentStats()
        self.coord_handler = coord_handler or SphereCoordHandler()
        self.coord_parser = coord_parser

    def _count(self, name: str, split: str) -> None:
        self.counters.increment(f"{name}.{split}")

    def _parse_coord(self, value):
        if value is None or value == "":
            return None
        if isinstance(value, (SphereCoord, TimeCoord)):
            return value
        if isinstance(value, (int, float)):
            return TimeCoord(float(value))
        return self.coord_parser(str(value), self.config.coord_handling)

    def _build_lang_model(self, record: Mapping[str, Any]) -> DocLangModel:
        doc_lm = self.lang_model_factory.create_lang_model()
        fields = (self.config.grid_word_count_field, self.config.rerank_word_count_field)
        factories = list(self.lang_model_factory)
        for lm, factory, field_name in zip(doc_lm, factories, fields):
            counts_field = record.get(field_name)
            if counts_field is None:
                raise DocValidationError(f"Missing word-count field {field_name!r}")
            built = factory.create_lang_model_from_counts(counts_field)
            lm.add_language_model(built)
        return doc_lm

    def record_to_document(self, record: Mapping[str, Any], note_globally: bool = False) -> DocResult:
        """
        Convert one record.

        With `note_globally`, training documents are folded into the global
        back-off statistics.
        """
        split = str(record.get("split") or TRAINING_SPLIT)
        title = str(record.get("title", ""))
        self._count("documents.records_by_split", split)
        try:
            coord = self._parse_coord(record.get("coord"))
            doc_lm = self._build_lang_model(record)
        except (DocValidationError, LangModelCreationError) as e:
            logger.warning("Bad record %r (%s): %s", title, split, e)
            self._count("documents.num_error_skipped_records_by_split", split)
            self.counters.increment("documents.num_bad_records")
            return DocResult(DocStatus.BAD, reason=str(e), split=split)
        if coord is None and split == TRAINING_SPLIT:
            self._count("documents.num_skipped_records_by_split", split)
            return DocResult(DocStatus.SKIPPED, reason="training document without coordinate", split=split)
        doc_lm.finish_before_global()
        if note_globally and split == TRAINING_SPLIT:
            self.lang_model_factory.note_lang_model_globally(doc_lm)
        self._count("documents.num_processed_records_by_split", split)
        doc = GridDoc(title, coord, split, doc_lm, self.coord_handler)
        return DocResult(DocStatus.PROCESSED, doc=doc, split=split)

    def raw_documents_to_document_statuses(
        self, records: Iterable[Mapping[str, Any]], note_globally: bool = False
    ) -> Iterator[DocResult]:
        for record in tqdm(records, desc="Reading documents", disable=not self.config.show_progress):
            yield self.record_to_document(record, note_globally=note_globally)

    def raw_documents_to_documents(
        self,
        records: Iterable[Mapping[str, Any]],
        note_globally: bool = False,
        finish_globally: bool = False,
    ) -> Iterator[GridDoc]:
        """
        Processed documents only. With `finish_globally`, the global
        statistics are frozen once the records are exhausted.
        """
        for result in self.raw_documents_to_document_statuses(records, note_globally):
            if result.status is DocStatus.PROCESSED:
                yield result.doc
        if finish_globally:
            self.finish_document_loading()

    def finish_document_loading(self) -> None:
        self.lang_model_factory.finish_global_backoff_stats()

    def finish_test_document(self, doc: GridDoc) -> GridDoc:
        """Finish a document that is only compared against cells."""
        doc.lang_model.finish_after_global()
        return doc


def records_from_dataset(dataset, split: str | None = None) -> Iterator[dict[str, Any]]:
    """
    Records from a Hugging Face dataset (or any iterable of mappings).

    A string is loaded with `datasets.load_dataset`. With `split`, records
    lacking a split column are tagged with it.
    """
    if isinstance(dataset, str):
        from datasets import load_dataset

        dataset = load_dataset(dataset, split=split or "train")
    for row in dataset:
        record = dict(row)
        if split is not None and not record.get("split"):
            record["split"] = split
        yield record


__all__ = [
    "DocStatus",
    "DocResult",
    "GridDoc",
    "GridDocFactory",
    "parse_time_coord",
    "records_from_dataset",
    "TRAINING_SPLIT",
]
