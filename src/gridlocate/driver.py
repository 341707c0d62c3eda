"""
End-to-end batch pipeline.

    driver = GridLocateDriver(config)
    evaluator = driver.run(records)

`run` makes two passes over the records: training records build the global
statistics and the grid; records of the evaluation split are then finished
and evaluated. Records of other splits are ignored.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from gridlocate.config import GridLocateConfig
from gridlocate.coords import TimeCoordHandler, parse_sphere_coord
from gridlocate.counters import CounterSink, ExperimentStats
from gridlocate.documents import TRAINING_SPLIT, GridDoc, GridDocFactory, parse_time_coord
from gridlocate.evaluation import GridEvaluator, create_evaluator
from gridlocate.grid import FixedGrid, Grid
from gridlocate.kdgrid import KdTreeGrid
from gridlocate.ranker import GridRanker, create_ranker_from_config

logger = logging.getLogger(__name__)


class GridLocateDriver:
    """
    Args:
        config: Run configuration; validated on construction.
        counters: Counter sink shared by every stage.
        time_coords: Treat coordinates as points on a time axis instead of
            latitude/longitude pairs (k-d grids only).
        eval_split: Split tag of the records to evaluate.
    """

    def __init__(
        self,
        config: GridLocateConfig,
        counters: CounterSink | None = None,
        time_coords: bool = False,
        eval_split: str = "dev",
    ):
        config.validate()
        if time_coords and config.grid_type != "kd":
            raise ValueError("Time coordinates require a k-d grid")
        self.config = config
        self.counters = counters if counters is not None else ExperimentStats()
        self.time_coords = time_coords
        self.eval_split = eval_split
        if time_coords:
            self.docfact = GridDocFactory(
                config, counters=self.counters, coord_handler=TimeCoordHandler(), coord_parser=parse_time_coord
            )
        else:
            self.docfact = GridDocFactory(config, counters=self.counters, coord_parser=parse_sphere_coord)
        self.grid: Grid | None = None
        self.ranker: GridRanker | None = None
        self.evaluator: GridEvaluator | None = None

    def create_grid(self) -> Grid:
        if self.config.grid_type == "fixed":
            return FixedGrid(self.docfact, self.config)
        return KdTreeGrid(self.docfact, self.config, dimensions=1 if self.time_coords else 2)

    def train(self, records: Iterable[Mapping[str, Any]]) -> Grid:
        """Build the global statistics and a finalized grid from the training records."""
        start = time.monotonic()
        training = (r for r in records if (r.get("split") or TRAINING_SPLIT) == TRAINING_SPLIT)
        docs = list(self.docfact.raw_documents_to_documents(training, note_globally=True, finish_globally=True))
        logger.info("Loaded %d training documents", len(docs))
        grid = self.create_grid()
        grid.add_training_documents_to_grid(docs)
        grid.finish()
        logger.info("Built %r in %.2fs", grid, time.monotonic() - start)
        self.grid = grid
        return grid

    def load_test_documents(self, records: Iterable[Mapping[str, Any]]) -> Iterable[GridDoc]:
        selected = (r for r in records if r.get("split") == self.eval_split)
        for doc in self.docfact.raw_documents_to_documents(selected):
            yield self.docfact.finish_test_document(doc)

    def evaluate(self, records: Iterable[Mapping[str, Any]]) -> GridEvaluator:
        if self.grid is None:
            raise RuntimeError("train() must be called before evaluate()")
        self.ranker = create_ranker_from_config(self.grid, self.config)
        self.evaluator = create_evaluator(self.ranker, self.config, self.counters)
        self.evaluator.evaluate_documents(self.load_test_documents(records))
        self.evaluator.output_results()
        return self.evaluator

    def run(self, records: Iterable[Mapping[str, Any]]) -> GridEvaluator:
        """Train and evaluate; `records` must be re-iterable."""
        self.train(records)
        return self.evaluate(records)


__all__ = ["GridLocateDriver"]
