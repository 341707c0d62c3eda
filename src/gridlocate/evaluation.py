"""
Evaluation of rankers over a stream of test documents.

`CorpusEvaluator.evaluate_documents` applies the sampling policy and the
document/time budgets, scores documents (in worker threads when
`num_workers > 1`) and folds each per-document result into the running
statistics on the calling thread. Scoring never touches shared statistics,
so workers need no locks; only the fold is serialized.

Statistics classes:
- `EvalStats`: total/correct/incorrect instance counters.
- `DocEvalStats`: adds predicted and oracle true-distance errors.
- `RankedDocEvalStats`: adds correct-at-rank buckets, exact incorrect
  ranks, partial credit and oracle errors within the top N cells.
- `CoordDocEvalStats`: for evaluators that predict a point, not a cell.
- `GroupedDocEvalStats`: one stats object for all documents plus one per
  range of training documents in the correct cell.
"""

from __future__ import annotations

import logging
import threading
import time
from bisect import bisect_right
from collections import Counter, deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from gridlocate import metrics
from gridlocate.config import GridLocateConfig
from gridlocate.counters import CounterSink, ExperimentStats
from gridlocate.errors import DegenerateDistributionError, InvariantViolation
from gridlocate.meanshift import MeanShift
from gridlocate.ranker import CORRECT_RANK_NOT_FOUND, GridRanker, RankedCells, Reranker

logger = logging.getLogger(__name__)

SKIP_INITIAL_REASON = "skip_initial_test_docs setting"
SKIP_NTH_REASON = "every_nth_test_doc setting"
DEGENERATE_REASON = "degenerate distribution"

NUM_DOCS_IN_CELL_BOUNDARIES = (1, 10, 25, 100)


# =============================================================================
# Statistics
# =============================================================================


class EvalStats:
    """
    Counts of correct and incorrect instances.

    Counters are kept locally and mirrored to `counters` under `prefix`.
    """

    def __init__(self, counters: CounterSink | None = None, prefix: str = ""):
        self.counters = counters if counters is not None else ExperimentStats()
        self.prefix = prefix
        self.counts: Counter[str] = Counter()
        self.incorrect_reasons: set[str] = set()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.prefix!r}, {self.total_instances} instances)"

    def full_name(self, name: str) -> str:
        return f"{self.prefix}.{name}" if self.prefix else name

    def increment_counter(self, name: str, delta: float = 1) -> None:
        self.counts[name] += delta
        self.counters.increment(self.full_name(name), delta)

    def get_counter(self, name: str) -> float:
        return self.counts[name]

    def note_result(self, name: str, value: float, desc: str | None = None) -> None:
        self.counters.note_result(self.full_name(name), value, desc)

    @property
    def total_instances(self) -> int:
        return int(self.counts["instances.total"])

    @property
    def correct_instances(self) -> int:
        return int(self.counts["instances.correct"])

    @property
    def incorrect_instances(self) -> int:
        return int(self.counts["instances.incorrect"])

    def record_result(self, correct: bool, reason: str | None = None) -> None:
        self.increment_counter("instances.total")
        if correct:
            self.increment_counter("instances.correct")
        else:
            self.increment_counter("instances.incorrect")
            if reason is not None:
                self.incorrect_reasons.add(reason)
                self.increment_counter(f"instances.incorrect.{reason}")

    def output_fraction(self, header: str, amount: float, total: float) -> float:
        fraction = amount / total if total else 0.0
        logger.info("%s%s = %g/%g = %.2f%%", self._log_prefix(), header, amount, total, 100 * fraction)
        return fraction

    def _log_prefix(self) -> str:
        return f"[{self.prefix}] " if self.prefix else ""

    def output_correct_results(self) -> None:
        accuracy = self.output_fraction("Percent correct", self.correct_instances, self.total_instances)
        self.note_result("accuracy", accuracy, "Accuracy")

    def output_incorrect_results(self) -> None:
        self.output_fraction("Percent incorrect", self.incorrect_instances, self.total_instances)
        for reason in sorted(self.incorrect_reasons):
            self.output_fraction(
                f"  {reason}", self.counts[f"instances.incorrect.{reason}"], self.total_instances
            )

    def output_other_stats(self) -> None:
        pass

    def output_results(self) -> None:
        if self.total_instances == 0:
            logger.info("%sNo instances evaluated", self._log_prefix())
            return
        self.output_correct_results()
        self.output_incorrect_results()
        self.output_other_stats()


class DocEvalStats(EvalStats):
    """Adds true-distance errors of the prediction and of the correct cell's central point."""

    def __init__(self, counters: CounterSink | None = None, prefix: str = ""):
        super().__init__(counters, prefix)
        self.true_dists: list[float] = []
        self.oracle_true_dists: list[float] = []

    def record_predicted_distance(self, pred_truedist: float) -> None:
        self.true_dists.append(pred_truedist)

    def record_oracle_distance(self, correct_truedist: float) -> None:
        self.oracle_true_dists.append(correct_truedist)

    def record_doc_result(self, res: DocEvalResult) -> None:
        self.record_predicted_distance(res.correct.pred_truedist)
        self.record_oracle_distance(res.correct.correct_truedist)

    def output_other_stats(self) -> None:
        accuracy = metrics.accuracy_at_distance(self.true_dists)
        within = int(round(accuracy * len(self.true_dists)))
        self.output_fraction(
            f"Accuracy@{metrics.ACCURACY_DISTANCE_KM:g}", within, len(self.true_dists)
        )
        self.note_result("accuracy-at-161", accuracy, "Accuracy@161km")
        for name, dists in (
            ("true-error-distance", self.true_dists),
            ("oracle-true-error-distance", self.oracle_true_dists),
        ):
            mean = metrics.mean_distance(dists)
            median = metrics.median_distance(dists)
            logger.info("%sMean %s = %.2f, median = %.2f", self._log_prefix(), name, mean, median)
            self.note_result(f"mean-{name}", mean)
            self.note_result(f"median-{name}", median)


class RankedDocEvalStats(DocEvalStats):
    """
    Rank-based statistics for evaluators that produce a ranked list of cells.

    Credit for a correct cell at rank r is `max_top_n + 1 - r` (none past
    `max_top_n`), reported as a fraction of the best possible credit.
    """

    top_n_for_oracle_dists = (1, 2, 3, 4, 5, 10, 20, 50, 100)
    max_rank_for_exact_incorrect = 10

    def __init__(self, counters: CounterSink | None = None, prefix: str = ""):
        super().__init__(counters, prefix)
        self.max_top_n = max(self.top_n_for_oracle_dists)
        self.correct_by_up_to_rank: Counter[int] = Counter()
        self.incorrect_by_exact_rank: Counter[int] = Counter()
        self.incorrect_past_max_rank = 0
        self.total_credit = 0
        self.correct_ranks: list[int] = []
        self.oracle_dists_by_top_n: dict[int, list[float]] = {
            n: [] for n in self.top_n_for_oracle_dists
        }

    def record_doc_result(self, res: RankedDocEvalResult) -> None:
        super().record_doc_result(res)
        corrank = res.correct_rank
        self.correct_ranks.append(corrank)
        self.record_result(corrank == 1, None if corrank == 1 else self._incorrect_reason(corrank))
        if corrank <= self.max_top_n:
            self.total_credit += self.max_top_n + 1 - corrank
            for n in self.top_n_for_oracle_dists:
                if corrank <= n:
                    self.correct_by_up_to_rank[n] += 1
        if corrank != 1:
            if corrank <= self.max_rank_for_exact_incorrect:
                self.incorrect_by_exact_rank[corrank] += 1
            else:
                self.incorrect_past_max_rank += 1
        self.record_oracle_top_n(res)

    def _incorrect_reason(self, corrank: int) -> str:
        if corrank <= self.max_rank_for_exact_incorrect:
            return f"rank_{corrank}"
        return "past_max_rank"

    def record_oracle_top_n(self, res: RankedDocEvalResult) -> None:
        """Best true distance among the central points of the top N predicted cells."""
        dists = res.top_n_true_dists(self.max_top_n)
        best = metrics.running_minimum(dists)
        for n in self.top_n_for_oracle_dists:
            if n <= len(best):
                self.oracle_dists_by_top_n[n].append(float(best[n - 1]))

    def output_other_stats(self) -> None:
        super().output_other_stats()
        total = self.total_instances
        for n in self.top_n_for_oracle_dists:
            fraction = self.output_fraction(
                f"Percent correct at rank <= {n}", self.correct_by_up_to_rank[n], total
            )
            self.note_result(f"correct-at-rank-{n}", fraction)
        for rank in range(2, self.max_rank_for_exact_incorrect + 1):
            self.output_fraction(f"Percent incorrect at rank {rank}", self.incorrect_by_exact_rank[rank], total)
        self.output_fraction(
            f"Percent incorrect past rank {self.max_rank_for_exact_incorrect}",
            self.incorrect_past_max_rank,
            total,
        )
        credit = self.output_fraction(
            "Percent correct with partial credit", self.total_credit, self.max_top_n * total
        )
        self.note_result("partial-credit", credit)
        mrr = metrics.mean_reciprocal_rank(self.correct_ranks, self.max_top_n)
        logger.info("%sMean reciprocal rank = %.4f", self._log_prefix(), mrr)
        self.note_result("mean-reciprocal-rank", mrr)
        for n, dists in self.oracle_dists_by_top_n.items():
            if not dists:
                continue
            mean = metrics.mean_distance(dists)
            median = metrics.median_distance(dists)
            logger.info(
                "%sOracle true error distance in top %d: mean %.2f, median %.2f",
                self._log_prefix(), n, mean, median,
            )
            self.note_result(f"mean-oracle-top-{n}-true-error-distance", mean)
            self.note_result(f"median-oracle-top-{n}-true-error-distance", median)


class CoordDocEvalStats(DocEvalStats):
    """For point predictions; there is no notion of a correct cell being hit."""

    def record_doc_result(self, res: DocEvalResult) -> None:
        super().record_doc_result(res)
        self.record_result(False)

    def output_correct_results(self) -> None:
        pass

    def output_incorrect_results(self) -> None:
        pass


def range_label(value: float, boundaries: tuple[int, ...] = NUM_DOCS_IN_CELL_BOUNDARIES) -> str:
    """Label of the half-open range of `boundaries` holding `value`, e.g. "10-24" or "100+"."""
    i = bisect_right(boundaries, value)
    if i == 0:
        return f"<{boundaries[0]}"
    if i == len(boundaries):
        return f"{boundaries[-1]}+"
    return f"{boundaries[i - 1]}-{boundaries[i] - 1}"


class GroupedDocEvalStats:
    """
    Statistics over all documents, plus the same statistics grouped by the
    number of training documents in each document's correct cell.
    """

    def __init__(
        self,
        counters: CounterSink | None = None,
        create_stats: Callable[[CounterSink, str], DocEvalStats] = RankedDocEvalStats,
        boundaries: tuple[int, ...] = NUM_DOCS_IN_CELL_BOUNDARIES,
    ):
        self.counters = counters if counters is not None else ExperimentStats()
        self.create_stats = create_stats
        self.boundaries = boundaries
        self.all_document = create_stats(self.counters, "")
        self.docs_by_num_docs_in_correct_cell: dict[str, DocEvalStats] = {}

    @property
    def total_instances(self) -> int:
        return self.all_document.total_instances

    @property
    def correct_instances(self) -> int:
        return self.all_document.correct_instances

    @property
    def incorrect_instances(self) -> int:
        return self.all_document.incorrect_instances

    def stats_for_num_docs(self, num_docs: int) -> DocEvalStats:
        label = range_label(num_docs, self.boundaries)
        stats = self.docs_by_num_docs_in_correct_cell.get(label)
        if stats is None:
            stats = self.create_stats(self.counters, f"num_documents_in_correct_cell.byrange.{label}")
            self.docs_by_num_docs_in_correct_cell[label] = stats
        return stats

    def record_doc_result(self, res: DocEvalResult) -> None:
        self.all_document.record_doc_result(res)
        self.stats_for_num_docs(res.correct.num_docs_in_correct_cell).record_doc_result(res)

    def output_results(self, all_results: bool = True) -> None:
        self.all_document.output_results()
        if not all_results:
            return
        for label in sorted(
            self.docs_by_num_docs_in_correct_cell,
            key=lambda lbl: self.docs_by_num_docs_in_correct_cell[lbl].prefix,
        ):
            logger.info("Results for correct cells with %s training documents:", label)
            self.docs_by_num_docs_in_correct_cell[label].output_results()


# =============================================================================
# Per-document results
# =============================================================================


class CorrectCellInfo:
    """What is known once a document's true coordinate locates its correct cell."""

    def __init__(self, correct_cell, num_docs_in_correct_cell: int, correct_central_point,
                 correct_truedist: float, pred_truedist: float):
        self.correct_cell = correct_cell
        self.num_docs_in_correct_cell = num_docs_in_correct_cell
        self.correct_central_point = correct_central_point
        self.correct_truedist = correct_truedist
        self.pred_truedist = pred_truedist

    @classmethod
    def compute(cls, document, correct_cell, pred_coord) -> CorrectCellInfo:
        central_point = correct_cell.central_point
        return cls(
            correct_cell,
            correct_cell.num_docs,
            central_point,
            document.distance_to_coord(central_point),
            document.distance_to_coord(pred_coord),
        )


def _cell_row(prefix: str, cell) -> dict[str, Any]:
    return {
        prefix: cell.format_indices(),
        f"{prefix}-true-center": str(cell.true_center),
        f"{prefix}-centroid": str(cell.centroid),
        f"{prefix}-central-point": str(cell.central_point),
        f"{prefix}-numdocs": cell.num_docs,
    }


class DocEvalResult:
    """A predicted coordinate for one document, with error statistics when its coordinate is known."""

    def __init__(self, document, pred_coord, correct: CorrectCellInfo | None = None):
        self.document = document
        self.pred_coord = pred_coord
        self.correct = correct

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.document.title!r}, {self.pred_coord})"

    def describe(self) -> str:
        handler = self.document.coord_handler
        text = f"{self.document.title}: predicted {handler.format_coord(self.pred_coord)}"
        if self.correct is not None:
            text += (
                f", true {handler.format_coord(self.document.coord)}, "
                f"error {handler.format_distance(self.correct.pred_truedist)}"
            )
        return text

    def to_row(self) -> dict[str, Any]:
        doc = self.document
        row: dict[str, Any] = {
            "title": doc.title,
            "pred-coord": str(self.pred_coord),
            "numtypes": doc.grid_lm.num_types,
            "numtokens": doc.grid_lm.num_tokens,
            "rerank-lm-numtypes": doc.rerank_lm.num_types,
            "rerank-lm-numtokens": doc.rerank_lm.num_tokens,
        }
        if self.correct is not None:
            row.update(
                {
                    "error-dist": self.correct.pred_truedist,
                    "oracle-dist": self.correct.correct_truedist,
                    "correct-coord": str(doc.coord),
                }
            )
            row.update(_cell_row("correct-cell", self.correct.correct_cell))
        return row


class RankedDocEvalResult(DocEvalResult):
    def __init__(self, document, pred_cells: RankedCells, correct_rank: int | None,
                 correct: CorrectCellInfo | None = None):
        super().__init__(document, pred_cells[0][0].central_point, correct)
        self.pred_cells = pred_cells
        self.correct_rank = correct_rank

    @property
    def pred_cell(self):
        return self.pred_cells[0][0]

    def top_n_true_dists(self, n: int) -> list[float]:
        return [self.document.distance_to_coord(cell.central_point) for cell, _ in self.pred_cells[:n]]

    def to_row(self) -> dict[str, Any]:
        row = super().to_row()
        row.update(_cell_row("pred-cell", self.pred_cell))
        if self.correct_rank is not None:
            row["correct-rank"] = self.correct_rank
        return row


class RerankedDocEvalResult(RankedDocEvalResult):
    def __init__(self, document, pred_cells: RankedCells, correct_rank: int | None,
                 initial_pred_cells: RankedCells, initial_correct_rank: int | None,
                 correct: CorrectCellInfo | None = None):
        super().__init__(document, pred_cells, correct_rank, correct)
        self.initial_pred_cells = initial_pred_cells
        self.initial_correct_rank = initial_correct_rank

    def to_row(self) -> dict[str, Any]:
        row = super().to_row()
        initial = _cell_row("initial-pred-cell", self.initial_pred_cells[0][0])
        del initial["initial-pred-cell-centroid"]
        row.update(initial)
        if self.initial_correct_rank is not None:
            row["initial-correct-rank"] = self.initial_correct_rank
        return row


class CoordDocEvalResult(DocEvalResult):
    """A point prediction not tied to a single cell."""


# =============================================================================
# Evaluators
# =============================================================================


class CorpusEvaluator:
    """
    Drives evaluation over a stream of documents.

    Subclasses implement `evaluate_document` (pure; may run in a worker
    thread) and `record_doc_result` (runs on the calling thread).
    """

    def __init__(self, config: GridLocateConfig, counters: CounterSink | None = None):
        self.config = config
        self.counters = counters if counters is not None else ExperimentStats()
        self.skip_initial = config.skip_initial_test_docs
        self.skip_n = 0
        self.documents_processed = 0
        self.documents_skipped = 0
        self.results: list[DocEvalResult] = []
        self._lock = threading.Lock()

    # ----- sampling policy and budgets -----

    def would_skip_by_parameters(self) -> str | None:
        """Reason to skip the next document, or None to process it."""
        if self.skip_initial > 0:
            self.skip_initial -= 1
            return SKIP_INITIAL_REASON
        if self.skip_n > 0:
            self.skip_n -= 1
            return SKIP_NTH_REASON
        self.skip_n = self.config.every_nth_test_doc - 1
        return None

    def budget_exhausted(self, start: float, started: int) -> bool:
        if self.config.num_test_docs > 0 and started >= self.config.num_test_docs:
            logger.info("Stopping after %d documents (num_test_docs)", started)
            return True
        if self.config.max_time_per_stage > 0 and time.monotonic() - start >= self.config.max_time_per_stage:
            logger.info("Stopping after %.1fs (max_time_per_stage)", time.monotonic() - start)
            return True
        return False

    # ----- per document -----

    def evaluate_document(self, doc) -> DocEvalResult:
        raise NotImplementedError

    def record_doc_result(self, result: DocEvalResult) -> None:
        raise NotImplementedError

    def _score(self, doc) -> tuple[Any, DocEvalResult | None, str | None]:
        try:
            return doc, self.evaluate_document(doc), None
        except DegenerateDistributionError as e:
            logger.warning("Cannot evaluate %r: %s", doc, e)
            return doc, None, DEGENERATE_REASON

    def note_skipped(self, doc, reason: str) -> None:
        self.documents_skipped += 1
        self.counters.increment("documents.skipped")
        self.counters.increment(f"documents.skipped.{reason}")
        logger.debug("Skipped %r: %s", doc, reason)

    def fold(self, doc, result: DocEvalResult | None, reason: str | None) -> None:
        with self._lock:
            if result is None:
                self.note_skipped(doc, reason)
                return
            self.documents_processed += 1
            self.counters.increment("documents.processed")
            self.record_doc_result(result)
            self.results.append(result)
        if self.config.print_results:
            logger.info("%s", result.describe())

    # ----- driving -----

    def _selected(self, docs: Iterable, start: float) -> Iterable:
        started = 0
        for doc in docs:
            if self.budget_exhausted(start, started):
                return
            reason = self.would_skip_by_parameters()
            if reason is not None:
                self.note_skipped(doc, reason)
                continue
            started += 1
            yield doc

    def evaluate_documents(self, docs: Iterable) -> list[DocEvalResult]:
        """
        Evaluate `docs` and return the results of the processed ones.

        With `num_workers > 1`, documents are scored in a thread pool while
        results are folded in input order on this thread.
        """
        start = time.monotonic()
        num_workers = self.config.num_workers
        if num_workers == 1:
            for doc in self._selected(docs, start):
                self.fold(*self._score(doc))
        else:
            pending: deque[Future] = deque()
            with ThreadPoolExecutor(max_workers=num_workers) as executor:
                for doc in self._selected(docs, start):
                    pending.append(executor.submit(self._score, doc))
                    while len(pending) >= 2 * num_workers:
                        self.fold(*pending.popleft().result())
                while pending:
                    self.fold(*pending.popleft().result())
        logger.info(
            "Evaluated %d documents (%d skipped) in %.2fs",
            self.documents_processed,
            self.documents_skipped,
            time.monotonic() - start,
        )
        return self.results

    def output_results(self) -> None:
        raise NotImplementedError


class GridEvaluator(CorpusEvaluator):
    """Evaluates documents against a finalized grid through a ranker."""

    def __init__(
        self,
        ranker: GridRanker,
        evalstats: GroupedDocEvalStats | DocEvalStats,
        config: GridLocateConfig | None = None,
        counters: CounterSink | None = None,
    ):
        super().__init__(
            config or ranker.grid.config, evalstats.counters if counters is None else counters
        )
        self.ranker = ranker
        self.grid = ranker.grid
        self.evalstats = evalstats

    def find_correct_cell(self, doc):
        if not doc.has_coord:
            return None
        return self.grid.find_best_cell_for_coord(doc.coord, create_non_recorded=True)

    def evaluate_document(self, doc) -> DocEvalResult:
        if not doc.lang_model.finished:
            raise InvariantViolation(f"Language model of {doc!r} is not finished")
        return self.imp_evaluate_document(doc, self.find_correct_cell(doc))

    def imp_evaluate_document(self, doc, correct_cell) -> DocEvalResult:
        raise NotImplementedError

    def record_doc_result(self, result: DocEvalResult) -> None:
        if result.correct is None:
            self.counters.increment("documents.no_coordinate_for_evaluation")
            return
        self.evalstats.record_doc_result(result)
        if result.correct.num_docs_in_correct_cell == 0:
            self.counters.increment("documents.no_training_documents_in_cell")

    def output_results(self) -> None:
        self.evalstats.output_results()


def get_correct_rank(ranked: RankedCells, correct_cell) -> int:
    """1-based rank of `correct_cell`, or `CORRECT_RANK_NOT_FOUND`."""
    for rank, (cell, _) in enumerate(ranked, start=1):
        if cell is correct_cell:
            return rank
    return CORRECT_RANK_NOT_FOUND


class RankedGridEvaluator(GridEvaluator):
    """Predicts the central point of the best-ranked cell."""

    def return_ranked_cells(self, doc, correct_cell) -> tuple[RankedCells, RankedCells | None]:
        """The final ranking and, when reranking, the initial one."""
        if self.config.oracle_results and correct_cell is not None:
            return [(correct_cell, 0.0)], None
        if isinstance(self.ranker, Reranker):
            initial, reranked = self.ranker.evaluate_with_initial_ranking(doc, correct_cell)
            return reranked, initial
        return self.ranker.evaluate(doc, correct_cell), None

    def imp_evaluate_document(self, doc, correct_cell) -> RankedDocEvalResult:
        ranked, initial = self.return_ranked_cells(doc, correct_cell)
        if not ranked:
            raise DegenerateDistributionError("No non-empty cells to rank")
        pred_coord = ranked[0][0].central_point
        correct = None
        rank = initial_rank = None
        if correct_cell is not None:
            correct = CorrectCellInfo.compute(doc, correct_cell, pred_coord)
            rank = get_correct_rank(ranked, correct_cell)
            if initial is not None:
                initial_rank = get_correct_rank(initial, correct_cell)
        if initial is None:
            return RankedDocEvalResult(doc, ranked, rank, correct)
        return RerankedDocEvalResult(doc, ranked, rank, initial, initial_rank, correct)


class MeanShiftGridEvaluator(GridEvaluator):
    """Predicts the mean-shift mode of the central points of the `k_best` top cells."""

    def __init__(
        self,
        ranker: GridRanker,
        evalstats: GroupedDocEvalStats | DocEvalStats,
        k_best: int,
        mean_shift: MeanShift,
        config: GridLocateConfig | None = None,
        counters: CounterSink | None = None,
    ):
        super().__init__(ranker, evalstats, config, counters)
        if k_best < 1:
            raise ValueError("k_best must be at least 1")
        self.k_best = k_best
        self.mean_shift = mean_shift

    def imp_evaluate_document(self, doc, correct_cell) -> CoordDocEvalResult:
        ranked = self.ranker.evaluate(doc, correct_cell)
        if not ranked:
            raise DegenerateDistributionError("No non-empty cells to rank")
        top_points = [cell.central_point for cell, _ in ranked[: self.k_best]]
        pred_coord = self.mean_shift.find_mode(top_points)
        correct = None
        if correct_cell is not None:
            correct = CorrectCellInfo.compute(doc, correct_cell, pred_coord)
        return CoordDocEvalResult(doc, pred_coord, correct)


def create_evaluator(
    ranker: GridRanker,
    config: GridLocateConfig | None = None,
    counters: CounterSink | None = None,
) -> GridEvaluator:
    config = config or ranker.grid.config
    counters = counters if counters is not None else ranker.grid.docfact.counters
    if config.evaluator == "mean-shift":
        stats = GroupedDocEvalStats(counters, CoordDocEvalStats)
        mean_shift = MeanShift(
            config.mean_shift_window, config.mean_shift_max_stddev, config.mean_shift_max_iterations
        )
        return MeanShiftGridEvaluator(ranker, stats, config.k_best, mean_shift, config, counters)
    stats = GroupedDocEvalStats(counters, RankedDocEvalStats)
    return RankedGridEvaluator(ranker, stats, config, counters)


__all__ = [
    "EvalStats",
    "DocEvalStats",
    "RankedDocEvalStats",
    "CoordDocEvalStats",
    "GroupedDocEvalStats",
    "CorrectCellInfo",
    "DocEvalResult",
    "RankedDocEvalResult",
    "RerankedDocEvalResult",
    "CoordDocEvalResult",
    "CorpusEvaluator",
    "GridEvaluator",
    "RankedGridEvaluator",
    "MeanShiftGridEvaluator",
    "create_evaluator",
    "get_correct_rank",
    "range_label",
    "SKIP_INITIAL_REASON",
    "SKIP_NTH_REASON",
    "DEGENERATE_REASON",
]
