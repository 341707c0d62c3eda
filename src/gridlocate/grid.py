"""
Grids: partitions of coordinate space into cells.

A grid is built in two phases. While BUILDING, training documents are routed
into cells by `add_training_documents_to_grid()`. `initialize_cells()` moves
the grid to FINALIZED exactly once: it fixes the set of enumerable cells and
finishes every cell's language model. Afterwards only lookup
(`find_best_cell_for_coord`) and enumeration (`iter_nonempty_cells`) are
valid. Using a grid in the wrong phase raises `GridStateError`.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from enum import Enum
from typing import TYPE_CHECKING

from tqdm import tqdm

from gridlocate.cell import FixedGridCell, GridCell
from gridlocate.config import GridLocateConfig
from gridlocate.coords import (
    MAXIMUM_LATITUDE,
    MINIMUM_LATITUDE,
    MINIMUM_LONGITUDE,
    CoordHandling,
    SphereCoord,
    make_sphere_coord,
)
from gridlocate.errors import GridStateError

if TYPE_CHECKING:
    from gridlocate.documents import GridDoc, GridDocFactory

logger = logging.getLogger(__name__)


class GridState(str, Enum):
    BUILDING = "building"
    FINALIZED = "finalized"


class Grid:
    """Base class; subclasses implement the routing, lookup and cell set."""

    short_type = "base"

    def __init__(self, docfact: GridDocFactory, config: GridLocateConfig | None = None):
        self.docfact = docfact
        self.config = config or docfact.config
        self.center_method = self.config.center_method
        self.state = GridState.BUILDING
        self.total_num_cells = 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.state.value}, {self.total_num_cells} cells)"

    def _require(self, state: GridState, operation: str) -> None:
        if self.state is not state:
            raise GridStateError(
                f"{operation}() requires a {state.value} grid, but {self!r} is {self.state.value}"
            )

    @property
    def show_progress(self) -> bool:
        return self.config.show_progress

    # ----- building -----

    def add_training_documents_to_grid(self, docs: Iterable[GridDoc]) -> None:
        self._require(GridState.BUILDING, "add_training_documents_to_grid")
        self._add_training_documents(docs)

    def _add_training_documents(self, docs: Iterable[GridDoc]) -> None:
        raise NotImplementedError

    def default_add_training_documents_to_grid(self, docs: Iterable[GridDoc], add_document) -> None:
        """Feed documents with a coordinate to `add_document`, counting the rest."""
        counters = self.docfact.counters
        for doc in tqdm(docs, desc="Adding documents to grid", disable=not self.show_progress):
            if doc.coord is None:
                counters.increment("documents.no_coordinate_for_grid")
                continue
            add_document(doc)
            counters.increment("documents.added_to_grid")

    def initialize_cells(self) -> None:
        self._require(GridState.BUILDING, "initialize_cells")
        self._initialize_cells()
        self.state = GridState.FINALIZED
        self.total_num_cells = sum(1 for _ in self._nonempty_cells())
        logger.info("%s grid finalized with %d non-empty cells", self.short_type, self.total_num_cells)

    def _initialize_cells(self) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        self.initialize_cells()

    # ----- querying -----

    def find_best_cell_for_coord(self, coord, create_non_recorded: bool = False) -> GridCell | None:
        """
        The cell owning `coord`.

        With `create_non_recorded`, a coordinate in empty space gets a fresh
        empty cell that is not added to the grid; otherwise None is returned.
        """
        self._require(GridState.FINALIZED, "find_best_cell_for_coord")
        return self._find_best_cell_for_coord(coord, create_non_recorded)

    def _find_best_cell_for_coord(self, coord, create_non_recorded: bool) -> GridCell | None:
        raise NotImplementedError

    def iter_nonempty_cells(self) -> list[GridCell]:
        self._require(GridState.FINALIZED, "iter_nonempty_cells")
        return list(self._nonempty_cells())

    def _nonempty_cells(self) -> Iterable[GridCell]:
        raise NotImplementedError

    @property
    def num_nonempty_cells(self) -> int:
        return self.total_num_cells


class FixedGrid(Grid):
    """
    Uniform latitude/longitude tiling.

    The globe is tiled into square regions of `degrees_per_cell / width_of_cell`
    degrees. A cell is a square of `width_of_cell` x `width_of_cell` regions
    identified by the region indices of its south-west corner, so with a
    width above 1 neighbouring cells overlap and a document is added to every
    cell covering its region. Cells wrap around in longitude.
    """

    short_type = "fixed"

    def __init__(self, docfact: GridDocFactory, config: GridLocateConfig | None = None):
        super().__init__(docfact, config)
        self.width_of_cell = self.config.width_of_cell
        self.degrees_per_region = self.config.degrees_per_cell / self.width_of_cell
        self.minimum_latind = math.floor(MINIMUM_LATITUDE / self.degrees_per_region)
        self.maximum_latind = math.ceil(MAXIMUM_LATITUDE / self.degrees_per_region) - 1
        self.minimum_longind = math.floor(MINIMUM_LONGITUDE / self.degrees_per_region)
        self.num_longinds = round(360.0 / self.degrees_per_region)
        self.corner_to_cell: dict[tuple[int, int], FixedGridCell] = {}

    def _wrap_longind(self, longind: int) -> int:
        return (longind - self.minimum_longind) % self.num_longinds + self.minimum_longind

    def coord_to_tiling_region_indices(self, coord: SphereCoord) -> tuple[int, int]:
        latind = math.floor(coord.lat / self.degrees_per_region)
        latind = min(max(latind, self.minimum_latind), self.maximum_latind)
        longind = self._wrap_longind(math.floor(coord.long / self.degrees_per_region))
        return latind, longind

    def coord_to_cell_indices(self, coord: SphereCoord) -> tuple[int, int]:
        """Indices of the cell whose central region holds `coord`."""
        offset = (self.width_of_cell - 1) / 2.0 * self.degrees_per_region
        latind = math.floor((coord.lat - offset) / self.degrees_per_region)
        latind = min(max(latind, self.minimum_latind - self.width_of_cell + 1), self.maximum_latind)
        longind = self._wrap_longind(math.floor((coord.long - offset) / self.degrees_per_region))
        return latind, longind

    def region_indices_to_coord(self, latind: float, longind: float) -> SphereCoord:
        return make_sphere_coord(
            latind * self.degrees_per_region,
            longind * self.degrees_per_region,
            CoordHandling.COERCE,
        )

    def _add_training_documents(self, docs: Iterable[GridDoc]) -> None:
        def add_document(doc: GridDoc) -> None:
            latind, longind = self.coord_to_tiling_region_indices(doc.coord)
            for i in range(latind - self.width_of_cell + 1, latind + 1):
                for j in range(longind - self.width_of_cell + 1, longind + 1):
                    key = (i, self._wrap_longind(j))
                    cell = self.corner_to_cell.get(key)
                    if cell is None:
                        cell = FixedGridCell(self, *key)
                        self.corner_to_cell[key] = cell
                    cell.add_document(doc)

        self.default_add_training_documents_to_grid(docs, add_document)

    def _initialize_cells(self) -> None:
        for cell in tqdm(
            self.corner_to_cell.values(), desc="Finishing cells", disable=not self.show_progress
        ):
            cell.finish()

    def _find_best_cell_for_coord(
        self, coord: SphereCoord, create_non_recorded: bool
    ) -> FixedGridCell | None:
        key = self.coord_to_cell_indices(coord)
        cell = self.corner_to_cell.get(key)
        if cell is None and create_non_recorded:
            cell = FixedGridCell(self, *key)
        return cell

    def _nonempty_cells(self) -> Iterable[FixedGridCell]:
        return (cell for cell in self.corner_to_cell.values() if cell.num_docs > 0)


__all__ = ["Grid", "GridState", "FixedGrid"]
