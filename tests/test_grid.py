import pytest

from conftest import SEPARATED_RECORDS, build_grid, make_record
from gridlocate.config import GridLocateConfig
from gridlocate.coords import SphereCoord
from gridlocate.documents import GridDocFactory
from gridlocate.errors import GridStateError
from gridlocate.grid import FixedGrid, GridState


def test_each_separated_document_gets_its_own_cell(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    assert grid.state is GridState.FINALIZED
    cells = grid.iter_nonempty_cells()
    assert len(cells) == len(docs) == grid.num_nonempty_cells
    assert all(cell.num_docs == 1 for cell in cells)


def test_lookup_agrees_with_enumeration(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    cells = grid.iter_nonempty_cells()
    for doc in docs:
        cell = grid.find_best_cell_for_coord(doc.coord)
        assert any(cell is other for other in cells)


def test_centroid_is_document_coordinate(separated_fixed_grid):
    grid, docs = separated_fixed_grid
    for doc in docs:
        center = grid.find_best_cell_for_coord(doc.coord).central_point
        assert center.lat == pytest.approx(doc.coord.lat)
        assert center.long == pytest.approx(doc.coord.long)


def test_true_center_method():
    config = GridLocateConfig(grid_type="fixed", degrees_per_cell=1.0, center_method="center")
    grid, (doc,) = build_grid(config, [make_record("a", "10.25,20.25", {"x": 1})])
    cell = grid.find_best_cell_for_coord(doc.coord)
    assert cell.central_point == SphereCoord(10.5, 20.5)
    assert cell.format_indices() == "10,20"


def test_empty_space(separated_fixed_grid):
    grid, _ = separated_fixed_grid
    coord = SphereCoord(0.5, 0.5)
    assert grid.find_best_cell_for_coord(coord) is None
    cell = grid.find_best_cell_for_coord(coord, create_non_recorded=True)
    assert cell is not None
    assert cell.num_docs == 0
    assert all(cell is not other for other in grid.iter_nonempty_cells())


def test_wide_cells_overlap():
    config = GridLocateConfig(grid_type="fixed", degrees_per_cell=1.0, width_of_cell=2)
    grid, (doc,) = build_grid(config, [make_record("a", "10.25,20.25", {"x": 1})])
    cells = grid.iter_nonempty_cells()
    assert len(cells) == 4
    assert all(cell.num_docs == 1 for cell in cells)
    assert grid.find_best_cell_for_coord(doc.coord) in cells


def test_longitude_wraps():
    config = GridLocateConfig(grid_type="fixed", degrees_per_cell=10.0)
    grid = FixedGrid(GridDocFactory(config), config)
    assert grid.coord_to_tiling_region_indices(SphereCoord(5.0, -175.0)) == (0, -18)
    assert grid.coord_to_tiling_region_indices(SphereCoord(5.0, 175.0)) == (0, 17)
    assert grid._wrap_longind(18) == -18


def test_documents_without_coordinates_are_counted(fixed_config):
    docfact = GridDocFactory(fixed_config)
    records = [make_record("a", "1.5,1.5", {"x": 1}), make_record("b", "", {"x": 1}, split="dev")]
    docs = list(docfact.raw_documents_to_documents(records, note_globally=True, finish_globally=True))
    grid = FixedGrid(docfact, fixed_config)
    grid.add_training_documents_to_grid(docs)
    grid.finish()
    assert docfact.counters.get("documents.no_coordinate_for_grid") == 1
    assert docfact.counters.get("documents.added_to_grid") == 1


def test_phase_errors(fixed_config):
    grid, docs = build_grid(fixed_config, SEPARATED_RECORDS[:2])
    with pytest.raises(GridStateError):
        grid.add_training_documents_to_grid(docs)
    with pytest.raises(GridStateError):
        grid.finish()

    building = FixedGrid(grid.docfact, fixed_config)
    with pytest.raises(GridStateError):
        building.find_best_cell_for_coord(docs[0].coord)
    with pytest.raises(GridStateError):
        building.iter_nonempty_cells()


def test_empty_grid(fixed_config):
    grid, docs = build_grid(fixed_config, [])
    assert docs == []
    assert grid.iter_nonempty_cells() == []
