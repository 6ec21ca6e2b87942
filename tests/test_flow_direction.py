"""
Tests for exit classification, depression filling and D8 flow direction.

D8 Direction Encoding (ESRI ArcGIS):
  8  4  2
 16  x  1
 32 64 128
"""

import numpy as np
import pytest

from src.catchment.errors import DomainError
from src.catchment.flow_accumulation import topological_order
from src.catchment.flow_direction import (
    D8_CODES,
    NEIGHBOR_CODES,
    NEIGHBOR_OFFSETS,
    OPPOSITE,
    compute_flow_direction,
    condition_dem,
    identify_exits,
    receivers_from_codes,
    step_lengths,
)
from src.catchment.grid import prepare_grid


class TestDirectionTables:
    """Test the direction constants stay consistent."""

    def test_tie_break_order(self):
        # N, E, S, W, NE, SE, SW, NW
        np.testing.assert_array_equal(NEIGHBOR_CODES, [4, 1, 64, 16, 2, 128, 32, 8])

    def test_opposites(self):
        for k, opp in enumerate(OPPOSITE):
            np.testing.assert_array_equal(NEIGHBOR_OFFSETS[k], -NEIGHBOR_OFFSETS[opp])

    def test_codes_are_esri(self):
        assert D8_CODES == {1, 2, 4, 8, 16, 32, 64, 128}


class TestIdentifyExits:
    """Test identify_exits() edge modes and no-data adjacency."""

    def test_auto_without_outlets_uses_boundary(self):
        grid = prepare_grid(np.ones((4, 5)), nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="auto")
        assert exits.sum() == 14
        assert not exits[1:-1, 1:-1].any()

    def test_auto_with_outlets_uses_only_outlets(self):
        grid = prepare_grid(np.ones((4, 5)), nodata=-9999, dx=1, dy=1)
        outlets = np.zeros((4, 5), dtype=bool)
        outlets[3, 2] = True

        exits = identify_exits(grid, outlets, edge_mode="auto")

        np.testing.assert_array_equal(exits, outlets)

    def test_all_adds_boundary_to_outlets(self):
        grid = prepare_grid(np.ones((4, 5)), nodata=-9999, dx=1, dy=1)
        outlets = np.zeros((4, 5), dtype=bool)
        outlets[2, 2] = True

        exits = identify_exits(grid, outlets, edge_mode="all")

        assert exits[2, 2]
        assert exits.sum() == 15

    def test_none_ignores_boundary(self):
        grid = prepare_grid(np.ones((3, 3)), nodata=-9999, dx=1, dy=1)
        assert not identify_exits(grid, None, edge_mode="none").any()

    def test_cells_next_to_nodata_are_exits(self):
        dem = np.ones((5, 5))
        dem[2, 2] = -9999
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)

        exits = identify_exits(grid, None, edge_mode="none")

        assert exits.sum() == 8
        assert exits[1:4, 1:4].sum() == 8
        assert not exits[2, 2]

    def test_nodata_never_exit(self):
        dem = np.ones((3, 3))
        dem[0, 0] = -9999
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        outlets = np.ones((3, 3), dtype=bool)

        exits = identify_exits(grid, outlets, edge_mode="all")

        assert not exits[0, 0]

    def test_unknown_edge_mode(self):
        grid = prepare_grid(np.ones((3, 3)), nodata=-9999, dx=1, dy=1)
        with pytest.raises(ValueError, match="edge_mode"):
            identify_exits(grid, None, edge_mode="sideways")


class TestSteepestDescent:
    """Test steepest descent direction and tie-breaking."""

    def test_flows_east_on_eastward_slope(self):
        dem = np.array([[10.0, 9.0, 8.0]] * 3)
        flow = _flow_with_boundary_exits(dem)
        assert flow.codes[1, 1] == 1

    def test_exits_have_code_zero(self):
        dem = np.array([[10.0, 9.0, 8.0]] * 3)
        flow = _flow_with_boundary_exits(dem)
        assert (flow.codes[flow.exits] == 0).all()

    def test_tie_prefers_north_over_east(self):
        dem = np.array([
            [6.0, 4.0, 6.0],
            [6.0, 5.0, 4.0],
            [6.0, 6.0, 6.0],
        ])
        flow = _flow_with_boundary_exits(dem)
        assert flow.codes[1, 1] == 4

    def test_tie_prefers_south_over_west(self):
        dem = np.array([
            [9.0, 9.0, 9.0],
            [4.0, 5.0, 9.0],
            [9.0, 4.0, 9.0],
        ])
        flow = _flow_with_boundary_exits(dem)
        assert flow.codes[1, 1] == 64

    def test_anisotropic_cells(self):
        # N drops 1 over dy=10 m, E drops 0.5 over dx=1 m
        dem = np.array([
            [6.0, 4.0, 6.0],
            [6.0, 5.0, 4.5],
            [6.0, 6.0, 6.0],
        ])
        flow = _flow_with_boundary_exits(dem, dx=1.0, dy=10.0)
        assert flow.codes[1, 1] == 1

    def test_never_flows_uphill(self):
        rng = np.random.default_rng(42)
        dem = rng.uniform(0, 100, size=(25, 25))
        grid = prepare_grid(dem, nodata=-9999, dx=30, dy=30)
        exits = identify_exits(grid, None, edge_mode="all")

        flow = compute_flow_direction(grid, exits, allow_pits=True)

        receivers = flow.receivers
        draining = np.flatnonzero(receivers >= 0)
        elev = flow.elevation.ravel()
        assert (elev[receivers[draining]] <= elev[draining]).all()

    def test_result_is_acyclic(self):
        rng = np.random.default_rng(3)
        dem = np.round(rng.uniform(0, 5, size=(20, 20)))
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        flow = compute_flow_direction(grid, exits, allow_pits=True)

        order = topological_order(flow.receivers, grid.valid, flow.elevation)
        assert order.size == grid.valid.sum()

    def test_every_valid_cell_drains_or_exits(self):
        rng = np.random.default_rng(11)
        dem = rng.uniform(0, 10, size=(15, 15))
        dem[4:7, 4:7] = -9999
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        flow = compute_flow_direction(grid, exits, allow_pits=True)

        draining = flow.codes != 0
        np.testing.assert_array_equal(draining | flow.exits, grid.valid)
        assert (flow.codes[~grid.valid] == 0).all()

    def test_does_not_flow_into_nodata(self):
        dem = np.array([
            [5.0, 5.0, 5.0, 5.0],
            [5.0, 4.0, 3.0, -9999.0],
            [5.0, 5.0, 5.0, 5.0],
        ])
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="none")

        flow = compute_flow_direction(grid, exits)

        receivers = flow.receivers
        targets = receivers[receivers >= 0]
        assert grid.valid.ravel()[targets].all()


class TestFlatResolution:
    """Test BFS draining of equal-elevation areas."""

    def test_flat_grid_drains_to_center_exit(self):
        grid = prepare_grid(np.full((3, 3), 5.0), nodata=-9999, dx=1, dy=1)
        outlets = np.zeros((3, 3), dtype=bool)
        outlets[1, 1] = True
        exits = identify_exits(grid, outlets, edge_mode="auto")

        flow = compute_flow_direction(grid, exits)

        receivers = flow.receivers
        for idx in range(9):
            if idx == 4:
                assert receivers[idx] == -1
            else:
                assert receivers[idx] == 4
        assert not flow.synthetic_exits.any()

    def test_flat_strip_drains_toward_exit(self):
        grid = prepare_grid(np.full((1, 5), 2.0), nodata=-9999, dx=1, dy=1)
        outlets = np.zeros((1, 5), dtype=bool)
        outlets[0, 0] = True
        exits = identify_exits(grid, outlets, edge_mode="none")

        flow = compute_flow_direction(grid, exits)

        np.testing.assert_array_equal(flow.codes, [[0, 16, 16, 16, 16]])

    def test_flat_drains_to_nearest_lower_edge(self):
        dem = np.array([
            [9.0, 9.0, 9.0, 9.0, 9.0],
            [9.0, 3.0, 3.0, 3.0, 9.0],
            [9.0, 3.0, 3.0, 3.0, 2.0],
            [9.0, 3.0, 3.0, 3.0, 9.0],
            [9.0, 9.0, 9.0, 9.0, 9.0],
        ])
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        outlets = np.zeros_like(dem, dtype=bool)
        outlets[2, 4] = True
        exits = identify_exits(grid, outlets, edge_mode="none")

        flow = compute_flow_direction(grid, exits)

        # The cell beside the spill drains straight out
        assert flow.codes[2, 3] == 1
        # The far side of the flat reaches the spill cell in three steps
        receivers = flow.receivers
        path = [2 * 5 + 1]
        while receivers[path[-1]] >= 0:
            path.append(int(receivers[path[-1]]))
        assert path[-1] == 2 * 5 + 4
        assert len(path) == 4
        assert not flow.synthetic_exits.any()


class TestPits:
    """Test pit detection and synthetic exits."""

    def test_pit_raises_domain_error(self):
        grid = prepare_grid(create_pit_dem(), nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        with pytest.raises(DomainError, match="first pit at") as excinfo:
            compute_flow_direction(grid, exits)

        assert excinfo.value.cells == [(2, 2)]

    def test_allow_pits_creates_synthetic_exit(self):
        grid = prepare_grid(create_pit_dem(), nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        flow = compute_flow_direction(grid, exits, allow_pits=True)

        assert flow.synthetic_exits[2, 2]
        assert flow.synthetic_exits.sum() == 1
        assert flow.exits[2, 2]
        assert flow.codes[2, 2] == 0
        # Inner ring drains into the pit
        receivers = flow.receivers
        assert receivers[1 * 5 + 2] == 12
        assert receivers[2 * 5 + 1] == 12

    def test_flat_pit_region_gets_one_synthetic_exit(self):
        dem = np.full((6, 6), 9.0)
        dem[2:4, 2:4] = 1.0
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        flow = compute_flow_direction(grid, exits, allow_pits=True)

        # First cell of the region in row-major order becomes the exit
        assert flow.synthetic_exits.sum() == 1
        assert flow.synthetic_exits[2, 2]
        assert flow.codes[2, 3] != 0
        assert flow.codes[3, 3] != 0

    def test_input_exits_not_modified(self):
        grid = prepare_grid(create_pit_dem(), nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")
        before = exits.copy()

        compute_flow_direction(grid, exits, allow_pits=True)

        np.testing.assert_array_equal(exits, before)


class TestConditionDem:
    """Test priority-flood depression filling."""

    def test_fill_removes_pit(self):
        grid = prepare_grid(create_pit_dem(), nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        filled = condition_dem(grid, exits, epsilon=1e-3)
        flow = compute_flow_direction(grid, exits, elevation=filled)

        assert filled[2, 2] > 5.0
        assert flow.codes[2, 2] != 0
        assert not flow.synthetic_exits.any()

    def test_fill_never_lowers(self):
        rng = np.random.default_rng(5)
        dem = rng.uniform(0, 20, size=(12, 12))
        grid = prepare_grid(dem, nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        filled = condition_dem(grid, exits)

        assert (filled >= grid.elevation).all()
        np.testing.assert_array_equal(filled[exits], grid.elevation[exits])

    def test_fill_leaves_grid_untouched(self):
        grid = prepare_grid(create_pit_dem(), nodata=-9999, dx=1, dy=1)
        exits = identify_exits(grid, None, edge_mode="all")

        condition_dem(grid, exits)

        assert grid.elevation[2, 2] == 1.0


class TestReceivers:
    """Test code-to-index conversions."""

    def test_receivers_from_codes(self):
        codes = np.array([
            [1, 64, 0],
            [0, 8, 16],
        ], dtype=np.uint8)
        np.testing.assert_array_equal(receivers_from_codes(codes), [1, 4, -1, -1, 0, 4])

    def test_step_lengths(self):
        codes = np.array([[1, 64, 2, 0]], dtype=np.uint8)
        lengths = step_lengths(codes, dx=3.0, dy=4.0)
        np.testing.assert_allclose(lengths, [3.0, 4.0, 5.0, 0.0])


# ===== Helper Functions for Test Data Generation =====


def _flow_with_boundary_exits(dem, dx=1.0, dy=1.0):
    grid = prepare_grid(dem, nodata=-9999, dx=dx, dy=dy)
    exits = identify_exits(grid, None, edge_mode="all")
    return compute_flow_direction(grid, exits)


def create_pit_dem(size=5, rim=5.0, bottom=1.0):
    """Flat square with one low cell in the middle."""
    dem = np.full((size, size), rim)
    dem[size // 2, size // 2] = bottom
    return dem
