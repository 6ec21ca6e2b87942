"""
D8 flow direction engine.

Assigns every valid cell the direction of steepest descent and classifies
domain exits (outlet cells, cells next to no-data, optionally the grid
boundary). Flats drain toward the nearest already-drained cell; anything
still undrained is a pit and fails the run unless pits are allowed.

D8 Direction Encoding (ESRI ArcGIS):
  8  4  2
 16  x  1
 32 64 128

0 marks a domain exit or a no-data cell (no downstream neighbour).

Distances use the grid cell size: dx for east/west steps, dy for
north/south steps and sqrt(dx² + dy²) for diagonals.

Tie-breaking:
Equal slopes are resolved by a fixed neighbour priority, cardinals
clockwise from north then diagonals clockwise from north-east:
N, E, S, W, NE, SE, SW, NW. The first neighbour in this order wins.
"""

import heapq
import logging
from dataclasses import dataclass, field

import numpy as np
from numba import jit

from src.catchment.errors import DomainError
from src.catchment.grid import Grid

logger = logging.getLogger(__name__)

# Neighbour offsets (row, col) in tie-break priority order
NEIGHBOR_OFFSETS = np.array([
    (-1, 0),   # N
    (0, 1),    # E
    (1, 0),    # S
    (0, -1),   # W
    (-1, 1),   # NE
    (1, 1),    # SE
    (1, -1),   # SW
    (-1, -1),  # NW
], dtype=np.int64)

# ESRI D8 code for each offset above
NEIGHBOR_CODES = np.array([4, 1, 64, 16, 2, 128, 32, 8], dtype=np.uint8)

# Index of the opposite neighbour (N <-> S, E <-> W, NE <-> SW, SE <-> NW)
OPPOSITE = np.array([2, 3, 0, 1, 6, 7, 4, 5], dtype=np.int64)

# Lookup tables indexed by D8 code
CODE_ROW_STEP = np.zeros(256, dtype=np.int64)
CODE_COL_STEP = np.zeros(256, dtype=np.int64)
for (_dr, _dc), _code in zip(NEIGHBOR_OFFSETS, NEIGHBOR_CODES):
    CODE_ROW_STEP[_code] = _dr
    CODE_COL_STEP[_code] = _dc

D8_CODES = frozenset(int(c) for c in NEIGHBOR_CODES)


@dataclass
class FlowDirection:
    """
    Result of the flow direction stage.

    Attributes
    ----------
    codes : np.ndarray (uint8)
        ESRI D8 code per cell, 0 for exits and no-data
    exits : np.ndarray (bool)
        Domain exit cells, including synthetic exits
    synthetic_exits : np.ndarray (bool)
        Pits converted to exits because pits were allowed
    elevation : np.ndarray (float64)
        Elevation the directions were computed from (after conditioning)
    """

    codes: np.ndarray
    exits: np.ndarray
    synthetic_exits: np.ndarray
    elevation: np.ndarray
    _receivers: np.ndarray = field(default=None, repr=False)

    @property
    def shape(self):
        return self.codes.shape

    @property
    def receivers(self) -> np.ndarray:
        """Flat index of each cell's downstream neighbour, -1 for none."""
        if self._receivers is None:
            self._receivers = receivers_from_codes(self.codes)
        return self._receivers


def identify_exits(grid: Grid, outlet_mask: np.ndarray = None, edge_mode: str = "auto") -> np.ndarray:
    """
    Classify domain exit cells.

    Parameters
    ----------
    grid : Grid
        Prepared elevation grid
    outlet_mask : np.ndarray (bool), optional
        Rasterized outlet cells
    edge_mode : {"auto", "all", "none"}, default "auto"
        Boundary exit strategy:
        - "all": every boundary cell is an exit
        - "none": boundary cells are ordinary cells
        - "auto": boundary cells are exits only when no outlet cells exist

    Returns
    -------
    np.ndarray (bool)
        True for exit cells. No-data cells are never exits.

    Examples
    --------
    >>> from src.catchment.grid import prepare_grid
    >>> grid = prepare_grid(np.ones((3, 3)), nodata=-9999, dx=1, dy=1)
    >>> int(identify_exits(grid, edge_mode="all").sum())
    8
    """
    valid = grid.valid
    rows, cols = grid.shape
    exits = np.zeros((rows, cols), dtype=bool)

    has_outlets = outlet_mask is not None and bool(np.any(outlet_mask & valid))
    if has_outlets:
        exits |= outlet_mask

    # Valid cells touching no-data (8-connected)
    if not np.all(valid):
        padded = np.zeros((rows + 2, cols + 2), dtype=bool)
        padded[1:-1, 1:-1] = ~valid
        for dr, dc in NEIGHBOR_OFFSETS:
            exits |= padded[1 + dr:rows + 1 + dr, 1 + dc:cols + 1 + dc]

    if edge_mode == "all" or (edge_mode == "auto" and not has_outlets):
        exits[0, :] = True
        exits[-1, :] = True
        exits[:, 0] = True
        exits[:, -1] = True
    elif edge_mode not in ("auto", "none"):
        raise ValueError(f"Unknown edge_mode {edge_mode!r}")

    exits &= valid
    logger.debug(f"Identified {int(np.count_nonzero(exits)):,} exit cells (edge_mode={edge_mode})")
    return exits


def condition_dem(grid: Grid, exits: np.ndarray, epsilon: float = 1e-4) -> np.ndarray:
    """
    Fill depressions with an epsilon gradient (priority-flood).

    Barnes et al. (2014) priority-flood seeded from the exit cells. Cells
    reached from a lower or equal spill point are raised to the spill
    elevation plus epsilon, so filled areas keep a gradient back toward the
    exits and drain without separate flat handling.

    Parameters
    ----------
    grid : Grid
        Prepared (and possibly carved) grid
    exits : np.ndarray (bool)
        Exit cells used as flood seeds
    epsilon : float, default 1e-4
        Minimum elevation increment per cell in metres

    Returns
    -------
    np.ndarray (float64)
        Conditioned elevation; no-data cells are unchanged

    References
    ----------
    Barnes, R., Lehman, C., & Mulla, D. (2014). Priority-flood: An optimal
    depression-filling and watershed-labeling algorithm for digital elevation
    models. Computers & Geosciences, 62, 117-127.
    """
    rows, cols = grid.shape
    valid = grid.valid
    filled = grid.elevation.copy()

    pq = []
    in_queue = ~valid
    for i, j in zip(*np.nonzero(exits & valid)):
        heapq.heappush(pq, (filled[i, j], int(i), int(j)))
        in_queue[i, j] = True

    filled_count = 0
    while pq:
        elev, r, c = heapq.heappop(pq)
        for dr, dc in NEIGHBOR_OFFSETS:
            ni, nj = r + dr, c + dc
            if not (0 <= ni < rows and 0 <= nj < cols):
                continue
            if in_queue[ni, nj]:
                continue

            if filled[ni, nj] < elev + epsilon:
                filled[ni, nj] = elev + epsilon
                filled_count += 1

            heapq.heappush(pq, (filled[ni, nj], int(ni), int(nj)))
            in_queue[ni, nj] = True

    if filled_count > 0:
        logger.info(f"Priority-flood raised {filled_count:,} cells to resolve depressions")
    return filled


@jit(nopython=True, cache=True)
def _steepest_descent_jit(
    elevation: np.ndarray,
    valid: np.ndarray,
    exits: np.ndarray,
    offsets: np.ndarray,
    codes: np.ndarray,
    distances: np.ndarray,
    flow_dir: np.ndarray,
) -> None:
    """
    JIT-compiled steepest descent (numba accelerated).

    Modifies flow_dir in-place. Cells without a strictly lower valid
    neighbour keep code 0.
    """
    rows, cols = elevation.shape

    for i in range(rows):
        for j in range(cols):
            if not valid[i, j] or exits[i, j]:
                continue

            max_slope = 0.0
            best_dir = 0
            current_elev = elevation[i, j]

            for k in range(8):
                ni = i + offsets[k, 0]
                nj = j + offsets[k, 1]
                if ni < 0 or ni >= rows or nj < 0 or nj >= cols:
                    continue
                if not valid[ni, nj]:
                    continue

                slope = (current_elev - elevation[ni, nj]) / distances[k]
                # Strict comparison keeps the earlier neighbour on ties
                if slope > max_slope:
                    max_slope = slope
                    best_dir = codes[k]

            flow_dir[i, j] = best_dir


@jit(nopython=True, cache=True)
def _drain_flats_jit(
    elevation: np.ndarray,
    valid: np.ndarray,
    exits: np.ndarray,
    offsets: np.ndarray,
    codes: np.ndarray,
    opposite: np.ndarray,
    seeds: np.ndarray,
    flow_dir: np.ndarray,
) -> int:
    """
    JIT-compiled multi-source BFS across equal-elevation cells.

    Starting from drained seed cells, every undrained neighbour at exactly
    the same elevation is pointed back at the cell that reached it. Each cell
    ends up draining toward its nearest drained cell (in steps).

    Returns
    -------
    int
        Number of cells that received a direction
    """
    rows, cols = elevation.shape

    queue = np.empty(rows * cols, dtype=np.int64)
    queue_start = 0
    queue_end = 0
    for s in range(seeds.shape[0]):
        queue[queue_end] = seeds[s]
        queue_end += 1

    resolved = 0
    while queue_start < queue_end:
        flat_idx = queue[queue_start]
        queue_start += 1

        i = flat_idx // cols
        j = flat_idx % cols
        current_elev = elevation[i, j]

        for k in range(8):
            ni = i + offsets[k, 0]
            nj = j + offsets[k, 1]
            if ni < 0 or ni >= rows or nj < 0 or nj >= cols:
                continue
            if not valid[ni, nj] or exits[ni, nj] or flow_dir[ni, nj] != 0:
                continue
            if elevation[ni, nj] != current_elev:
                continue

            flow_dir[ni, nj] = codes[opposite[k]]
            resolved += 1
            queue[queue_end] = ni * cols + nj
            queue_end += 1

    return resolved


def compute_flow_direction(
    grid: Grid,
    exits: np.ndarray,
    allow_pits: bool = False,
    elevation: np.ndarray = None,
) -> FlowDirection:
    """
    Compute D8 flow direction for every valid, non-exit cell.

    Parameters
    ----------
    grid : Grid
        Prepared grid (carving, if any, already applied)
    exits : np.ndarray (bool)
        Exit cells from identify_exits()
    allow_pits : bool, default False
        Convert undrained pits into synthetic exits instead of raising
    elevation : np.ndarray, optional
        Conditioned elevation to use instead of grid.elevation

    Returns
    -------
    FlowDirection

    Raises
    ------
    DomainError
        If a pit remains and allow_pits is False

    Notes
    -----
    Three passes:
    1. Steepest descent toward strictly lower neighbours.
    2. Flats: BFS from drained cells across equal elevations.
    3. Pits: remaining cells either fail the run or, in row-major order,
       become synthetic exits that drain their own flat.
    """
    if elevation is None:
        elevation = grid.elevation
    elevation = np.ascontiguousarray(elevation, dtype=np.float64)

    rows, cols = grid.shape
    valid = grid.valid
    exits = exits & valid

    distances = np.array(
        [grid.dy, grid.dx, grid.dy, grid.dx] + [grid.diagonal] * 4, dtype=np.float64
    )
    flow_dir = np.zeros((rows, cols), dtype=np.uint8)
    _steepest_descent_jit(
        elevation, valid, exits, NEIGHBOR_OFFSETS, NEIGHBOR_CODES, distances, flow_dir
    )

    undrained = valid & ~exits & (flow_dir == 0)
    if np.any(undrained):
        seeds = np.flatnonzero((exits | (flow_dir != 0)).ravel())
        resolved = _drain_flats_jit(
            elevation, valid, exits, NEIGHBOR_OFFSETS, NEIGHBOR_CODES, OPPOSITE, seeds, flow_dir
        )
        logger.debug(f"Flat resolution assigned {resolved:,} directions")

    synthetic = np.zeros((rows, cols), dtype=bool)
    undrained = valid & ~exits & (flow_dir == 0)
    if np.any(undrained):
        pit_cells = [(int(r), int(c)) for r, c in zip(*np.nonzero(undrained))]
        if not allow_pits:
            raise DomainError(
                f"{len(pit_cells)} cells have no downslope path to an exit; "
                f"first pit at {pit_cells[0]}. Enable allow_pits or fill depressions.",
                cells=pit_cells,
            )

        exits = exits.copy()
        for r, c in pit_cells:
            if flow_dir[r, c] != 0 or exits[r, c]:
                continue
            exits[r, c] = True
            synthetic[r, c] = True
            seed = np.array([r * cols + c], dtype=np.int64)
            _drain_flats_jit(
                elevation, valid, exits, NEIGHBOR_OFFSETS, NEIGHBOR_CODES, OPPOSITE, seed, flow_dir
            )
        logger.warning(f"Converted {int(synthetic.sum())} pits into synthetic exits")

    logger.info(
        f"Flow direction: {int(np.count_nonzero(flow_dir)):,} draining cells, "
        f"{int(np.count_nonzero(exits)):,} exits"
    )
    return FlowDirection(
        codes=flow_dir,
        exits=exits,
        synthetic_exits=synthetic,
        elevation=elevation,
    )


def receivers_from_codes(codes: np.ndarray) -> np.ndarray:
    """
    Convert D8 codes to flat receiver indices.

    Returns
    -------
    np.ndarray (int64)
        receivers[i] is the flat index of the cell that cell i drains to,
        or -1 for exits and no-data
    """
    rows, cols = codes.shape
    receivers = np.full(rows * cols, -1, dtype=np.int64)
    r, c = np.nonzero(codes)
    if r.size == 0:
        return receivers

    cell_codes = codes[r, c]
    nr = r + CODE_ROW_STEP[cell_codes]
    nc = c + CODE_COL_STEP[cell_codes]
    inside = (nr >= 0) & (nr < rows) & (nc >= 0) & (nc < cols)
    receivers[r[inside] * cols + c[inside]] = nr[inside] * cols + nc[inside]
    return receivers


def step_lengths(codes: np.ndarray, dx: float, dy: float) -> np.ndarray:
    """
    Length in metres of each cell's step to its receiver (0 for none).

    Returns a flat float64 array aligned with receivers_from_codes().
    """
    flat = codes.ravel()
    row_step = CODE_ROW_STEP[flat] != 0
    col_step = CODE_COL_STEP[flat] != 0
    lengths = np.zeros(flat.shape, dtype=np.float64)
    lengths[row_step & ~col_step] = dy
    lengths[col_step & ~row_step] = dx
    lengths[row_step & col_step] = float(np.hypot(dx, dy))
    return lengths
