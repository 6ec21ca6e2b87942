"""
Adaptive subcatchment partitioning.

Splits the D8 drainage forest into subcatchments bounded by a target area.
Partitioning runs downstream to upstream: starting at each exit, a
subcatchment grows upstream until its budget is spent, and the cells where
growth had to stop become the outlets of child subcatchments.

Growth is greedy along the largest contributing area first, so pieces
follow the main drainage lines. While growing, a candidate cell is:
- claimed together with its whole upstream tree if that tree fits the
  remaining budget, or if it is smaller than the minimum viable size
  (small headwaters are never split off on their own)
- claimed alone if one more cell fits
- otherwise left as the outlet of a new child subcatchment

Subcatchments live in an arena indexed by integer id (1..K). Parent and
child links are ids, parents always have smaller ids than their children,
and the label grid maps each cell to its subcatchment (0 for no-data).
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
from numba import jit
from tqdm.auto import tqdm

from src.catchment.errors import ConfigurationError, PartitionError
from src.catchment.flow_accumulation import _heap_pop, _heap_push
from src.catchment.flow_direction import FlowDirection
from src.catchment.grid import Grid

logger = logging.getLogger(__name__)

# Smallest target, in cells, that still allows a split
MIN_TARGET_CELLS = 2.0


@dataclass(frozen=True)
class Subcatchment:
    """
    One area-bounded drainage unit.

    Attributes
    ----------
    id : int
        Identifier, 1-based
    outlet : tuple
        (row, col) of the most downstream member cell
    downstream_id : int or None
        Subcatchment receiving this one's outflow, None at a domain exit
    upstream_ids : tuple of int
        Subcatchments draining directly into this one
    n_cells : int
        Number of member cells
    area_km2 : float
        Member area in km²
    oversized : bool
        True when absorbing small headwaters pushed the area over target
    """

    id: int
    outlet: Tuple[int, int]
    downstream_id: Optional[int]
    upstream_ids: Tuple[int, ...]
    n_cells: int
    area_km2: float
    oversized: bool = False

    @property
    def is_root(self) -> bool:
        return self.downstream_id is None


class SubcatchmentTree:
    """Arena of subcatchments plus the cell label grid."""

    def __init__(self, labels: np.ndarray, subcatchments: List[Subcatchment], target_area: Optional[float]):
        self.labels = labels
        self.subcatchments = subcatchments
        self.target_area = target_area

    def __len__(self) -> int:
        return len(self.subcatchments)

    def __iter__(self) -> Iterator[Subcatchment]:
        return iter(self.subcatchments)

    def __getitem__(self, subcatchment_id: int) -> Subcatchment:
        if not 1 <= subcatchment_id <= len(self.subcatchments):
            raise KeyError(f"No subcatchment with id {subcatchment_id}")
        return self.subcatchments[subcatchment_id - 1]

    def roots(self) -> List[Subcatchment]:
        return [s for s in self.subcatchments if s.is_root]

    def downstream_path(self, subcatchment_id: int) -> List[int]:
        """Ids from ``subcatchment_id`` down to its root, inclusive."""
        path = [subcatchment_id]
        current = self[subcatchment_id]
        while current.downstream_id is not None:
            path.append(current.downstream_id)
            current = self[current.downstream_id]
        return path

    @property
    def total_area_km2(self) -> float:
        return float(sum(s.area_km2 for s in self.subcatchments))


def build_donor_index(receivers: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Invert the receiver array into a compressed donor list.

    Returns
    -------
    ptr, donors : np.ndarray (int64)
        Donors of cell i are donors[ptr[i]:ptr[i + 1]], in ascending flat
        index order.
    """
    n = receivers.size
    sources = np.flatnonzero(receivers >= 0)
    targets = receivers[sources]

    order = np.argsort(targets, kind="stable")
    donors = sources[order]
    counts = np.bincount(targets, minlength=n)
    ptr = np.zeros(n + 1, dtype=np.int64)
    np.cumsum(counts, out=ptr[1:])
    return ptr, donors


@jit(nopython=True, cache=True)
def _claim_subtree_jit(
    cell: int, sid: int, ptr: np.ndarray, donors: np.ndarray, labels: np.ndarray, stack: np.ndarray
) -> int:
    """Label ``cell`` and everything upstream of it; return the cell count."""
    stack[0] = cell
    top = 1
    count = 0
    while top > 0:
        top -= 1
        current = stack[top]
        labels[current] = sid
        count += 1
        for k in range(ptr[current], ptr[current + 1]):
            stack[top] = donors[k]
            top += 1
    return count


@jit(nopython=True, cache=True)
def _grow_subcatchment_jit(
    seed: int,
    sid: int,
    accumulation: np.ndarray,
    ptr: np.ndarray,
    donors: np.ndarray,
    labels: np.ndarray,
    target_cells: float,
    min_cells: float,
    heap_key: np.ndarray,
    heap_tie: np.ndarray,
    heap_val: np.ndarray,
    stack: np.ndarray,
    frontier: np.ndarray,
):
    """
    JIT-compiled greedy growth of one subcatchment upstream from ``seed``.

    Candidates are popped largest accumulation first, smallest flat index
    on ties. The heap, stack and frontier arrays are scratch space of one
    slot per cell, shared across calls.

    Returns
    -------
    size : int
        Number of claimed cells
    n_frontier : int
        Number of cells written to ``frontier``, each the outlet of a child
        subcatchment
    """
    size = 0
    n_frontier = 0
    heap_size = _heap_push(heap_key, heap_tie, heap_val, 0, -accumulation[seed], seed, seed)

    while heap_size > 0:
        neg_upstream, cell, heap_size = _heap_pop(heap_key, heap_tie, heap_val, heap_size)
        upstream = -neg_upstream

        if upstream <= target_cells - size or upstream < min_cells:
            size += _claim_subtree_jit(cell, sid, ptr, donors, labels, stack)
            continue

        if size + 1 > target_cells:
            frontier[n_frontier] = cell
            n_frontier += 1
            continue

        labels[cell] = sid
        size += 1
        for k in range(ptr[cell], ptr[cell + 1]):
            donor = donors[k]
            heap_size = _heap_push(
                heap_key, heap_tie, heap_val, heap_size, -accumulation[donor], donor, donor
            )

    return size, n_frontier


def partition_subcatchments(
    accumulation: np.ndarray,
    flow: FlowDirection,
    grid: Grid,
    target_area: Optional[float],
    min_fraction: float = 0.1,
    progress: bool = False,
) -> SubcatchmentTree:
    """
    Partition the drainage forest into area-bounded subcatchments.

    Parameters
    ----------
    accumulation : np.ndarray
        Unweighted accumulation (cell counts) from compute_accumulation()
    flow : FlowDirection
        Flow directions and exits
    grid : Grid
        Grid providing the valid mask and cell area
    target_area : float or None
        Target subcatchment area in km². None keeps every root's drainage
        tree as a single subcatchment.
    min_fraction : float, default 0.1
        Headwater trees smaller than ``min_fraction * target_area`` are
        merged into the subcatchment they drain into
    progress : bool, default False
        Show a progress bar over claimed cells

    Returns
    -------
    SubcatchmentTree

    Raises
    ------
    ConfigurationError
        If target_area is not positive
    PartitionError
        If target_area covers fewer than two cells
    """
    cell_area = grid.cell_area_km2
    if target_area is None:
        target_cells = np.inf
        min_cells = 0.0
    else:
        if not target_area > 0:
            raise ConfigurationError(f"target_area must be positive, got {target_area!r}")
        target_cells = target_area / cell_area
        if target_cells < MIN_TARGET_CELLS:
            raise PartitionError(
                f"Target area {target_area} km² is smaller than two cells "
                f"({MIN_TARGET_CELLS * cell_area:.6g} km²); cannot split"
            )
        min_cells = min_fraction * target_cells

    valid = grid.valid.ravel()
    acc = np.asarray(accumulation, dtype=np.float64).ravel()
    ptr, donors = build_donor_index(flow.receivers)
    labels = np.zeros(acc.size, dtype=np.int32)

    roots = np.flatnonzero(flow.exits.ravel() & valid)
    seeds = deque((int(r), None) for r in roots)

    outlets: List[int] = []
    parents: List[Optional[int]] = []
    sizes: List[int] = []
    children: Dict[int, List[int]] = {}

    n = acc.size
    heap_key = np.empty(n, dtype=np.float64)
    heap_tie = np.empty(n, dtype=np.int64)
    heap_val = np.empty(n, dtype=np.int64)
    stack = np.empty(n, dtype=np.int64)
    frontier_buf = np.empty(n, dtype=np.int64)

    n_valid = int(valid.sum())
    with tqdm(total=n_valid, desc="Partitioning subcatchments", disable=not progress) as pbar:
        while seeds:
            seed, parent = seeds.popleft()
            sid = len(outlets) + 1

            size, n_frontier = _grow_subcatchment_jit(
                seed, sid, acc, ptr, donors, labels, float(target_cells), float(min_cells),
                heap_key, heap_tie, heap_val, stack, frontier_buf,
            )
            size = int(size)
            frontier = np.sort(frontier_buf[:n_frontier]).tolist()
            outlets.append(seed)
            parents.append(parent)
            sizes.append(size)
            children[sid] = []
            if parent is not None:
                children[parent].append(sid)

            for child in frontier:
                seeds.append((child, sid))
            pbar.update(size)

    labelled = int(np.count_nonzero(labels))
    if labelled != n_valid:
        raise RuntimeError(
            f"Partition labelled {labelled} of {n_valid} valid cells; "
            "some cells do not drain to an exit"
        )

    cols = grid.shape[1]
    subcatchments = []
    for index, (outlet, parent, size) in enumerate(zip(outlets, parents, sizes)):
        sid = index + 1
        subcatchments.append(
            Subcatchment(
                id=sid,
                outlet=(outlet // cols, outlet % cols),
                downstream_id=parent,
                upstream_ids=tuple(children[sid]),
                n_cells=size,
                area_km2=size * cell_area,
                oversized=bool(size > target_cells),
            )
        )

    oversized = sum(s.oversized for s in subcatchments)
    logger.info(
        f"Partitioned {n_valid:,} cells into {len(subcatchments)} subcatchments "
        f"({len(roots)} roots, {oversized} oversized)"
    )
    return SubcatchmentTree(labels.reshape(grid.shape), subcatchments, target_area)
