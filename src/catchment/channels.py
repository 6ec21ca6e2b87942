"""
Channel network extraction.

Thresholds flow accumulation into channel cells and builds the routing
graph between subcatchments. Each non-root subcatchment gets one reach,
traced along D8 directions from its outlet to the outlet of the
subcatchment it drains into. Every subcatchment also gets its longest
internal flow path, used for catchment lag parameters.

Lengths are in metres, weighted by dx / dy / diagonal step. Slopes are
elevation drop over length, floored at the model's minimum slope so that
routing never sees zero or negative grades.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from src.catchment.flow_accumulation import independent_batches
from src.catchment.flow_direction import FlowDirection, step_lengths
from src.catchment.grid import Grid
from src.catchment.subcatchments import SubcatchmentTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reach:
    """Routing segment carrying one subcatchment's outflow downstream."""

    id: int
    upstream_id: int
    downstream_id: int
    cells: Tuple[Tuple[int, int], ...]
    length_m: float
    drop_m: float
    slope: float
    channel_length_m: float

    @property
    def channel_fraction(self) -> float:
        if self.length_m == 0:
            return 0.0
        return self.channel_length_m / self.length_m


@dataclass(frozen=True)
class FlowPath:
    """Longest flow path inside a subcatchment, head to outlet."""

    subcatchment_id: int
    head: Tuple[int, int]
    length_m: float
    drop_m: float
    slope: float


@dataclass
class ChannelNetwork:
    channel_mask: np.ndarray
    reaches: List[Reach]
    flow_paths: Dict[int, FlowPath]

    def reach_from(self, subcatchment_id: int) -> Optional[Reach]:
        """Reach leaving ``subcatchment_id``, None for root subcatchments."""
        for reach in self.reaches:
            if reach.upstream_id == subcatchment_id:
                return reach
        return None


def channel_mask(accumulation: np.ndarray, cell_area_km2: float, threshold: float) -> np.ndarray:
    """
    Cells whose contributing area exceeds ``threshold`` km².

    Examples
    --------
    >>> acc = np.array([[1, 2], [3, 4]], dtype=float)
    >>> channel_mask(acc, cell_area_km2=0.5, threshold=1.0)
    array([[False, False],
           [ True,  True]])
    """
    return np.asarray(accumulation, dtype=np.float64) * cell_area_km2 > threshold


def _floored_slope(drop: float, length: float, min_slope: float) -> float:
    if length <= 0:
        return min_slope
    return max(drop / length, min_slope)


def distance_to_outlet(flow: FlowDirection, grid: Grid, labels: np.ndarray) -> np.ndarray:
    """
    Flow-path distance in metres from each cell to its subcatchment outlet.

    Wavefronts from independent_batches() are walked in reverse, so each
    receiver is resolved before the cells draining into it.
    """
    receivers = flow.receivers
    steps = step_lengths(flow.codes, grid.dx, grid.dy)
    labels_flat = labels.ravel()
    distance = np.zeros(receivers.size, dtype=np.float64)

    for batch in reversed(independent_batches(receivers, grid.valid)):
        downstream = receivers[batch]
        inside = downstream >= 0
        inside[inside] = labels_flat[downstream[inside]] == labels_flat[batch[inside]]
        cells = batch[inside]
        distance[cells] = distance[downstream[inside]] + steps[cells]

    return distance.reshape(grid.shape)


def _longest_flow_paths(
    tree: SubcatchmentTree,
    distance: np.ndarray,
    elevation: np.ndarray,
    min_slope: float,
) -> Dict[int, FlowPath]:
    labels_flat = tree.labels.ravel()
    dist_flat = distance.ravel()
    elev_flat = elevation.ravel()
    cols = tree.labels.shape[1]

    # Farthest cell per label, ties to the lowest flat index
    members = np.flatnonzero(labels_flat > 0)
    order = np.lexsort((members, -dist_flat[members], labels_flat[members]))
    sorted_members = members[order]
    unique_labels, first = np.unique(labels_flat[sorted_members], return_index=True)
    heads = dict(zip(unique_labels.tolist(), sorted_members[first].tolist()))

    paths = {}
    for sub in tree:
        head = heads[sub.id]
        outlet = sub.outlet[0] * cols + sub.outlet[1]
        length = float(dist_flat[head])
        drop = float(elev_flat[head] - elev_flat[outlet])
        paths[sub.id] = FlowPath(
            subcatchment_id=sub.id,
            head=(head // cols, head % cols),
            length_m=length,
            drop_m=drop,
            slope=_floored_slope(drop, length, min_slope),
        )
    return paths


def _trace_reach(
    reach_id: int,
    upstream_id: int,
    downstream_id: int,
    start: int,
    stop: int,
    receivers: np.ndarray,
    steps: np.ndarray,
    elevation: np.ndarray,
    channel: np.ndarray,
    cols: int,
    min_slope: float,
) -> Reach:
    path = [start]
    length = 0.0
    channel_length = 0.0
    current = start
    while current != stop:
        nxt = receivers[current]
        if nxt < 0:
            raise RuntimeError(
                f"Flow path from subcatchment {upstream_id} ends before reaching "
                f"the outlet of subcatchment {downstream_id}"
            )
        length += steps[current]
        if channel[current]:
            channel_length += steps[current]
        current = int(nxt)
        path.append(current)

    drop = float(elevation[start] - elevation[stop])
    return Reach(
        id=reach_id,
        upstream_id=upstream_id,
        downstream_id=downstream_id,
        cells=tuple((p // cols, p % cols) for p in path),
        length_m=float(length),
        drop_m=drop,
        slope=_floored_slope(drop, length, min_slope),
        channel_length_m=float(channel_length),
    )


def extract_channel_network(
    grid: Grid,
    flow: FlowDirection,
    accumulation: np.ndarray,
    tree: SubcatchmentTree,
    channel_threshold: float,
    min_slope: float,
) -> ChannelNetwork:
    """
    Build channel cells, inter-subcatchment reaches and flow paths.

    Parameters
    ----------
    grid : Grid
        Grid providing cell sizes
    flow : FlowDirection
        Directions and the elevation they were computed from
    accumulation : np.ndarray
        Unweighted accumulation (cell counts)
    tree : SubcatchmentTree
        Partition result
    channel_threshold : float
        Contributing area in km² above which a cell is a channel
    min_slope : float
        Floor for every slope

    Returns
    -------
    ChannelNetwork
    """
    cols = grid.shape[1]
    channels = channel_mask(accumulation, grid.cell_area_km2, channel_threshold)
    receivers = flow.receivers
    steps = step_lengths(flow.codes, grid.dx, grid.dy)
    elevation = flow.elevation.ravel()
    channel_flat = channels.ravel()

    reaches = []
    for sub in tree:
        if sub.is_root:
            continue
        parent = tree[sub.downstream_id]
        reaches.append(
            _trace_reach(
                reach_id=sub.id,
                upstream_id=sub.id,
                downstream_id=parent.id,
                start=sub.outlet[0] * cols + sub.outlet[1],
                stop=parent.outlet[0] * cols + parent.outlet[1],
                receivers=receivers,
                steps=steps,
                elevation=elevation,
                channel=channel_flat,
                cols=cols,
                min_slope=min_slope,
            )
        )

    distance = distance_to_outlet(flow, grid, tree.labels)
    flow_paths = _longest_flow_paths(tree, distance, flow.elevation, min_slope)

    logger.info(
        f"Channel network: {int(channels.sum()):,} channel cells, {len(reaches)} reaches "
        f"(threshold {channel_threshold} km²)"
    )
    return ChannelNetwork(channel_mask=channels, reaches=reaches, flow_paths=flow_paths)
