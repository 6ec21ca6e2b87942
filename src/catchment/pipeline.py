"""
Catchment delineation pipeline.

Single entry point that runs every stage in order:
1. Grid and outlet preparation (rasterize outlet lines, carve)
2. Exit classification, optional depression filling, D8 flow direction
3. Flow accumulation
4. Subcatchment partitioning
5. Channel network extraction
6. Hydraulic parameters
7. Model output assembly

Each stage consumes the previous stage's output plus the grid metadata.
Cancellation is checked only between stages, since a half-finished stage
would leave the drainage graph partially resolved.
"""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional

import numpy as np
from rasterio import Affine

from src.catchment.channels import ChannelNetwork, Reach, extract_channel_network
from src.catchment.config import CatchmentConfig
from src.catchment.errors import PartitionError, PipelineCancelled
from src.catchment.flow_accumulation import compute_accumulation
from src.catchment.flow_direction import compute_flow_direction, condition_dem, identify_exits
from src.catchment.grid import OutletLine, prepare_grid, rasterize_outlets
from src.catchment.hydraulics import HydraulicParameters, compute_hydraulics
from src.catchment.model_output import ModelOutput, assemble_model_output
from src.catchment.subcatchments import Subcatchment, SubcatchmentTree, partition_subcatchments

logger = logging.getLogger(__name__)


@dataclass
class CatchmentResult:
    """
    Everything produced by one run.

    Attributes
    ----------
    subcatchment_grid : np.ndarray (int32)
        Subcatchment id per cell, 0 for no-data
    flow_direction : np.ndarray (uint8)
        ESRI D8 codes, 0 for exits and no-data
    accumulation : np.ndarray (float64)
        Contributing cells per cell
    subcatchments : list of Subcatchment
    reaches : list of Reach
    exits : np.ndarray (bool)
        Domain exit cells, synthetic exits included
    channel_mask : np.ndarray (bool)
    elevation : np.ndarray (float64)
        Carved / conditioned elevation used for routing
    tree : SubcatchmentTree
        Subcatchment arena and label grid
    network : ChannelNetwork
        Channel cells, reaches and per-subcatchment flow paths
    hydraulics : HydraulicParameters
    model_output : ModelOutput
    partition_fallback : bool
        True when the target area was too small and each root was kept whole
    """

    subcatchment_grid: np.ndarray
    flow_direction: np.ndarray
    accumulation: np.ndarray
    subcatchments: List[Subcatchment]
    reaches: List[Reach]
    exits: np.ndarray
    channel_mask: np.ndarray
    elevation: np.ndarray
    tree: SubcatchmentTree
    network: ChannelNetwork
    hydraulics: HydraulicParameters
    model_output: ModelOutput
    partition_fallback: bool = False


def _checkpoint(cancel_event: Optional[threading.Event], next_stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled(f"Cancelled before {next_stage}")


def delineate_catchments(
    elevation: np.ndarray,
    nodata: float,
    outlet_lines: Optional[Iterable[OutletLine]],
    dx: float,
    dy: float,
    target_area: float,
    model: str,
    config: Optional[CatchmentConfig] = None,
    transform: Optional[Affine] = None,
    cancel_event: Optional[threading.Event] = None,
    verbose: bool = False,
) -> CatchmentResult:
    """
    Delineate subcatchments and routing parameters from a DEM.

    Parameters
    ----------
    elevation : np.ndarray
        2-D elevation grid (metres)
    nodata : float
        No-data sentinel in ``elevation``
    outlet_lines : iterable, optional
        Outlet polylines as (row, col) vertex sequences, or shapely lines in
        world coordinates (needs ``transform``)
    dx, dy : float
        Cell width and height in metres
    target_area : float
        Target subcatchment area in km²
    model : str
        "Mydro" or "URBS"
    config : CatchmentConfig, optional
        Remaining options; its model and target_area are overridden by the
        explicit arguments
    transform : Affine, optional
        Pixel-to-world transform of the grid
    cancel_event : threading.Event, optional
        Set from another thread to stop at the next stage boundary
    verbose : bool, default False
        Print progress messages

    Returns
    -------
    CatchmentResult

    Raises
    ------
    ConfigurationError
        Invalid model, area or cell size; raised before the grid is read
    DomainError
        Undrained pit and ``config.allow_pits`` is False
    PipelineCancelled
        ``cancel_event`` was set

    Examples
    --------
    >>> dem = np.add.outer(np.arange(5.0), np.zeros(5))
    >>> result = delineate_catchments(dem, -9999, [[(0, 0), (0, 4)]], 100, 100, 0.05, "URBS")
    >>> len(result.subcatchments) > 1
    True
    """
    config = replace(config or CatchmentConfig(), model=model, target_area=target_area)
    model_config = config.validate(dx=dx, dy=dy)

    if verbose:
        print("=" * 60)
        print(f"CATCHMENT DELINEATION ({model_config.name}, target {target_area} km²)")
        print("=" * 60)

    # Step 1: Grid and outlets
    _checkpoint(cancel_event, "grid preparation")
    if verbose:
        print("\n1. Preparing grid and outlets...")
    grid = prepare_grid(elevation, nodata, dx, dy, transform=transform)
    outlet_mask = rasterize_outlets(outlet_lines, grid.shape, transform=transform)
    if config.carve_outlets and np.any(outlet_mask):
        carved = grid.carve(outlet_mask, depth=config.carve_depth)
        if verbose:
            print(f"   Carved {carved:,} outlet cells")

    # Step 2: Exits and flow direction
    _checkpoint(cancel_event, "flow direction")
    if verbose:
        print("\n2. Computing flow direction...")
    exits = identify_exits(grid, outlet_mask, edge_mode=config.edge_mode)
    routing_elevation = grid.elevation
    if config.fill_depressions:
        routing_elevation = condition_dem(grid, exits, epsilon=config.fill_epsilon)
    flow = compute_flow_direction(
        grid, exits, allow_pits=config.allow_pits, elevation=routing_elevation
    )
    if verbose:
        print(f"   Exit cells: {int(flow.exits.sum()):,} "
              f"({int(flow.synthetic_exits.sum()):,} synthetic)")

    # Step 3: Accumulation
    _checkpoint(cancel_event, "flow accumulation")
    if verbose:
        print("\n3. Computing flow accumulation...")
    accumulation = compute_accumulation(
        flow, grid, method=config.accumulation_method, shuffle_seed=config.shuffle_seed
    )

    # Step 4: Subcatchments
    _checkpoint(cancel_event, "subcatchment partitioning")
    if verbose:
        print("\n4. Partitioning subcatchments...")
    partition_fallback = False
    try:
        tree = partition_subcatchments(
            accumulation, flow, grid, target_area,
            min_fraction=config.min_catch_fraction, progress=verbose,
        )
    except PartitionError as e:
        logger.warning(f"{e}; emitting one unsplit subcatchment per exit")
        partition_fallback = True
        tree = partition_subcatchments(accumulation, flow, grid, None, progress=verbose)
    if verbose:
        print(f"   Subcatchments: {len(tree)}")

    # Step 5: Channels and reaches
    _checkpoint(cancel_event, "channel extraction")
    if verbose:
        print("\n5. Extracting channel network...")
    network = extract_channel_network(
        grid, flow, accumulation, tree,
        channel_threshold=model_config.channel_threshold,
        min_slope=model_config.min_slope,
    )

    # Step 6: Hydraulics
    _checkpoint(cancel_event, "hydraulic parameters")
    if verbose:
        print("\n6. Computing hydraulic parameters...")
    hydraulics = compute_hydraulics(tree, network, model_config)

    # Step 7: Output
    _checkpoint(cancel_event, "output assembly")
    if verbose:
        print(f"\n7. Assembling {model_config.name} output...")
    output = assemble_model_output(model_config.name, tree, network, hydraulics)

    logger.info(
        f"Delineated {len(tree)} subcatchments and {len(network.reaches)} reaches "
        f"for {model_config.name}"
    )
    return CatchmentResult(
        subcatchment_grid=tree.labels,
        flow_direction=flow.codes,
        accumulation=accumulation,
        subcatchments=list(tree),
        reaches=list(network.reaches),
        exits=flow.exits,
        channel_mask=network.channel_mask,
        elevation=flow.elevation,
        tree=tree,
        network=network,
        hydraulics=hydraulics,
        model_output=output,
        partition_fallback=partition_fallback,
    )
