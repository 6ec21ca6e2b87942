"""
Hydraulic parameter calculation.

Derives routing attributes for reaches and subcatchments from the channel
network geometry. Pure functions of their inputs; nothing upstream is
modified.

Lag index:
- Mydro (Manning roughness):  n * L / sqrt(S)
- URBS  (no roughness):       L / sqrt(S)

with L in km and S the floored slope. Mydro reaches also carry a
conveyance factor sqrt(S) / n (Manning velocity per unit hydraulic radius
to the 2/3).
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from src.catchment.channels import ChannelNetwork
from src.catchment.config import ModelConfig
from src.catchment.subcatchments import SubcatchmentTree


@dataclass(frozen=True)
class ReachHydraulics:
    reach_id: int
    upstream_id: int
    downstream_id: int
    length_km: float
    slope: float
    roughness: Optional[float]
    conveyance: Optional[float]
    lag_index: float


@dataclass(frozen=True)
class SubcatchmentHydraulics:
    subcatchment_id: int
    area_km2: float
    flow_length_km: float
    slope: float
    lag_index: float


@dataclass(frozen=True)
class HydraulicParameters:
    model: str
    subcatchments: List[SubcatchmentHydraulics]
    reaches: List[ReachHydraulics]


def lag_index(length_km: float, slope: float, roughness: Optional[float] = None) -> float:
    """
    Routing lag index L / sqrt(S), scaled by roughness when given.

    Examples
    --------
    >>> lag_index(2.0, 0.01)
    20.0
    >>> round(lag_index(2.0, 0.01, roughness=0.03), 6)
    0.6
    """
    index = length_km / np.sqrt(slope)
    if roughness is not None:
        index *= roughness
    return float(index)


def compute_hydraulics(
    tree: SubcatchmentTree,
    network: ChannelNetwork,
    model_config: ModelConfig,
) -> HydraulicParameters:
    """
    Compute per-reach and per-subcatchment hydraulic attributes.

    Slopes are floored again at the model's min_slope, so networks extracted
    with a lower floor still give valid routing values.
    """
    roughness = model_config.mannings_n

    reaches = []
    for reach in network.reaches:
        slope = max(reach.slope, model_config.min_slope)
        length_km = reach.length_m / 1000.0
        reaches.append(
            ReachHydraulics(
                reach_id=reach.id,
                upstream_id=reach.upstream_id,
                downstream_id=reach.downstream_id,
                length_km=length_km,
                slope=slope,
                roughness=roughness,
                conveyance=float(np.sqrt(slope) / roughness) if roughness else None,
                lag_index=lag_index(length_km, slope, roughness),
            )
        )

    subcatchments = []
    for sub in tree:
        path = network.flow_paths[sub.id]
        slope = max(path.slope, model_config.min_slope)
        length_km = path.length_m / 1000.0
        subcatchments.append(
            SubcatchmentHydraulics(
                subcatchment_id=sub.id,
                area_km2=sub.area_km2,
                flow_length_km=length_km,
                slope=slope,
                lag_index=lag_index(length_km, slope, roughness),
            )
        )

    return HydraulicParameters(
        model=model_config.name,
        subcatchments=subcatchments,
        reaches=reaches,
    )
