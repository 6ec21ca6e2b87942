"""
Model output assembly.

Maps subcatchments, reaches and hydraulic attributes into the row schema of
the selected rainfall-runoff model. Rows are plain dicts so the external
writer can serialise them to CSV or model-specific text files.

Adding a model format means adding a builder to OUTPUT_SCHEMAS and a
matching entry in config.MODEL_CONFIGS.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from src.catchment.channels import ChannelNetwork
from src.catchment.config import get_model_config
from src.catchment.hydraulics import HydraulicParameters
from src.catchment.subcatchments import SubcatchmentTree

Row = Dict[str, Any]


@dataclass
class ModelOutput:
    model: str
    subcatchment_rows: List[Row]
    reach_rows: List[Row]


def _mydro_output(tree: SubcatchmentTree, network: ChannelNetwork, hydraulics: HydraulicParameters) -> ModelOutput:
    subcatchment_rows = []
    for sub, params in zip(tree, hydraulics.subcatchments):
        path = network.flow_paths[sub.id]
        subcatchment_rows.append({
            "SubcatchmentID": sub.id,
            "DownstreamID": sub.downstream_id or 0,
            "OutletRow": sub.outlet[0],
            "OutletCol": sub.outlet[1],
            "Area_km2": params.area_km2,
            "FlowLength_km": params.flow_length_km,
            "Slope": params.slope,
            "LagIndex": params.lag_index,
            "HeadRow": path.head[0],
            "HeadCol": path.head[1],
        })

    reach_by_upstream = {reach.upstream_id: reach for reach in network.reaches}

    reach_rows = []
    for params in hydraulics.reaches:
        reach = reach_by_upstream[params.upstream_id]
        reach_rows.append({
            "ReachID": params.reach_id,
            "FromSubcatchment": params.upstream_id,
            "ToSubcatchment": params.downstream_id,
            "Length_km": params.length_km,
            "Slope": params.slope,
            "ManningsN": params.roughness,
            "Conveyance": params.conveyance,
            "LagIndex": params.lag_index,
            "ChannelFraction": reach.channel_fraction,
        })

    return ModelOutput(model="Mydro", subcatchment_rows=subcatchment_rows, reach_rows=reach_rows)


def _urbs_output(tree: SubcatchmentTree, network: ChannelNetwork, hydraulics: HydraulicParameters) -> ModelOutput:
    reach_by_upstream = {params.upstream_id: params for params in hydraulics.reaches}

    subcatchment_rows = []
    for sub, params in zip(tree, hydraulics.subcatchments):
        reach = reach_by_upstream.get(sub.id)
        subcatchment_rows.append({
            "Index": sub.id,
            "DS": sub.downstream_id or 0,
            "US": ",".join(str(u) for u in sub.upstream_ids),
            "Area": params.area_km2,
            "L": reach.length_km if reach else 0.0,
            "Sc": reach.slope if reach else params.slope,
            "Lf": params.flow_length_km,
            "Sf": params.slope,
        })

    reach_rows = [
        {
            "Reach": params.reach_id,
            "From": params.upstream_id,
            "To": params.downstream_id,
            "L": params.length_km,
            "Sc": params.slope,
            "LagIndex": params.lag_index,
        }
        for params in hydraulics.reaches
    ]

    return ModelOutput(model="URBS", subcatchment_rows=subcatchment_rows, reach_rows=reach_rows)


OUTPUT_SCHEMAS: Dict[str, Callable[..., ModelOutput]] = {
    "mydro": _mydro_output,
    "urbs": _urbs_output,
}


def assemble_model_output(
    model: str,
    tree: SubcatchmentTree,
    network: ChannelNetwork,
    hydraulics: HydraulicParameters,
) -> ModelOutput:
    """
    Build output rows for ``model``.

    Raises
    ------
    ConfigurationError
        If the model name is unknown
    """
    model_config = get_model_config(model)
    builder = OUTPUT_SCHEMAS[model_config.name.lower()]
    return builder(tree, network, hydraulics)
