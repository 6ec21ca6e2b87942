"""
Catchment delineation package.

Core functionality:
- Outlet rasterization and carving on an in-memory DEM
- D8 flow direction with deterministic tie-breaking and flat resolution
- Topologically ordered flow accumulation
- Adaptive, area-bounded subcatchment partitioning
- Channel network, reach and hydraulic parameter extraction
- Mydro and URBS output rows
"""

from .config import CatchmentConfig, ModelConfig, get_model_config
from .errors import (
    CatchmentError,
    ConfigurationError,
    DomainError,
    PartitionError,
    PipelineCancelled,
)
from .grid import Grid, prepare_grid, rasterize_line, rasterize_outlets
from .pipeline import CatchmentResult, delineate_catchments

__all__ = [
    "delineate_catchments",
    "CatchmentResult",
    "CatchmentConfig",
    "ModelConfig",
    "get_model_config",
    "Grid",
    "prepare_grid",
    "rasterize_line",
    "rasterize_outlets",
    "CatchmentError",
    "ConfigurationError",
    "DomainError",
    "PartitionError",
    "PipelineCancelled",
]
