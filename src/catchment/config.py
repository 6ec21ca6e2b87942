"""
Configuration for catchment delineation runs.

Two layers of configuration:
- ModelConfig: fixed hydraulic constants for each supported rainfall-runoff
  model (Mydro, URBS). Looked up by name through get_model_config().
- CatchmentConfig: per-run options (target subcatchment area, outlet
  carving, flat and pit handling, accumulation ordering).

Areas are in square kilometres, cell sizes and elevations in metres.
"""

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from src.catchment.errors import ConfigurationError


@dataclass(frozen=True)
class ModelConfig:
    """
    Hydraulic constants for a target rainfall-runoff model.

    Parameters
    ----------
    name : str
        Canonical model name ("Mydro" or "URBS")
    min_slope : float
        Floor applied to every routing slope (m/m)
    channel_threshold : float
        Contributing area (km²) above which a cell is a channel cell
    mannings_n : float, optional
        Channel roughness. None for models that do not use one.
    """

    name: str
    min_slope: float
    channel_threshold: float
    mannings_n: Optional[float] = None

    @property
    def uses_roughness(self) -> bool:
        return self.mannings_n is not None


MODEL_CONFIGS: Dict[str, ModelConfig] = {
    "mydro": ModelConfig(
        name="Mydro",
        min_slope=0.0005,
        channel_threshold=0.125,
        mannings_n=0.03,
    ),
    "urbs": ModelConfig(
        name="URBS",
        min_slope=0.0005,
        channel_threshold=1.0,
    ),
}

EDGE_MODES = ("auto", "all", "none")
ACCUMULATION_METHODS = ("priority", "batched")


def get_model_config(name: str) -> ModelConfig:
    """
    Look up the configuration for a model name (case-insensitive).

    Raises
    ------
    ConfigurationError
        If the model is not one of the supported models.

    Examples
    --------
    >>> get_model_config("urbs").channel_threshold
    1.0
    """
    if not isinstance(name, str):
        raise ConfigurationError(f"Model name must be a string, got {name!r}")
    key = name.strip().lower()
    if key not in MODEL_CONFIGS:
        supported = ", ".join(cfg.name for cfg in MODEL_CONFIGS.values())
        raise ConfigurationError(f"Unknown model {name!r}; supported models: {supported}")
    return MODEL_CONFIGS[key]


@dataclass
class CatchmentConfig:
    """
    Options for a single delineation run.

    Parameters
    ----------
    model : str, default="Mydro"
        Target model, selects the ModelConfig and the output schema
    target_area : float, default=1.0
        Target subcatchment area in km²
    edge_mode : {"auto", "all", "none"}, default="auto"
        Which grid boundary cells are exits. "auto" treats the boundary as
        exits only when no outlet cells are supplied.
    carve_outlets : bool, default=True
        Lower elevations along outlet cells before computing flow direction
    carve_depth : float, default=1.0
        Depth in metres below the lowest original neighbour for carved cells
    fill_depressions : bool, default=False
        Priority-flood fill depressions before computing flow direction
    fill_epsilon : float, default=1e-4
        Elevation increment per cell applied while filling
    allow_pits : bool, default=False
        Turn undrained pits into synthetic exits instead of failing
    min_catch_fraction : float, default=0.1
        Headwater pieces smaller than this fraction of target_area are merged
        into the subcatchment downstream rather than split off
    accumulation_method : {"priority", "batched"}, default="priority"
        Elevation-ordered heap traversal or vectorised independent batches
    shuffle_seed : int, optional
        Randomise processing order among independent cells of equal elevation

    Examples
    --------
    >>> config = CatchmentConfig(model="URBS", target_area=5.0)
    >>> config.validate(dx=30.0, dy=30.0).name
    'URBS'
    """

    model: str = "Mydro"
    target_area: float = 1.0  # km²
    edge_mode: str = "auto"
    carve_outlets: bool = True
    carve_depth: float = 1.0  # metres
    fill_depressions: bool = False
    fill_epsilon: float = 1e-4  # metres per cell
    allow_pits: bool = False
    min_catch_fraction: float = 0.1
    accumulation_method: str = "priority"
    shuffle_seed: Optional[int] = None

    def validate(self, dx: Optional[float] = None, dy: Optional[float] = None) -> ModelConfig:
        """
        Check every option and return the selected model configuration.

        Raises
        ------
        ConfigurationError
            On the first invalid option found.
        """
        model_config = get_model_config(self.model)

        if not _is_positive(self.target_area):
            raise ConfigurationError(
                f"target_area must be positive, got {self.target_area!r}"
            )
        for label, size in (("dx", dx), ("dy", dy)):
            if size is not None and not _is_positive(size):
                raise ConfigurationError(f"Cell size {label} must be positive, got {size!r}")

        if self.edge_mode not in EDGE_MODES:
            raise ConfigurationError(
                f"edge_mode must be one of {EDGE_MODES}, got {self.edge_mode!r}"
            )
        if self.accumulation_method not in ACCUMULATION_METHODS:
            raise ConfigurationError(
                f"accumulation_method must be one of {ACCUMULATION_METHODS}, "
                f"got {self.accumulation_method!r}"
            )
        if self.carve_outlets and not _is_positive(self.carve_depth):
            raise ConfigurationError(f"carve_depth must be positive, got {self.carve_depth!r}")
        if self.fill_depressions and not _is_positive(self.fill_epsilon):
            raise ConfigurationError(f"fill_epsilon must be positive, got {self.fill_epsilon!r}")
        if not 0.0 <= self.min_catch_fraction < 1.0:
            raise ConfigurationError(
                f"min_catch_fraction must be in [0, 1), got {self.min_catch_fraction!r}"
            )

        return model_config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "CatchmentConfig":
        """Build a config from a dict, rejecting unknown keys."""
        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**values)

    def __str__(self) -> str:
        return json.dumps(self.to_dict(), indent=4)


def _is_positive(value) -> bool:
    try:
        return float(value) > 0
    except (TypeError, ValueError):
        return False
