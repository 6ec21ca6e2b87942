"""
Exception types raised by the catchment delineation pipeline.
"""

from typing import List, Optional, Tuple


class CatchmentError(Exception):
    """Base class for all catchment delineation errors."""


class ConfigurationError(CatchmentError, ValueError):
    """Invalid run configuration (unknown model, bad area or cell size)."""


class DomainError(CatchmentError):
    """
    Elevation data that cannot be drained.

    Raised when a cell has no strictly lower neighbour, is not part of a flat
    that drains, and is not an exit cell.
    """

    def __init__(self, message: str, cells: Optional[List[Tuple[int, int]]] = None):
        super().__init__(message)
        self.cells = cells or []


class PartitionError(CatchmentError):
    """Target subcatchment area too small to split the drainage tree."""


class PipelineCancelled(CatchmentError):
    """Run stopped at a stage boundary because cancellation was requested."""
