"""
Grid and outlet preparation.

Wraps the elevation array handed over by the raster loader, rasterizes
user-supplied outlet polylines onto the grid and optionally carves
(lowers) the DEM along them so drainage aligns with the outlets.

Outlet polylines come in two forms:
- sequences of (row, col) vertices, already in grid space
- shapely LineString / MultiLineString geometries in world coordinates,
  converted to cells with the grid's rasterio Affine transform
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from rasterio import Affine
from scipy.ndimage import grey_erosion
from shapely.geometry import LineString, MultiLineString
from shapely.geometry.base import BaseGeometry

from src.catchment.errors import ConfigurationError

logger = logging.getLogger(__name__)

Cell = Tuple[int, int]
OutletLine = Union[Sequence[Sequence[int]], BaseGeometry]


@dataclass
class Grid:
    """
    Elevation grid with cell geometry.

    Attributes
    ----------
    elevation : np.ndarray (float64)
        Elevation samples; invalid cells keep the nodata value
    nodata : float
        No-data sentinel
    dx : float
        Cell width in metres (east-west spacing)
    dy : float
        Cell height in metres (north-south spacing)
    transform : Affine, optional
        Pixel-to-world transform, needed only for world-coordinate outlets
    carved : bool
        True once outlet carving has been applied
    """

    elevation: np.ndarray
    nodata: float
    dx: float
    dy: float
    transform: Optional[Affine] = None
    carved: bool = False

    @property
    def shape(self) -> Tuple[int, int]:
        return self.elevation.shape

    @property
    def valid(self) -> np.ndarray:
        """Boolean mask of cells holding real elevation data."""
        valid = ~np.isnan(self.elevation)
        if not np.isnan(self.nodata):
            valid &= self.elevation != self.nodata
        return valid

    @property
    def diagonal(self) -> float:
        return float(np.hypot(self.dx, self.dy))

    @property
    def cell_area_km2(self) -> float:
        return self.dx * self.dy / 1e6

    def carve(self, outlet_mask: np.ndarray, depth: float = 1.0) -> int:
        """
        Lower outlet cells below every original neighbour.

        Each valid cell in ``outlet_mask`` is set to the minimum of its
        original 3x3 neighbourhood minus ``depth``. The neighbourhood minimum
        is taken from the elevations before carving, so adjacent outlet cells
        do not cascade. May only be applied once per grid.

        Returns
        -------
        int
            Number of carved cells
        """
        if self.carved:
            raise RuntimeError("Grid has already been carved; carving may only run once")
        if outlet_mask.shape != self.shape:
            raise ValueError(
                f"Outlet mask shape {outlet_mask.shape} does not match grid shape {self.shape}"
            )
        if depth <= 0:
            raise ValueError(f"Carve depth must be positive, got {depth}")

        valid = self.valid
        target = outlet_mask & valid
        if not np.any(target):
            self.carved = True
            return 0

        # No-data never constrains the neighbourhood minimum
        padded = np.where(valid, self.elevation, np.inf)
        neighbourhood_min = grey_erosion(padded, size=(3, 3), mode="nearest")

        self.elevation[target] = neighbourhood_min[target] - depth
        self.carved = True

        count = int(np.count_nonzero(target))
        logger.debug(f"Carved {count} outlet cells by {depth} m below neighbourhood minimum")
        return count


def prepare_grid(
    elevation: np.ndarray,
    nodata: float,
    dx: float,
    dy: float,
    transform: Optional[Affine] = None,
) -> Grid:
    """
    Validate loader output and build a Grid.

    The elevation array is copied to float64 so the caller's array is never
    modified by carving or conditioning.

    Raises
    ------
    ConfigurationError
        If the array is not 2-D or the cell dimensions are not positive.
    """
    elevation = np.asarray(elevation)
    if elevation.ndim != 2:
        raise ConfigurationError(f"Elevation must be a 2-D array, got {elevation.ndim} dimensions")
    if elevation.size == 0:
        raise ConfigurationError("Elevation array is empty")
    for label, size in (("dx", dx), ("dy", dy)):
        if size is None or not float(size) > 0:
            raise ConfigurationError(f"Cell size {label} must be positive, got {size!r}")

    grid = Grid(
        elevation=elevation.astype(np.float64, copy=True),
        nodata=float(nodata) if nodata is not None else np.nan,
        dx=float(dx),
        dy=float(dy),
        transform=transform,
    )
    logger.debug(
        f"Prepared grid {grid.shape[0]}x{grid.shape[1]} "
        f"({int(np.count_nonzero(grid.valid)):,} valid cells, {dx}x{dy} m)"
    )
    return grid


def rasterize_line(vertices: Sequence[Sequence[int]]) -> List[Cell]:
    """
    Rasterize a polyline given as (row, col) vertices.

    Consecutive vertices are joined with Bresenham lines. Cells appear in
    path order with duplicates removed.

    Examples
    --------
    >>> rasterize_line([(0, 0), (0, 3)])
    [(0, 0), (0, 1), (0, 2), (0, 3)]
    """
    points = [(int(round(r)), int(round(c))) for r, c in vertices]
    if not points:
        return []

    cells: List[Cell] = []
    seen = set()

    def _add(cell):
        if cell not in seen:
            seen.add(cell)
            cells.append(cell)

    _add(points[0])
    for (r0, c0), (r1, c1) in zip(points[:-1], points[1:]):
        for cell in _bresenham(r0, c0, r1, c1):
            _add(cell)
    return cells


def _bresenham(r0: int, c0: int, r1: int, c1: int) -> Iterable[Cell]:
    """Yield the cells of a Bresenham line from (r0, c0) to (r1, c1)."""
    dc = abs(c1 - c0)
    dr = abs(r1 - r0)
    sc = 1 if c0 < c1 else -1
    sr = 1 if r0 < r1 else -1
    err = dc - dr

    c, r = c0, r0
    while True:
        yield r, c
        if c == c1 and r == r1:
            break
        e2 = 2 * err
        if e2 > -dr:
            err -= dr
            c += sc
        if e2 < dc:
            err += dc
            r += sr


def rasterize_outlets(
    lines: Optional[Iterable[OutletLine]],
    shape: Tuple[int, int],
    transform: Optional[Affine] = None,
) -> np.ndarray:
    """
    Rasterize outlet polylines into a boolean cell mask.

    Parameters
    ----------
    lines : iterable
        Each item is either a sequence of (row, col) vertices or a shapely
        LineString / MultiLineString in world coordinates.
    shape : tuple
        (rows, cols) of the target grid
    transform : Affine, optional
        Pixel-to-world transform; required for shapely geometries

    Returns
    -------
    np.ndarray (bool)
        True where an outlet line crosses the cell
    """
    rows, cols = shape
    mask = np.zeros(shape, dtype=bool)
    if lines is None:
        return mask

    dropped = 0
    for line in lines:
        for vertices in _line_vertices(line, transform):
            for r, c in rasterize_line(vertices):
                if 0 <= r < rows and 0 <= c < cols:
                    mask[r, c] = True
                else:
                    dropped += 1

    if dropped:
        logger.warning(f"Dropped {dropped} outlet cells outside the {rows}x{cols} grid")
    logger.debug(f"Rasterized {int(np.count_nonzero(mask))} outlet cells")
    return mask


def _line_vertices(line: OutletLine, transform: Optional[Affine]) -> List[List[Tuple[float, float]]]:
    """Convert one outlet item into lists of (row, col) vertices."""
    if isinstance(line, BaseGeometry):
        if transform is None:
            raise ConfigurationError(
                "Outlet geometries in world coordinates need a grid transform"
            )
        if isinstance(line, MultiLineString):
            parts = list(line.geoms)
        elif isinstance(line, LineString):
            parts = [line]
        else:
            raise ConfigurationError(f"Unsupported outlet geometry type {line.geom_type}")

        inv_transform = ~transform
        result = []
        for part in parts:
            vertices = []
            for x, y, *_ in part.coords:
                col, row = inv_transform * (x, y)
                vertices.append((int(np.floor(row)), int(np.floor(col))))
            result.append(vertices)
        return result

    vertices = [tuple(v) for v in line]
    if any(len(v) != 2 for v in vertices):
        raise ConfigurationError("Outlet vertices must be (row, col) pairs")
    return [vertices]
