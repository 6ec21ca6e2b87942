"""Pytest configuration and fixtures for catchment-maker tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import pytest
import numpy as np


@pytest.fixture
def tilted_valley():
    """20x20 valley draining south toward the middle column."""
    rows, cols = 20, 20
    r, c = np.mgrid[0:rows, 0:cols]
    return (rows - 1 - r) * 1.0 + np.abs(c - cols // 2) * 0.5
