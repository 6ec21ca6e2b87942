"""
Tests for Mydro and URBS output rows.
"""

import numpy as np
import pytest

from src.catchment.channels import ChannelNetwork, FlowPath, Reach
from src.catchment.config import get_model_config
from src.catchment.errors import ConfigurationError
from src.catchment.hydraulics import compute_hydraulics
from src.catchment.model_output import OUTPUT_SCHEMAS, assemble_model_output
from src.catchment.subcatchments import Subcatchment, SubcatchmentTree

MYDRO_SUBCATCHMENT_KEYS = [
    "SubcatchmentID", "DownstreamID", "OutletRow", "OutletCol", "Area_km2",
    "FlowLength_km", "Slope", "LagIndex", "HeadRow", "HeadCol",
]
MYDRO_REACH_KEYS = [
    "ReachID", "FromSubcatchment", "ToSubcatchment", "Length_km", "Slope",
    "ManningsN", "Conveyance", "LagIndex", "ChannelFraction",
]
URBS_SUBCATCHMENT_KEYS = ["Index", "DS", "US", "Area", "L", "Sc", "Lf", "Sf"]
URBS_REACH_KEYS = ["Reach", "From", "To", "L", "Sc", "LagIndex"]


class TestMydroOutput:
    """Test Mydro row schema."""

    def test_row_keys(self):
        output = _assemble("Mydro")
        assert output.model == "Mydro"
        assert list(output.subcatchment_rows[0]) == MYDRO_SUBCATCHMENT_KEYS
        assert list(output.reach_rows[0]) == MYDRO_REACH_KEYS

    def test_root_downstream_is_zero(self):
        output = _assemble("Mydro")
        rows = {r["SubcatchmentID"]: r for r in output.subcatchment_rows}
        assert rows[1]["DownstreamID"] == 0
        assert rows[2]["DownstreamID"] == 1
        assert rows[3]["DownstreamID"] == 1

    def test_reach_row_values(self):
        output = _assemble("Mydro")
        row = output.reach_rows[0]
        assert row["ReachID"] == 2
        assert row["FromSubcatchment"] == 2
        assert row["ToSubcatchment"] == 1
        assert row["Length_km"] == pytest.approx(2.0)
        assert row["ManningsN"] == 0.03
        assert row["ChannelFraction"] == pytest.approx(0.5)

    def test_channel_fraction_matched_by_upstream_id(self):
        tree, network = _three_subcatchments()
        hydraulics = compute_hydraulics(tree, network, get_model_config("Mydro"))
        # Rows follow the hydraulics order even when the network lists reaches differently
        network.reaches = list(reversed(network.reaches))

        output = assemble_model_output("Mydro", tree, network, hydraulics)

        fractions = {r["FromSubcatchment"]: r["ChannelFraction"] for r in output.reach_rows}
        assert [r["ReachID"] for r in output.reach_rows] == [2, 3]
        assert fractions[2] == pytest.approx(0.5)
        assert fractions[3] == pytest.approx(1.0)

    def test_head_and_outlet_cells(self):
        output = _assemble("Mydro")
        row = output.subcatchment_rows[0]
        assert (row["OutletRow"], row["OutletCol"]) == (1, 0)
        assert (row["HeadRow"], row["HeadCol"]) == (0, 0)


class TestUrbsOutput:
    """Test URBS row schema."""

    def test_row_keys(self):
        output = _assemble("URBS")
        assert output.model == "URBS"
        assert list(output.subcatchment_rows[0]) == URBS_SUBCATCHMENT_KEYS
        assert list(output.reach_rows[0]) == URBS_REACH_KEYS

    def test_upstream_list(self):
        output = _assemble("urbs")
        rows = {r["Index"]: r for r in output.subcatchment_rows}
        assert rows[1]["US"] == "2,3"
        assert rows[2]["US"] == ""
        assert rows[1]["DS"] == 0

    def test_root_has_no_channel_length(self):
        output = _assemble("URBS")
        rows = {r["Index"]: r for r in output.subcatchment_rows}
        assert rows[1]["L"] == 0.0
        assert rows[1]["Sc"] == rows[1]["Sf"]
        assert rows[2]["L"] == pytest.approx(2.0)

    def test_one_reach_row_per_reach(self):
        output = _assemble("URBS")
        assert [r["Reach"] for r in output.reach_rows] == [2, 3]


class TestAssembleModelOutput:
    """Test model selection."""

    def test_unknown_model(self):
        tree, network = _three_subcatchments()
        hydraulics = compute_hydraulics(tree, network, get_model_config("URBS"))
        with pytest.raises(ConfigurationError, match="Unknown model"):
            assemble_model_output("Foo", tree, network, hydraulics)

    def test_every_model_has_a_schema(self):
        assert set(OUTPUT_SCHEMAS) == {"mydro", "urbs"}


# ===== Helper Functions for Test Data Generation =====


def _assemble(model):
    tree, network = _three_subcatchments()
    hydraulics = compute_hydraulics(tree, network, get_model_config(model))
    return assemble_model_output(model, tree, network, hydraulics)


def _three_subcatchments():
    """Subcatchment 1 at the exit, 2 and 3 draining into it."""
    labels = np.array([
        [1, 2, 2],
        [1, 3, 3],
    ], dtype=np.int32)
    subs = [
        Subcatchment(1, (1, 0), None, (2, 3), 2, 2.0),
        Subcatchment(2, (0, 1), 1, (), 2, 2.0),
        Subcatchment(3, (1, 1), 1, (), 2, 2.0),
    ]
    tree = SubcatchmentTree(labels, subs, target_area=2.0)

    reaches = [
        Reach(2, 2, 1, ((0, 1), (1, 0)), 2000.0, 4.0, 0.002, 1000.0),
        Reach(3, 3, 1, ((1, 1), (1, 0)), 1000.0, 1.0, 0.001, 1000.0),
    ]
    paths = {
        1: FlowPath(1, (0, 0), 1000.0, 2.0, 0.002),
        2: FlowPath(2, (0, 2), 1000.0, 1.0, 0.001),
        3: FlowPath(3, (1, 2), 1000.0, 1.0, 0.001),
    }
    network = ChannelNetwork(
        channel_mask=np.zeros((2, 3), dtype=bool),
        reaches=reaches,
        flow_paths=paths,
    )
    return tree, network
