import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import orjson
import pytest

from dual_reco.config import MUON_MASS, DualTrajectoryConfig, load_config
from dual_reco.errors import ConfigurationError
from dual_reco.main import build_parser, split_telescope_config
from dual_reco.types import MaterialEffects, PropagationDirection, ResidualMethod

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config.json"


def test_load_repository_config():
    cfg = load_config(REPO_CONFIG)
    config = DualTrajectoryConfig.from_mapping(cfg["dual_config"])
    assert config.residual_method is ResidualMethod.UNBIASED
    assert config.material_effects is MaterialEffects.MULTIPLE_SCATTERING
    np.testing.assert_allclose(config.make_field().in_tesla((0.0, 0.0, 0.0)), [0.0, 1.0, 0.0])

    geometry, run = split_telescope_config(cfg["telescope_config"])
    assert "anchor_plane" in run and "anchor_plane" not in geometry


def test_load_config_reports_parse_errors(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{ not json")
    with pytest.raises(ValueError, match="Failed to parse"):
        load_config(broken)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.json")


def test_defaults_from_empty_block(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_bytes(orjson.dumps({"dual_config": {}}))
    config = DualTrajectoryConfig.from_mapping(load_config(path)["dual_config"])
    assert config.residual_method is ResidualMethod.UNBIASED
    assert config.mass == MUON_MASS
    assert config.material_effects is MaterialEffects.NONE
    assert config.propagation_direction is PropagationDirection.ALONG_MOMENTUM
    assert config.field_tesla == (0.0, 0.0, 0.0)


@pytest.mark.parametrize("block, message", [
    ({"residual_method": 3}, "residual_method"),
    ({"residual_method": "unbiased"}, "residual_method"),
    ({"mass": -1.0}, "mass"),
    ({"material_effects": "energy_loss"}, "material_effects"),
    ({"propagation_direction": "sideways"}, "propagation_direction"),
    ({"field_tesla": [0.0, 1.0]}, "field_tesla"),
    ({"anchor_plane": 2}, "unknown dual_config keys"),
])
def test_invalid_blocks(block, message):
    with pytest.raises(ConfigurationError, match=message):
        DualTrajectoryConfig.from_mapping(block)


def test_enum_names_are_case_insensitive():
    config = DualTrajectoryConfig.from_mapping({"material_effects": "Multiple_Scattering",
                                                "residual_method": 2})
    assert config.material_effects is MaterialEffects.MULTIPLE_SCATTERING
    assert config.residual_method is ResidualMethod.PULL_BASED


def test_cli_parser_defaults_and_overrides():
    args = build_parser().parse_args([])
    assert args.config == "config.json"
    assert args.residual_method is None and not args.plot
    args = build_parser().parse_args(["-r", "2", "-n", "10", "--anchor", "1", "-v"])
    assert (args.residual_method, args.n_tracks, args.anchor, args.verbose) == (2, 10, 1, True)
