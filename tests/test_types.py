import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from dual_reco.errors import ConfigurationError
from dual_reco.types import (
    CombinedTrajectory,
    DetectorElement,
    FailureReason,
    Hit,
    PropagationDirection,
    ResidualMethod,
    SubTrajectoryResult,
    TrajectoryState,
)


def _pixel_projection():
    H = np.zeros((2, 5))
    H[0, 3] = H[1, 4] = 1.0
    return H


@pytest.mark.parametrize("value, expected", [
    (1, ResidualMethod.UNBIASED),
    (2, ResidualMethod.PULL_BASED),
    (np.int64(2), ResidualMethod.PULL_BASED),
    (ResidualMethod.UNBIASED, ResidualMethod.UNBIASED),
])
def test_residual_method_accepts_known_selectors(value, expected):
    assert ResidualMethod.from_selector(value) is expected


@pytest.mark.parametrize("value", [0, 3, -1, True, "1", 1.0, None])
def test_residual_method_rejects_everything_else(value):
    with pytest.raises(ConfigurationError, match="residual_method == 1 or 2"):
        ResidualMethod.from_selector(value)


def test_configuration_error_is_value_error():
    assert issubclass(ConfigurationError, ValueError)


def test_propagation_direction_opposite():
    assert PropagationDirection.ALONG_MOMENTUM.opposite() is PropagationDirection.OPPOSITE_TO_MOMENTUM
    assert PropagationDirection.OPPOSITE_TO_MOMENTUM.opposite() is PropagationDirection.ALONG_MOMENTUM
    assert PropagationDirection.ANY_DIRECTION.opposite() is PropagationDirection.ANY_DIRECTION


def test_hit_shapes_and_dimension():
    det = DetectorElement(det_id=4, subdet_id=2, z=0.3)
    hit = Hit([0.1, 0.2], np.eye(2) * 1e-6, _pixel_projection(), det, hit_id=9)
    assert hit.dimension == 2
    assert hit.subdet_id == 2
    assert not hit.local_position.flags.writeable

    strip = Hit([0.05], [[4e-10]], [[0, 0, 0, 1.0, 0.0]], det)
    assert strip.dimension == 1

    with pytest.raises(ValueError, match="inconsistent hit shapes"):
        Hit([0.1, 0.2], np.eye(1), _pixel_projection(), det)


def test_trajectory_state_measurement_error():
    C = np.diag([1.0, 2.0, 3.0, 4.0, 5.0])
    state = TrajectoryState(np.arange(5.0), C)
    np.testing.assert_allclose(state.local_position, [3.0, 4.0])
    np.testing.assert_allclose(state.measurement_error(_pixel_projection()), np.diag([4.0, 5.0]))
    with pytest.raises(ValueError):
        TrajectoryState(np.zeros(5)).measurement_error(_pixel_projection())

    bad = TrajectoryState.invalid()
    assert not bad.valid and not bad.has_error


def test_sub_trajectory_result_checks_consistency_only_when_valid():
    det = DetectorElement(0, 1, 0.0)
    hit = Hit([0.0, 0.0], np.eye(2), _pixel_projection(), det)
    with pytest.raises(ValueError, match="inconsistent sub-trajectory"):
        SubTrajectoryResult([hit], [TrajectoryState(np.zeros(5))], np.zeros((3, 5)))
    invalid = SubTrajectoryResult.invalid([hit])
    assert not invalid.valid
    assert invalid.measurement_dimension == 0


def test_invalid_combined_trajectory_is_empty_and_readonly():
    traj = CombinedTrajectory.invalid(np.ones(5), ResidualMethod.UNBIASED, FailureReason.SUB_FIT_INVALID)
    assert not traj.is_valid
    assert traj.failure is FailureReason.SUB_FIT_INVALID
    assert traj.n_hits == 0
    assert traj.measurements.size == 0
    assert traj.measurement_cov.shape == (0, 0)
    assert traj.derivatives.shape == (0, 5)
    assert traj.hit_offsets.size == 0
    assert not traj.parameters.flags.writeable
