import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest
from scipy.linalg import LinAlgError

from dual_reco.combiner import combine_states
from dual_reco.ekf_kernels import combine_gaussian, kalman_gain, similarity
from dual_reco.types import DetectorElement, TrajectoryState


def test_similarity_matches_numpy_and_is_symmetric():
    rng = np.random.default_rng(3)
    D = rng.normal(size=(7, 5))
    A = rng.normal(size=(5, 5))
    C = A @ A.T
    out = similarity(D, C)
    np.testing.assert_allclose(out, D @ C @ D.T, rtol=1e-12, atol=1e-12)
    assert np.array_equal(out, out.T)


def test_similarity_rejects_bad_shapes():
    with pytest.raises(ValueError):
        similarity(np.zeros((4, 5)), np.eye(4))


def test_kalman_gain_matches_explicit_inverse():
    P = np.diag([1.0, 2.0, 3.0, 4.0, 5.0])
    H = np.zeros((2, 5))
    H[0, 3] = H[1, 4] = 1.0
    R = np.diag([0.5, 0.25])
    S = H @ P @ H.T + R
    K = kalman_gain(P, H, S)
    np.testing.assert_allclose(K, P @ H.T @ np.linalg.inv(S))


def test_combine_gaussian_equal_weights():
    x, C = combine_gaussian(np.zeros(3), 2.0 * np.eye(3), np.full(3, 2.0), 2.0 * np.eye(3))
    np.testing.assert_allclose(x, np.ones(3))
    np.testing.assert_allclose(C, np.eye(3))


def test_combine_gaussian_weights_by_precision():
    x, C = combine_gaussian(np.array([0.0]), np.array([[1.0]]), np.array([3.0]), np.array([[3.0]]))
    np.testing.assert_allclose(x, [0.75])
    np.testing.assert_allclose(C, [[0.75]])


def test_combine_gaussian_raises_on_non_pd_sum():
    with pytest.raises(LinAlgError):
        combine_gaussian(np.zeros(2), -np.eye(2), np.zeros(2), np.zeros((2, 2)))


def test_combine_states_validity_rules():
    det = DetectorElement(1, 1, 0.0)
    a = TrajectoryState(np.zeros(5), np.eye(5), det)
    b = TrajectoryState(np.full(5, 2.0), np.eye(5), det)

    both = combine_states(a, b)
    assert both.valid and both.surface is det
    np.testing.assert_allclose(both.parameters, np.ones(5))
    np.testing.assert_allclose(both.covariance, 0.5 * np.eye(5))

    assert combine_states(a, TrajectoryState.invalid(det)) is a
    assert combine_states(TrajectoryState.invalid(det), b) is b
    assert not combine_states(TrajectoryState.invalid(det), TrajectoryState.invalid(det)).valid
    assert not combine_states(a, TrajectoryState(np.zeros(5), None, det)).valid
    assert not combine_states(a, TrajectoryState(np.zeros(5), -2.0 * np.eye(5), det)).valid


def test_combine_states_non_finite_covariance_is_invalid():
    det = DetectorElement(1, 1, 0.0)
    good = TrajectoryState(np.zeros(5), np.eye(5), det)
    C = np.eye(5)
    C[0, 0] = np.inf
    assert not combine_states(good, TrajectoryState(np.zeros(5), C, det)).valid
    C[0, 0] = np.nan
    assert not combine_states(TrajectoryState(np.zeros(5), C, det), good).valid
