import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from dual_reco.assembler import BlockAssembler
from dual_reco.types import DetectorElement, Hit, SubTrajectoryResult, TrajectoryState


def _pixel(det_id):
    H = np.zeros((2, 5))
    H[0, 3] = H[1, 4] = 1.0
    return Hit([0.0, 0.0], 1e-6 * np.eye(2), H, DetectorElement(det_id, 1, 0.1 * det_id), hit_id=det_id)


def _leg(hits, derivatives):
    states = [TrajectoryState(np.zeros(5), None, h.det) for h in hits]
    return SubTrajectoryResult(list(hits), states, np.asarray(derivatives, dtype=float))


D_ANCHOR = np.array([[0.0, 0.0, 0.0, 1.0, 0.0],
                     [0.0, 0.0, 0.0, 0.0, 1.0]])
D_SECOND = np.array([[0.2, -0.1, 0.0, 1.0, 0.0],
                     [0.0, 0.0, -0.1, 0.0, 1.0]])


def test_two_hit_position_covariance_is_similarity_transform():
    h0, h1 = _pixel(0), _pixel(1)
    fwd = _leg([h0], D_ANCHOR)
    bwd = _leg([h0, h1], np.vstack([D_ANCHOR + 99.0, D_SECOND]))
    C = np.diag([1.0, 2.0, 3.0, 4.0, 5.0])
    ref = TrajectoryState(np.zeros(5), C, h0.det)

    blocks = BlockAssembler().assemble(fwd, bwd, ref)

    assert blocks.hits == (h0, h1)
    D = np.vstack([D_ANCHOR, D_SECOND])
    np.testing.assert_array_equal(blocks.derivatives, D)
    np.testing.assert_allclose(blocks.position_cov, D @ C @ D.T)
    assert not blocks.position_cov_is_sentinel


def test_missing_reference_covariance_gives_unit_sentinel():
    h0, h1, h2 = _pixel(0), _pixel(1), _pixel(2)
    fwd = _leg([h0, h1], np.vstack([D_ANCHOR, D_SECOND]))
    bwd = _leg([h0, h2], np.vstack([D_ANCHOR, 7.0 * D_SECOND]))
    blocks = BlockAssembler().assemble(fwd, bwd, TrajectoryState(np.zeros(5), None, h0.det))

    assert len(blocks.hits) == 3
    assert blocks.derivatives.shape == (6, 5)
    np.testing.assert_array_equal(blocks.position_cov, np.eye(6))
    assert blocks.position_cov_is_sentinel


def test_strip_anchor_drops_one_row():
    strip = Hit([0.0], [[1e-6]], [[0.0, 0.0, 0.0, 1.0, 0.0]], DetectorElement(0, 2, 0.0))
    h1 = _pixel(1)
    fwd = _leg([strip], D_ANCHOR[:1])
    bwd = _leg([strip, h1], np.vstack([D_ANCHOR[:1], D_SECOND]))
    blocks = BlockAssembler().assemble(fwd, bwd, TrajectoryState(np.zeros(5)))
    np.testing.assert_array_equal(blocks.derivatives, np.vstack([D_ANCHOR[:1], D_SECOND]))


def test_legs_must_share_the_anchor_hit():
    fwd = _leg([_pixel(0)], D_ANCHOR)
    bwd = _leg([_pixel(0), _pixel(1)], np.vstack([D_ANCHOR, D_SECOND]))
    with pytest.raises(ValueError, match="share their first hit"):
        BlockAssembler().assemble(fwd, bwd, TrajectoryState(np.zeros(5)))
