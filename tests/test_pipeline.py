import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from dual_reco.config import DualTrajectoryConfig
from dual_reco.coordinator import DualTrajectoryCoordinator
from dual_reco.errors import ConfigurationError
from dual_reco.field import UniformField
from dual_reco.fitters.planar import PlanarReferenceFitter
from dual_reco.kalman import PlanarKalmanSmoother
from dual_reco.main import run_tracks
from dual_reco.metrics import RESIDUAL_COLUMNS, chi2, residual_frame, summarize_pulls, validity_summary
from dual_reco.simulation import (
    HIT_COLUMNS,
    STRIP_SUBDET,
    build_telescope,
    hits_from_frame,
    random_track_parameters,
    seed_state,
    simulate_track,
)
from dual_reco.types import MaterialEffects, ResidualMethod

FIELD = UniformField(0.0, 1.0, 0.0)


def _smoothed_track(rng, material=MaterialEffects.NONE):
    telescope = build_telescope(n_planes=6, strip_planes=[2], ape=5e-6, thickness_x0=0.01)
    truth = random_track_parameters(rng)
    frame = simulate_track(telescope, truth, FIELD, rng, material_effects=material)
    hits = hits_from_frame(frame, telescope)
    smoother = PlanarKalmanSmoother(FIELD, material_effects=material)
    return telescope, frame, hits, smoother.smooth(hits, seed_state(telescope, truth[0]))


def test_simulated_frame_layout():
    rng = np.random.default_rng(7)
    telescope, frame, hits, _ = _smoothed_track(rng)
    assert list(frame.columns) == list(HIT_COLUMNS)
    assert len(frame) == telescope.n_planes == len(hits)
    strip_rows = frame[frame.subdet_id == STRIP_SUBDET]
    assert len(strip_rows) == 1 and strip_rows.meas_1.isna().all()
    assert [h.dimension for h in hits] == [2, 2, 1, 2, 2, 2]
    assert np.all(np.diff(frame.z.to_numpy()) > 0)


def test_build_telescope_rejects_bad_geometry():
    with pytest.raises(ValueError):
        build_telescope(n_planes=1)
    with pytest.raises(ValueError):
        build_telescope(n_planes=4, strip_planes=[4])


def test_smoother_states_are_consistent():
    rng = np.random.default_rng(11)
    _, frame, hits, measurements = _smoothed_track(rng)
    assert len(measurements) == len(hits)
    for tm in measurements:
        for state in (tm.forward_predicted, tm.backward_predicted, tm.updated):
            assert state.valid and state.has_error
            assert np.all(np.diag(state.covariance) > 0.0)
        assert tm.updated.surface is tm.hit.det
    # smoothed positions close to the truth (well within 1 mm)
    true_xy = frame[["true_x", "true_y"]].to_numpy()
    fitted_xy = np.array([tm.updated.local_position for tm in measurements])
    assert np.max(np.abs(fitted_xy - true_xy)) < 1e-3


@pytest.mark.parametrize("method", [ResidualMethod.UNBIASED, ResidualMethod.PULL_BASED])
@pytest.mark.parametrize("material", [MaterialEffects.NONE, MaterialEffects.MULTIPLE_SCATTERING])
def test_dual_trajectory_from_smoothed_track(method, material):
    rng = np.random.default_rng(5)
    telescope, _, hits, measurements = _smoothed_track(rng, material)
    anchor = 3
    n = len(hits)
    coordinator = DualTrajectoryCoordinator(PlanarReferenceFitter(), method, material_effects=material)

    traj = coordinator.construct(measurements, measurements[anchor].updated,
                                 list(range(anchor, n)), list(range(anchor, -1, -1)), FIELD)

    assert traj.is_valid
    assert traj.n_hits == n
    assert [h.det.det_id for h in traj.hits] == [3, 4, 5, 2, 1, 0]
    # five pixels and one strip
    assert traj.measurement_dimension == 11
    assert traj.derivatives.shape == (11, 5)
    np.testing.assert_array_equal(traj.hit_offsets, [0, 2, 4, 6, 7, 9])
    assert np.all(np.diag(traj.measurement_cov) > 0.0)

    frame = residual_frame(traj, track_id=42)
    assert list(frame.columns) == list(RESIDUAL_COLUMNS)
    assert len(frame) == 11
    assert (frame.track_id == 42).all()
    assert np.all(np.abs(frame.pull) < 10.0)
    assert chi2(traj) >= 0.0


def test_metrics_on_invalid_and_summaries():
    rng = np.random.default_rng(2)
    _, _, _, measurements = _smoothed_track(rng)
    coordinator = DualTrajectoryCoordinator(PlanarReferenceFitter())
    good = coordinator.construct(measurements, measurements[0].updated, [0, 1, 2], [0], FIELD)
    # backward list walks the wrong way: sub-fit invalid
    bad = coordinator.construct(measurements, measurements[0].updated, [0, 1], [0, 2], FIELD)

    assert good.is_valid and not bad.is_valid
    assert residual_frame(bad).empty
    assert chi2(bad) is None
    assert validity_summary([good, bad, good]) == {"valid": 2, "sub_fit_invalid": 1}

    summary = summarize_pulls(residual_frame(good))
    assert set(summary.columns) == {"subdet_id", "coordinate", "mean", "std", "count"}
    assert summary["count"].sum() == good.measurement_dimension


def test_run_tracks_end_to_end():
    config = DualTrajectoryConfig.from_mapping({
        "residual_method": 1,
        "material_effects": "multiple_scattering",
        "field_tesla": [0.0, 1.0, 0.0],
    })
    block = {"n_planes": 6, "strip_planes": [1, 4], "thickness_x0": 0.01, "ape": 5e-6,
             "anchor_plane": 2, "momentum_range": [5.0, 10.0]}
    results, table = run_tracks(config, block, 5, np.random.default_rng(0))

    assert len(results) == 5
    assert all(r.is_valid for r in results)
    assert isinstance(table, pd.DataFrame)
    assert sorted(table.track_id.unique()) == [0, 1, 2, 3, 4]
    assert len(table) == 5 * (4 * 2 + 2)


def test_run_tracks_rejects_anchor_outside_telescope():
    with pytest.raises(ConfigurationError):
        run_tracks(DualTrajectoryConfig(), {"n_planes": 4}, 1, np.random.default_rng(0), anchor=4)


def test_default_mass_is_the_muon_mass():
    from dual_reco.config import MUON_MASS
    assert PlanarKalmanSmoother(FIELD).mass == MUON_MASS
    assert DualTrajectoryConfig().mass == MUON_MASS
