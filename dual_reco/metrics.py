from __future__ import annotations
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

from dual_reco.types import CombinedTrajectory

RESIDUAL_COLUMNS = ("track_id", "hit_index", "hit_id", "det_id", "subdet_id", "coordinate",
                    "measurement", "position", "residual", "sigma", "pull")


def residual_frame(trajectory: CombinedTrajectory, track_id: int = 0) -> pd.DataFrame:
    r"""
    Flatten a combined trajectory into one row per measured coordinate.

    For coordinate :math:`k` of hit :math:`i`,

    .. math::

       r_k = m_k - t_k, \qquad \sigma_k = \sqrt{V_{kk}}, \qquad
       \text{pull}_k = r_k / \sigma_k,

    where :math:`m` is the measurement, :math:`t` the trajectory position and
    :math:`V` the method dependent measurement covariance.

    Parameters
    ----------
    trajectory : CombinedTrajectory
        Result of :meth:`DualTrajectoryCoordinator.construct`.
    track_id : int, optional
        Label copied into every row.

    Returns
    -------
    pandas.DataFrame
        Columns :data:`RESIDUAL_COLUMNS`. Invalid trajectories give an empty
        frame with the same columns.
    """
    if not trajectory.is_valid or trajectory.n_hits == 0:
        return pd.DataFrame(columns=list(RESIDUAL_COLUMNS))

    hit_index = np.repeat(np.arange(trajectory.n_hits), [h.dimension for h in trajectory.hits])
    coordinate = np.concatenate([np.arange(h.dimension) for h in trajectory.hits])
    sigma = np.sqrt(np.clip(np.diag(trajectory.measurement_cov), 0.0, None))
    residual = trajectory.residuals
    with np.errstate(divide="ignore", invalid="ignore"):
        pull = np.where(sigma > 0.0, residual / sigma, np.nan)

    hits = trajectory.hits
    return pd.DataFrame({
        "track_id": int(track_id),
        "hit_index": hit_index,
        "hit_id": [hits[i].hit_id for i in hit_index],
        "det_id": [hits[i].det.det_id if hits[i].det is not None else -1 for i in hit_index],
        "subdet_id": [hits[i].subdet_id for i in hit_index],
        "coordinate": coordinate,
        "measurement": trajectory.measurements,
        "position": trajectory.trajectory_positions,
        "residual": residual,
        "sigma": sigma,
        "pull": pull,
    })


def summarize_pulls(frame: pd.DataFrame) -> pd.DataFrame:
    r"""
    Pull mean, width and count per ``(subdet_id, coordinate)``.

    A well calibrated unbiased fit gives mean :math:`\approx 0` and standard
    deviation :math:`\approx 1` in every group.
    """
    if frame.empty:
        return pd.DataFrame(columns=["subdet_id", "coordinate", "mean", "std", "count"])
    grouped = frame.dropna(subset=["pull"]).groupby(["subdet_id", "coordinate"])["pull"]
    out = grouped.agg(["mean", "std", "count"]).reset_index()
    return out


def validity_summary(trajectories: Iterable[CombinedTrajectory]) -> Dict[str, int]:
    """Count valid results and invalid ones per failure reason."""
    counts: Dict[str, int] = {"valid": 0}
    for traj in trajectories:
        if traj.is_valid:
            counts["valid"] += 1
            continue
        key = traj.failure.value if traj.failure is not None else "unknown"
        counts[key] = counts.get(key, 0) + 1
    return counts


def chi2(trajectory: CombinedTrajectory) -> Optional[float]:
    r"""
    :math:`\chi^2 = r^\top V^{-1} r` over all coordinates, ``None`` if invalid.
    """
    if not trajectory.is_valid or trajectory.measurement_dimension == 0:
        return None
    r = trajectory.residuals
    return float(r @ np.linalg.solve(trajectory.measurement_cov, r))
