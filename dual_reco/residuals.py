from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

from dual_reco.ape import inflated_hit_error
from dual_reco.combiner import combine_states
from dual_reco.types import (
    FailureReason,
    Hit,
    ResidualMethod,
    TrajectoryMeasurement,
    TrajectoryState,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResidualBlock:
    r"""
    Per-hit contribution to the combined trajectory.

    Attributes
    ----------
    measurement : ndarray, shape (dim,)
        Measured local coordinates.
    covariance : ndarray, shape (dim, dim)
        Covariance assigned to the measurement (method dependent).
    position : ndarray, shape (dim,)
        Trajectory prediction :math:`H\,p` in the same coordinates.
    state : TrajectoryState
        State the prediction was taken from.
    """
    measurement: np.ndarray
    covariance: np.ndarray
    position: np.ndarray
    state: TrajectoryState


class ResidualFiller:
    r"""
    Compute measurement, covariance and trajectory position for single hits.

    Two methods, fixed per instance (see :class:`ResidualMethod`):

    * **Unbiased** -- state :math:`s` is the combination of the forward and
      backward *predicted* states, which share no information with the hit:

      .. math:: V = V_\text{hit} + H C_s H^\top.

    * **Pull based** -- state :math:`s` is the *updated* state, which already
      contains the hit. The hit error is first inflated by the sensor's APE
      (the fitted state includes it), then

      .. math:: V = V_\text{hit}^\text{APE} - H C_s H^\top,

      provided no diagonal element becomes negative.

    In both cases the trajectory position is :math:`H\,p_s`.
    """

    __slots__ = ("method",)

    def __init__(self, method: Union[ResidualMethod, int]) -> None:
        self.method = ResidualMethod.from_selector(method)

    def fill(self, measurement: TrajectoryMeasurement) -> Union[ResidualBlock, FailureReason]:
        r"""
        Fill one hit.

        Returns
        -------
        ResidualBlock or FailureReason
            ``STATE_COMBINATION_INVALID`` if the unbiased combination fails,
            ``INVALID_STATE`` if the state to use is invalid or carries no
            covariance, ``INCONSISTENT_COVARIANCE`` if the pull-based difference
            would be negative on the diagonal.
        """
        hit = measurement.hit
        if self.method is ResidualMethod.UNBIASED:
            state = combine_states(measurement.forward_predicted, measurement.backward_predicted)
            if not state.valid:
                return FailureReason.STATE_COMBINATION_INVALID
        else:
            state = measurement.updated
            if not state.valid:
                return FailureReason.INVALID_STATE
        if not state.has_error:
            return FailureReason.INVALID_STATE

        if self.method is ResidualMethod.UNBIASED:
            covariance = self.unbiased_covariance(hit, state)
        else:
            covariance = self.pull_covariance(hit, state)
            if covariance is None:
                return FailureReason.INCONSISTENT_COVARIANCE

        return ResidualBlock(
            measurement=np.array(hit.local_position),
            covariance=covariance,
            position=self.trajectory_position(hit, state),
            state=state,
        )

    @staticmethod
    def trajectory_position(hit: Hit, state: TrajectoryState) -> np.ndarray:
        return (hit.projection @ state.parameters)[:hit.dimension]

    @staticmethod
    def unbiased_covariance(hit: Hit, state: TrajectoryState) -> np.ndarray:
        # raw hit error: the prediction carries the APE of the other hits only
        V = hit.local_error + state.measurement_error(hit.projection)
        return 0.5 * (V + V.T)

    @staticmethod
    def pull_covariance(hit: Hit, state: TrajectoryState) -> Optional[np.ndarray]:
        r"""
        Inflate, compare, subtract.

        Returns ``None`` (after logging an error) when the APE-inflated hit
        variance is smaller than the state variance in any coordinate.
        """
        hit_err = inflated_hit_error(hit)
        state_err = state.measurement_error(hit.projection)
        if np.any(np.diag(hit_err) < np.diag(state_err)):
            _report_inconsistent(hit, hit_err, state_err)
            return None
        # the state puts correlations in, even for 1D strips
        V = hit_err - state_err
        return 0.5 * (V + V.T)


def _report_inconsistent(hit: Hit, hit_err: np.ndarray, state_err: np.ndarray) -> None:
    s_hit = np.sqrt(np.clip(np.diag(hit_err), 0.0, None))
    s_state = np.sqrt(np.clip(np.diag(state_err), 0.0, None))
    if hit.dimension >= 2:
        logger.error(
            "hit error below state error in subdet %d: "
            "s_x %.5g %.5g | s_xy %.5g %.5g | s_y %.5g %.5g",
            hit.subdet_id,
            s_hit[0], s_state[0],
            hit_err[0, 1], state_err[0, 1],
            s_hit[1], s_state[1],
        )
    else:
        logger.error(
            "hit error below state error in subdet %d: s_u %.5g %.5g",
            hit.subdet_id, s_hit[0], s_state[0],
        )
