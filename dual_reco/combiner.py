from __future__ import annotations

import logging

from scipy.linalg import LinAlgError

from dual_reco.ekf_kernels import combine_gaussian
from dual_reco.types import TrajectoryState

logger = logging.getLogger(__name__)


def combine_states(first: TrajectoryState, second: TrajectoryState) -> TrajectoryState:
    r"""
    Statistically combine two independent estimates of the same state.

    Parameters
    ----------
    first, second : TrajectoryState
        Typically the forward and backward *predicted* states at one hit; neither
        contains information from that hit, so the combination is unbiased.

    Returns
    -------
    TrajectoryState
        The precision-weighted average on ``first``'s surface. If only one input
        is valid it is returned unchanged. The result is invalid when both
        inputs are invalid, when a valid input carries no covariance, or when
        :math:`C_1 + C_2` is not finite and positive definite.
    """
    if not first.valid:
        return second
    if not second.valid:
        return first
    if not (first.has_error and second.has_error):
        return TrajectoryState.invalid(first.surface)
    try:
        x, C = combine_gaussian(first.parameters, first.covariance,
                                second.parameters, second.covariance)
    except (LinAlgError, ValueError):
        # ValueError: non-finite covariance entries rejected by cho_factor
        logger.debug("state combination failed on det %s",
                     getattr(first.surface, "det_id", None))
        return TrajectoryState.invalid(first.surface)
    return TrajectoryState(x, C, first.surface)
