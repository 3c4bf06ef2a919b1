from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from dual_reco.ekf_kernels import similarity
from dual_reco.types import Hit, SubTrajectoryResult, TrajectoryState


@dataclass(frozen=True, slots=True)
class AssembledBlocks:
    r"""
    Combined hit list, derivative matrix and trajectory position covariance.

    Attributes
    ----------
    hits : tuple of Hit
        Forward hits followed by backward hits without the shared anchor.
    derivatives : ndarray, shape (n_meas, n_par)
    position_cov : ndarray, shape (n_meas, n_meas)
        :math:`D C D^\top`, or the unit diagonal when
        ``position_cov_is_sentinel`` is set.
    position_cov_is_sentinel : bool
        ``True`` when the reference state had no covariance.
    """
    hits: Tuple[Hit, ...]
    derivatives: np.ndarray
    position_cov: np.ndarray
    position_cov_is_sentinel: bool


class BlockAssembler:
    r"""
    Merge two sub-trajectories sharing exactly one anchor hit.

    Layout of the combined derivatives :math:`D`:

    .. math::

        D = \begin{pmatrix} D_\text{fwd} \\ D_\text{bwd}[d_0:, :] \end{pmatrix},

    where :math:`d_0` is the anchor's measurement dimension (its rows appear
    in both legs and are kept from the forward one).
    """

    def assemble(self,
                 fwd: SubTrajectoryResult,
                 bwd: SubTrajectoryResult,
                 reference_state: TrajectoryState) -> AssembledBlocks:
        r"""
        Combine hits and derivatives and propagate the reference covariance.

        Raises
        ------
        ValueError
            If the legs do not start from the same hit or disagree on the
            number of parameters. Both inputs must be valid.
        """
        if not fwd.hits or not bwd.hits or bwd.hits[0] is not fwd.hits[0]:
            raise ValueError("forward and backward sub-trajectories must share their first hit")
        if fwd.derivatives.shape[1] != bwd.derivatives.shape[1]:
            raise ValueError(
                f"parameter count mismatch: {fwd.derivatives.shape[1]} "
                f"vs {bwd.derivatives.shape[1]}"
            )

        anchor_rows = fwd.hits[0].dimension
        hits = tuple(fwd.hits) + tuple(bwd.hits[1:])
        derivatives = np.vstack([fwd.derivatives, bwd.derivatives[anchor_rows:, :]])

        if reference_state.has_error:
            position_cov = similarity(derivatives, reference_state.covariance)
            sentinel = False
        else:
            position_cov = np.eye(derivatives.shape[0])
            sentinel = True

        return AssembledBlocks(hits, derivatives, position_cov, sentinel)
