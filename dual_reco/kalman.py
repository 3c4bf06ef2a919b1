from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

from dual_reco.ape import inflated_hit_error
from dual_reco.combiner import combine_states
from dual_reco.config import MUON_MASS
from dual_reco.ekf_kernels import kalman_gain
from dual_reco.field import MagneticField
from dual_reco.fitters.planar import scattering_covariance, transport_matrix
from dual_reco.types import (
    Hit,
    MaterialEffects,
    TrajectoryMeasurement,
    TrajectoryState,
)

logger = logging.getLogger(__name__)


class PlanarKalmanSmoother:
    r"""
    Forward/backward Kalman fit through planar sensors ordered in :math:`z`.

    Produces one :class:`TrajectoryMeasurement` per hit with

    * the **forward predicted** state (hits ``0..i-1`` only),
    * the **backward predicted** state of a filter restarted at the last hit
      from the forward updated state, its covariance scaled by
      ``backward_scale``; the restart carries a down-weighted copy of every
      hit (hit ``i`` included), otherwise hits ``i+1..n-1`` enter,
    * the **updated** (smoothed) state, i.e. the combination of the forward
      updated and backward predicted states, which contains hit ``i``.

    Hit errors are inflated by the sensors' APE, as in a real track fit.

    Parameters
    ----------
    field : MagneticField
        Field lookup (evaluated once at the seed).
    mass : float, optional
        Mass hypothesis used for multiple scattering (GeV).
    material_effects : MaterialEffects, optional
    backward_scale : float, optional
        Covariance scale applied when starting the backward filter.
    """

    __slots__ = ("field", "mass", "material_effects", "backward_scale", "_I")

    def __init__(self,
                 field: MagneticField,
                 mass: float = MUON_MASS,
                 material_effects: MaterialEffects = MaterialEffects.NONE,
                 backward_scale: float = 100.0) -> None:
        self.field = field
        self.mass = float(mass)
        self.material_effects = material_effects
        self.backward_scale = float(backward_scale)
        self._I = np.eye(5)

    def smooth(self, hits: Sequence[Hit], seed: TrajectoryState) -> List[TrajectoryMeasurement]:
        r"""
        Fit ``hits`` (ordered by increasing :math:`z`) starting from ``seed``.

        Parameters
        ----------
        hits : sequence of Hit
            At least one hit, each with a detector element.
        seed : TrajectoryState
            State with covariance on the first hit's surface (or upstream of it).

        Returns
        -------
        list of TrajectoryMeasurement
        """
        hits = list(hits)
        if not hits:
            return []
        if seed.covariance is None or seed.surface is None:
            raise ValueError("seed needs a covariance and a surface")
        b = np.asarray(self.field.in_tesla((seed.parameters[3], seed.parameters[4], seed.surface.z)))

        fwd_pred: List[Tuple[np.ndarray, np.ndarray]] = []
        fwd_upd: List[Tuple[np.ndarray, np.ndarray]] = []
        x, P = np.array(seed.parameters), np.array(seed.covariance)
        z_prev, x0_prev = seed.surface.z, seed.surface.thickness_x0
        for hit in hits:
            x, P = self._predict(x, P, hit.det.z - z_prev, x0_prev, b)
            fwd_pred.append((x, P))
            x, P = self._update(x, P, hit)
            fwd_upd.append((x, P))
            z_prev, x0_prev = hit.det.z, hit.det.thickness_x0

        bwd_pred: List[Tuple[np.ndarray, np.ndarray]] = [None] * len(hits)  # type: ignore[list-item]
        x, P = fwd_upd[-1][0], fwd_upd[-1][1] * self.backward_scale
        for i in range(len(hits) - 1, -1, -1):
            if i < len(hits) - 1:
                x, P = self._predict(x, P, hits[i].det.z - hits[i + 1].det.z,
                                     hits[i + 1].det.thickness_x0, b)
            bwd_pred[i] = (x, P)
            x, P = self._update(x, P, hits[i])

        out: List[TrajectoryMeasurement] = []
        for hit, (xf, Pf), (xu, Pu), (xb, Pb) in zip(hits, fwd_pred, fwd_upd, bwd_pred):
            forward = TrajectoryState(xf, Pf, hit.det)
            backward = TrajectoryState(xb, Pb, hit.det)
            updated = combine_states(TrajectoryState(xu, Pu, hit.det), backward)
            out.append(TrajectoryMeasurement(hit, forward, backward, updated))
        logger.debug("smoothed %d hits", len(out))
        return out

    def _predict(self, x: np.ndarray, P: np.ndarray, dz: float, thickness_x0: float,
                 b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        F = transport_matrix(dz, b)
        if self.material_effects is MaterialEffects.MULTIPLE_SCATTERING and dz != 0.0:
            P = P + scattering_covariance(x, thickness_x0, self.mass)
        P = F @ P @ F.T
        return F @ x, 0.5 * (P + P.T)

    def _update(self, x: np.ndarray, P: np.ndarray, hit: Hit) -> Tuple[np.ndarray, np.ndarray]:
        H = hit.projection
        S = H @ P @ H.T + inflated_hit_error(hit)
        K = kalman_gain(P, H, S)
        x_upd = x + K @ (hit.local_position - H @ x)
        P_upd = (self._I - K @ H) @ P
        return x_upd, 0.5 * (P_upd + P_upd.T)
