from __future__ import annotations

from typing import List, Sequence

import numpy as np

from dual_reco.field import MagneticField
from dual_reco.fitters.fitter import TrajectoryFitter
from dual_reco.types import (
    Hit,
    MaterialEffects,
    PropagationDirection,
    SubTrajectoryResult,
    TrajectoryState,
)

# GeV / (T m)
C_LIGHT = 0.299792458


def transport_matrix(dz: float, b_field: np.ndarray) -> np.ndarray:
    r"""
    Jacobian of the parabolic plane-to-plane transport over :math:`\Delta z`.

    For parameters :math:`(q/p, t_x, t_y, x, y)` and a field
    :math:`(B_x, B_y, \cdot)`, with :math:`k = 0.2998` GeV/(T m):

    .. math::

        t_x' &= t_x - k B_y\,(q/p)\,\Delta z, &\qquad
        x' &= x + t_x \Delta z - \tfrac12 k B_y\,(q/p)\,\Delta z^2,\\
        t_y' &= t_y + k B_x\,(q/p)\,\Delta z, &\qquad
        y' &= y + t_y \Delta z + \tfrac12 k B_x\,(q/p)\,\Delta z^2.

    The model is linear in the parameters, so the matrix is also the exact
    transport and ``F(a + b) == F(b) @ F(a)``.

    Parameters
    ----------
    dz : float
        Signed distance along the beam axis (meters).
    b_field : ndarray, shape (3,)
        Field in Tesla.

    Returns
    -------
    ndarray, shape (5, 5)
    """
    dz = float(dz)
    kbx = C_LIGHT * float(b_field[0])
    kby = C_LIGHT * float(b_field[1])
    F = np.eye(5)
    F[1, 0] = -kby * dz
    F[2, 0] = kbx * dz
    F[3, 0] = -0.5 * kby * dz * dz
    F[3, 1] = dz
    F[4, 0] = 0.5 * kbx * dz * dz
    F[4, 2] = dz
    return F


def scattering_covariance(params: np.ndarray, thickness_x0: float, mass: float) -> np.ndarray:
    r"""
    Multiple-scattering covariance added to the slopes when crossing a plane.

    Uses the Highland formula

    .. math::

        \theta_0 = \frac{13.6\ \text{MeV}}{\beta c p}\sqrt{\ell}\,
                   \bigl(1 + 0.038 \ln \ell\bigr),
        \qquad \ell = t_{X_0}\sqrt{1 + t_x^2 + t_y^2},

    projected onto slope space:
    :math:`\mathrm{cov}(t_x, t_y) = \theta_0^2 (1+t_x^2+t_y^2)
    \begin{pmatrix}1+t_x^2 & t_x t_y\\ t_x t_y & 1+t_y^2\end{pmatrix}`.

    Returns zeros for massless material or a zero ``q/p`` (infinite momentum).
    """
    Q = np.zeros((5, 5))
    qop = float(params[0])
    if thickness_x0 <= 0.0 or qop == 0.0:
        return Q
    p = 1.0 / abs(qop)
    beta = p / np.hypot(p, mass)
    tx, ty = float(params[1]), float(params[2])
    norm2 = 1.0 + tx * tx + ty * ty
    path = thickness_x0 * np.sqrt(norm2)
    theta0 = 0.0136 / (beta * p) * np.sqrt(path) * max(0.0, 1.0 + 0.038 * np.log(path))
    t2 = theta0 * theta0 * norm2
    Q[1, 1] = t2 * (1.0 + tx * tx)
    Q[2, 2] = t2 * (1.0 + ty * ty)
    Q[1, 2] = Q[2, 1] = t2 * tx * ty
    return Q


class PlanarReferenceFitter(TrajectoryFitter):
    r"""
    Reference trajectory through parallel planar sensors in a uniform field.

    Starting from the reference state on its surface, the state is transported
    plane by plane with :func:`transport_matrix`. Because the model is linear,
    the accumulated transport :math:`J_i = F_i \cdots F_1` is both the exact
    propagation (:math:`p_i = J_i\,p_0`) and the derivative of the state at
    hit :math:`i` with respect to the reference parameters. The derivative rows
    for hit :math:`i` are :math:`H_i J_i`.

    With ``MaterialEffects.MULTIPLE_SCATTERING`` the scattering covariance of
    each traversed plane (:func:`scattering_covariance`) is added to the
    transported state covariance; the derivatives are unaffected.

    ``ALONG_MOMENTUM`` means increasing :math:`z`. A hit lying against the
    requested direction, or a hit without detector element, makes the fit
    invalid.
    """

    def fit(self,
            hits: Sequence[Hit],
            reference_state: TrajectoryState,
            *,
            mass: float,
            material_effects: MaterialEffects,
            direction: PropagationDirection,
            field: MagneticField) -> SubTrajectoryResult:
        hits = list(hits)
        surface = reference_state.surface
        if not hits or not reference_state.valid or surface is None:
            self.log.debug("reference fit invalid: %d hits, reference valid=%s, surface=%s",
                           len(hits), reference_state.valid, surface)
            return SubTrajectoryResult.invalid(hits)

        p0 = np.asarray(reference_state.parameters, dtype=np.float64)
        b = np.asarray(field.in_tesla((p0[3], p0[4], surface.z)), dtype=np.float64)
        scatter = material_effects is MaterialEffects.MULTIPLE_SCATTERING

        J = np.eye(p0.size)
        C = None if reference_state.covariance is None else np.array(reference_state.covariance)
        z_prev, det_prev = surface.z, surface
        rows: List[np.ndarray] = []
        states: List[TrajectoryState] = []

        for hit in hits:
            det = hit.det
            if det is None:
                self.log.debug("hit %d has no detector element", hit.hit_id)
                return SubTrajectoryResult.invalid(hits)
            step = det.z - z_prev
            if not self._reachable(step, direction):
                self.log.debug("det %d at z=%.4f not reachable %s from z=%.4f",
                               det.det_id, det.z, direction.value, z_prev)
                return SubTrajectoryResult.invalid(hits)

            F = transport_matrix(step, b)
            if C is not None:
                Q = (scattering_covariance(J @ p0, det_prev.thickness_x0, mass)
                     if scatter and step != 0.0 else 0.0)
                C = F @ (C + Q) @ F.T
                C = 0.5 * (C + C.T)
            J = F @ J
            params = J @ p0
            if not np.all(np.isfinite(params)):
                return SubTrajectoryResult.invalid(hits)

            rows.append(hit.projection @ J)
            states.append(TrajectoryState(params, C, det))
            z_prev, det_prev = det.z, det

        return SubTrajectoryResult(hits, states, np.vstack(rows), valid=True)

    @staticmethod
    def _reachable(step: float, direction: PropagationDirection) -> bool:
        if direction is PropagationDirection.ALONG_MOMENTUM:
            return step >= 0.0
        if direction is PropagationDirection.OPPOSITE_TO_MOMENTUM:
            return step <= 0.0
        return True
