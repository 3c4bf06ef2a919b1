r"""
Alignment position error (APE) handling.

Raw hit errors never contain the APE of their sensor, while states coming out of
a track fit do (the fit used the inflated errors). Before comparing or
subtracting the two, the hit error has to be brought into the same convention:

.. math::

    V_\text{hit}^\text{APE} = V_\text{hit} + A\,R_{uv}\,E\,R_{uv}^\top A^\top,

where :math:`E` is the global 3x3 APE, :math:`R_{uv}` the first two rows of the
sensor rotation (local :math:`u, v` axes) and :math:`A` the part of the hit
projection acting on the local position parameters.
"""
from __future__ import annotations

import numpy as np

from dual_reco.types import LOCAL_POSITION, DetectorElement, Hit


def local_ape(det: DetectorElement) -> np.ndarray:
    """APE of ``det`` rotated into its local (u, v) frame; zeros if none is set."""
    if det.alignment_position_error is None:
        return np.zeros((2, 2))
    R_uv = det.rotation[:2, :]
    return R_uv @ det.alignment_position_error @ R_uv.T


def inflated_hit_error(hit: Hit) -> np.ndarray:
    r"""
    Hit covariance in measurement space including the sensor's APE.

    Returns the raw ``hit.local_error`` (as a copy) when the hit has no
    detector element or the element declares no APE.
    """
    err = np.array(hit.local_error, dtype=np.float64)
    if hit.det is None or not hit.det.has_ape:
        return err
    A = hit.projection[:, LOCAL_POSITION]          # (dim, 2)
    return err + A @ local_ape(hit.det) @ A.T
