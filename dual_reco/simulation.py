r"""
Toy planar telescope: geometry, track simulation and hit conversion.

Pixel planes measure :math:`(x, y)`; strip planes measure a single stereo
coordinate :math:`u = x\cos\alpha + y\sin\alpha` with alternating sign of
:math:`\alpha`. Simulated hits are kept in a :class:`pandas.DataFrame` with one
row per hit and converted to :class:`~dual_reco.types.Hit` objects on demand.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from dual_reco.ape import inflated_hit_error
from dual_reco.config import MUON_MASS
from dual_reco.field import MagneticField
from dual_reco.fitters.planar import scattering_covariance, transport_matrix
from dual_reco.types import DetectorElement, Hit, MaterialEffects, TrajectoryState

PIXEL_SUBDET = 1
STRIP_SUBDET = 2

HIT_COLUMNS = ("hit_id", "det_id", "subdet_id", "z", "dimension",
               "true_x", "true_y", "meas_0", "meas_1")


@dataclass(frozen=True, slots=True)
class Telescope:
    """Ordered sensors with their measurement projections and resolutions."""
    detectors: Tuple[DetectorElement, ...]
    projections: Tuple[np.ndarray, ...]
    resolutions: Tuple[np.ndarray, ...]

    @property
    def n_planes(self) -> int:
        return len(self.detectors)


def build_telescope(n_planes: int = 8,
                    spacing: float = 0.15,
                    z0: float = 0.0,
                    pixel_sigma: Sequence[float] = (1.0e-5, 1.0e-5),
                    strip_sigma: float = 2.0e-5,
                    strip_planes: Sequence[int] = (),
                    strip_angle_deg: float = 5.0,
                    thickness_x0: float = 0.0,
                    ape: float = 0.0) -> Telescope:
    r"""
    Equidistant telescope along :math:`z`.

    Parameters
    ----------
    n_planes : int, optional
        Number of sensors (at least 2).
    spacing : float, optional
        Distance between sensors (meters).
    z0 : float, optional
        Position of the first sensor.
    pixel_sigma : (float, float), optional
        Pixel resolution in :math:`x` and :math:`y` (meters).
    strip_sigma : float, optional
        Strip resolution across the strips (meters).
    strip_planes : sequence of int, optional
        Indices of 1D strip planes; all others are pixel planes.
    strip_angle_deg : float, optional
        Stereo angle magnitude; its sign alternates between strip planes.
    thickness_x0 : float, optional
        Material of each sensor in radiation lengths.
    ape : float, optional
        Isotropic alignment position error (meters); ``0`` declares none.

    Returns
    -------
    Telescope

    Raises
    ------
    ValueError
        For fewer than two planes or out-of-range strip plane indices.
    """
    n_planes = int(n_planes)
    if n_planes < 2:
        raise ValueError("a telescope needs at least two planes")
    strips = sorted(int(i) for i in strip_planes)
    if any(i < 0 or i >= n_planes for i in strips):
        raise ValueError(f"strip plane indices {strips} outside 0..{n_planes - 1}")

    ape_matrix = (ape * ape) * np.eye(3) if ape > 0.0 else None
    detectors, projections, resolutions = [], [], []
    for i in range(n_planes):
        if i in strips:
            sign = 1.0 if strips.index(i) % 2 == 0 else -1.0
            alpha = np.deg2rad(sign * strip_angle_deg)
            subdet = STRIP_SUBDET
            projection = np.array([[0.0, 0.0, 0.0, np.cos(alpha), np.sin(alpha)]])
            resolution = np.array([[strip_sigma ** 2]])
        else:
            subdet = PIXEL_SUBDET
            projection = np.zeros((2, 5))
            projection[0, 3] = projection[1, 4] = 1.0
            resolution = np.diag([pixel_sigma[0] ** 2, pixel_sigma[1] ** 2])
        detectors.append(DetectorElement(det_id=i, subdet_id=subdet, z=z0 + i * spacing,
                                         alignment_position_error=ape_matrix,
                                         thickness_x0=thickness_x0))
        projections.append(projection)
        resolutions.append(resolution)
    return Telescope(tuple(detectors), tuple(projections), tuple(resolutions))


def random_track_parameters(rng: np.random.Generator,
                            momentum_range: Tuple[float, float] = (2.0, 20.0),
                            slope_sigma: float = 0.01,
                            position_sigma: float = 0.005) -> np.ndarray:
    """Parameters ``(q/p, dx/dz, dy/dz, x, y)`` at the first plane."""
    p = rng.uniform(*momentum_range)
    charge = rng.choice((-1.0, 1.0))
    tx, ty = rng.normal(0.0, slope_sigma, size=2)
    x, y = rng.normal(0.0, position_sigma, size=2)
    return np.array([charge / p, tx, ty, x, y])


def simulate_track(telescope: Telescope,
                   parameters: np.ndarray,
                   field: MagneticField,
                   rng: np.random.Generator,
                   *,
                   mass: float = MUON_MASS,
                   material_effects: MaterialEffects = MaterialEffects.NONE,
                   first_hit_id: int = 0) -> pd.DataFrame:
    r"""
    Propagate a particle through the telescope and smear its crossings.

    Measurement noise is drawn from the hit resolution inflated by the APE,
    scattering kicks (if enabled) from :func:`scattering_covariance`.

    Returns
    -------
    pandas.DataFrame
        One row per plane with columns :data:`HIT_COLUMNS`; ``meas_1`` is NaN
        for 1D strip hits.
    """
    x = np.asarray(parameters, dtype=np.float64).copy()
    b = np.asarray(field.in_tesla((x[3], x[4], telescope.detectors[0].z)))
    scatter = material_effects is MaterialEffects.MULTIPLE_SCATTERING
    rows = []
    prev: Optional[DetectorElement] = None
    for k, (det, H, res) in enumerate(zip(telescope.detectors, telescope.projections,
                                          telescope.resolutions)):
        if prev is not None:
            if scatter:
                kick = rng.multivariate_normal(np.zeros(2), scattering_covariance(x, prev.thickness_x0, mass)[1:3, 1:3])
                x[1:3] += kick
            x = transport_matrix(det.z - prev.z, b) @ x
        blank = Hit(np.zeros(H.shape[0]), res, H, det)
        meas = H @ x + rng.multivariate_normal(np.zeros(H.shape[0]), inflated_hit_error(blank))
        rows.append((first_hit_id + k, det.det_id, det.subdet_id, det.z, H.shape[0],
                     x[3], x[4], meas[0], meas[1] if meas.size > 1 else np.nan))
        prev = det
    return pd.DataFrame.from_records(rows, columns=HIT_COLUMNS)


def hits_from_frame(frame: pd.DataFrame, telescope: Telescope) -> List[Hit]:
    """Convert simulated rows (ordered as in ``frame``) into :class:`Hit` objects."""
    by_id = {det.det_id: k for k, det in enumerate(telescope.detectors)}
    hits = []
    for row in frame.itertuples(index=False):
        k = by_id[int(row.det_id)]
        dim = int(row.dimension)
        position = np.array([row.meas_0, row.meas_1][:dim], dtype=np.float64)
        hits.append(Hit(position, telescope.resolutions[k], telescope.projections[k],
                        telescope.detectors[k], hit_id=int(row.hit_id)))
    return hits


def seed_state(telescope: Telescope, qop_guess: float,
               slope_sigma: float = 0.1, position_sigma: float = 0.1,
               qop_rel_sigma: float = 0.5) -> TrajectoryState:
    """Loose seed on the first plane: parameters ``(q/p, 0, 0, 0, 0)``."""
    cov = np.diag([(qop_rel_sigma * qop_guess) ** 2 + 1e-12,
                   slope_sigma ** 2, slope_sigma ** 2,
                   position_sigma ** 2, position_sigma ** 2])
    return TrajectoryState(np.array([qop_guess, 0.0, 0.0, 0.0, 0.0]), cov, telescope.detectors[0])
