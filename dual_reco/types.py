from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from dual_reco.errors import ConfigurationError

# mixed-format local parameters: (q/p, dx/dz, dy/dz, x, y)
N_PARAMETERS = 5
LOCAL_POSITION = slice(3, 5)


class ResidualMethod(IntEnum):
    r"""
    How the per-hit residual and its covariance are formed.

    ``UNBIASED`` (selector ``1``)
        Prediction from the statistical combination of the forward and backward
        *predicted* states; :math:`V = V_\text{hit} + V_\text{state}`.
    ``PULL_BASED`` (selector ``2``)
        Prediction from the *updated* state;
        :math:`V = V_\text{hit} - V_\text{state}` (Blobel/Lohrmann, p. 236).
    """
    UNBIASED = 1
    PULL_BASED = 2

    @classmethod
    def from_selector(cls, value) -> "ResidualMethod":
        r"""
        Resolve a configured selector to a :class:`ResidualMethod`.

        Parameters
        ----------
        value : ResidualMethod or int
            Enum member or integer ``1``/``2``.

        Raises
        ------
        ConfigurationError
            For any other value (including booleans).
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
            try:
                return cls(int(value))
            except ValueError:
                pass
        raise ConfigurationError(
            f"expect residual_method == 1 or 2, not {value!r}."
        )


class PropagationDirection(Enum):
    """Direction in which a sub-trajectory is propagated from its reference state."""
    ALONG_MOMENTUM = "along_momentum"
    OPPOSITE_TO_MOMENTUM = "opposite_to_momentum"
    ANY_DIRECTION = "any_direction"

    def opposite(self) -> "PropagationDirection":
        if self is PropagationDirection.ALONG_MOMENTUM:
            return PropagationDirection.OPPOSITE_TO_MOMENTUM
        if self is PropagationDirection.OPPOSITE_TO_MOMENTUM:
            return PropagationDirection.ALONG_MOMENTUM
        return self


class MaterialEffects(Enum):
    """Material model selector forwarded to the fitter."""
    NONE = "none"
    MULTIPLE_SCATTERING = "multiple_scattering"


class FailureReason(Enum):
    """Why a dual trajectory construction ended invalid."""
    SUB_FIT_INVALID = "sub_fit_invalid"
    STATE_COMBINATION_INVALID = "state_combination_invalid"
    INVALID_STATE = "invalid_state"
    INCONSISTENT_COVARIANCE = "inconsistent_covariance"


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a, dtype=np.float64)
    a.setflags(write=False)
    return a


@dataclass(frozen=True, slots=True, eq=False)
class DetectorElement:
    r"""
    Geometry of one planar sensor.

    Attributes
    ----------
    det_id : int
        Unique sensor id.
    subdet_id : int
        Subsystem id (reported in diagnostics).
    z : float
        Plane position along the beam axis (meters).
    rotation : ndarray, shape (3, 3)
        Rows are the local :math:`u, v, w` axes expressed in global coordinates.
    alignment_position_error : ndarray, shape (3, 3), optional
        Global APE covariance; ``None`` when the sensor declares none.
    thickness_x0 : float
        Material thickness in radiation lengths.
    """
    det_id: int
    subdet_id: int
    z: float
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    alignment_position_error: Optional[np.ndarray] = None
    thickness_x0: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "rotation", _readonly(self.rotation))
        if self.alignment_position_error is not None:
            object.__setattr__(self, "alignment_position_error",
                               _readonly(self.alignment_position_error))

    @property
    def has_ape(self) -> bool:
        return self.alignment_position_error is not None


@dataclass(frozen=True, slots=True, eq=False)
class Hit:
    r"""
    Immutable measurement on a detector surface.

    ``projection`` (shape ``(dim, 5)``) maps the local track parameters onto the
    measured coordinates; a 2D pixel hit uses rows picking :math:`x, y`, a 1D
    strip hit a single row along the strip's measuring direction.
    """
    local_position: np.ndarray
    local_error: np.ndarray
    projection: np.ndarray
    det: Optional[DetectorElement] = None
    hit_id: int = -1

    def __post_init__(self) -> None:
        pos = _readonly(np.atleast_1d(self.local_position))
        err = _readonly(np.atleast_2d(self.local_error))
        proj = _readonly(np.atleast_2d(self.projection))
        dim = proj.shape[0]
        if proj.shape[1] != N_PARAMETERS or pos.shape != (dim,) or err.shape != (dim, dim):
            raise ValueError(
                f"inconsistent hit shapes: position {pos.shape}, "
                f"error {err.shape}, projection {proj.shape}"
            )
        object.__setattr__(self, "local_position", pos)
        object.__setattr__(self, "local_error", err)
        object.__setattr__(self, "projection", proj)

    @property
    def dimension(self) -> int:
        return int(self.projection.shape[0])

    @property
    def subdet_id(self) -> int:
        return self.det.subdet_id if self.det is not None else 0


@dataclass(frozen=True, slots=True, eq=False)
class TrajectoryState:
    r"""
    A point on the particle path: 5 local parameters, optional covariance and
    the surface it lives on.
    """
    parameters: np.ndarray
    covariance: Optional[np.ndarray] = None
    surface: Optional[DetectorElement] = None
    valid: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", _readonly(self.parameters))
        if self.covariance is not None:
            object.__setattr__(self, "covariance", _readonly(self.covariance))

    @classmethod
    def invalid(cls, surface: Optional[DetectorElement] = None) -> "TrajectoryState":
        return cls(np.zeros(N_PARAMETERS), None, surface, valid=False)

    @property
    def has_error(self) -> bool:
        return self.covariance is not None

    @property
    def local_position(self) -> np.ndarray:
        return self.parameters[LOCAL_POSITION]

    @property
    def local_position_error(self) -> np.ndarray:
        if self.covariance is None:
            raise ValueError("state carries no covariance")
        return self.covariance[LOCAL_POSITION, LOCAL_POSITION]

    def measurement_error(self, projection: np.ndarray) -> np.ndarray:
        r"""State covariance in measurement space, :math:`P\,C\,P^\top`."""
        if self.covariance is None:
            raise ValueError("state carries no covariance")
        return projection @ self.covariance @ projection.T


@dataclass(frozen=True, slots=True, eq=False)
class TrajectoryMeasurement:
    """One hit of a smoothed Kalman fit with its predicted and updated states."""
    hit: Hit
    forward_predicted: TrajectoryState
    backward_predicted: TrajectoryState
    updated: TrajectoryState


@dataclass(slots=True)
class SubTrajectoryResult:
    r"""
    Output of a single-direction reference fit.

    ``derivatives`` has one row per measured coordinate (``hit.dimension`` rows
    per hit, in hit order) and one column per reference parameter. Consistency
    is enforced for valid results only; callers must check :attr:`valid`
    before touching anything else.
    """
    hits: List[Hit]
    states: List[TrajectoryState]
    derivatives: np.ndarray
    valid: bool = True

    def __post_init__(self) -> None:
        if not self.valid:
            return
        n_rows = sum(h.dimension for h in self.hits)
        if len(self.states) != len(self.hits) or self.derivatives.shape[0] != n_rows:
            raise ValueError(
                f"inconsistent sub-trajectory: {len(self.hits)} hits, "
                f"{len(self.states)} states, {self.derivatives.shape[0]} derivative rows "
                f"(expected {n_rows})"
            )

    @classmethod
    def invalid(cls, hits: Sequence[Hit] = ()) -> "SubTrajectoryResult":
        return cls(list(hits), [], np.zeros((0, N_PARAMETERS)), valid=False)

    @property
    def measurement_dimension(self) -> int:
        return int(self.derivatives.shape[0])


@dataclass(frozen=True, slots=True, eq=False)
class CombinedTrajectory:
    r"""
    Dual reference trajectory exposed to alignment code.

    Forward hits come first, then backward hits without the shared anchor.
    ``measurement_cov`` is block diagonal with one ``dim x dim`` block per hit.
    When :attr:`position_cov_is_sentinel` is set, ``trajectory_position_cov``
    is the unit diagonal and carries no uncertainty information.
    """
    hits: Tuple[Hit, ...]
    parameters: np.ndarray
    derivatives: np.ndarray
    measurements: np.ndarray
    measurement_cov: np.ndarray
    trajectory_positions: np.ndarray
    trajectory_position_cov: np.ndarray
    states: Tuple[TrajectoryState, ...]
    residual_method: ResidualMethod
    is_valid: bool = True
    failure: Optional[FailureReason] = None
    position_cov_is_sentinel: bool = False

    def __post_init__(self) -> None:
        for name in ("parameters", "derivatives", "measurements", "measurement_cov",
                     "trajectory_positions", "trajectory_position_cov"):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    @classmethod
    def invalid(cls, parameters: np.ndarray, residual_method: ResidualMethod,
                failure: FailureReason) -> "CombinedTrajectory":
        n_par = np.asarray(parameters).size
        return cls(
            hits=(),
            parameters=parameters,
            derivatives=np.zeros((0, n_par)),
            measurements=np.zeros(0),
            measurement_cov=np.zeros((0, 0)),
            trajectory_positions=np.zeros(0),
            trajectory_position_cov=np.zeros((0, 0)),
            states=(),
            residual_method=residual_method,
            is_valid=False,
            failure=failure,
        )

    @property
    def n_hits(self) -> int:
        return len(self.hits)

    @property
    def n_parameters(self) -> int:
        return int(self.parameters.size)

    @property
    def measurement_dimension(self) -> int:
        return int(self.measurements.size)

    @property
    def hit_offsets(self) -> np.ndarray:
        """Row offset of each hit's block in the measurement vector."""
        dims = np.fromiter((h.dimension for h in self.hits), dtype=np.int64, count=len(self.hits))
        return np.concatenate(([0], np.cumsum(dims)[:-1])) if dims.size else dims

    @property
    def residuals(self) -> np.ndarray:
        return self.measurements - self.trajectory_positions
