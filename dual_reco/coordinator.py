from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from dual_reco.assembler import AssembledBlocks, BlockAssembler
from dual_reco.config import MUON_MASS, DualTrajectoryConfig
from dual_reco.field import MagneticField
from dual_reco.fitters.fitter import TrajectoryFitter
from dual_reco.fitters.planar import PlanarReferenceFitter
from dual_reco.residuals import ResidualBlock, ResidualFiller
from dual_reco.sub_trajectory import SubTrajectoryBuilder
from dual_reco.types import (
    CombinedTrajectory,
    FailureReason,
    Hit,
    MaterialEffects,
    PropagationDirection,
    ResidualMethod,
    TrajectoryMeasurement,
    TrajectoryState,
)

logger = logging.getLogger(__name__)


class _TrajectoryLayout:
    r"""
    Storage for one construction, sized once from the combined hit list.

    Hit :math:`i` owns rows ``offsets[i]:offsets[i+1]`` of the measurement
    vector, the matching diagonal block of the covariance and the same rows of
    the trajectory position vector.
    """

    __slots__ = ("hits", "offsets", "measurements", "measurement_cov", "positions", "states")

    def __init__(self, hits: Sequence[Hit]) -> None:
        self.hits = tuple(hits)
        dims = np.fromiter((h.dimension for h in self.hits), dtype=np.int64, count=len(self.hits))
        self.offsets = np.concatenate(([0], np.cumsum(dims)))
        n_meas = int(self.offsets[-1])
        self.measurements = np.zeros(n_meas)
        self.measurement_cov = np.zeros((n_meas, n_meas))
        self.positions = np.zeros(n_meas)
        self.states: List[Optional[TrajectoryState]] = [None] * len(self.hits)

    def place(self, i_hit: int, block: ResidualBlock) -> None:
        lo, hi = int(self.offsets[i_hit]), int(self.offsets[i_hit + 1])
        if block.measurement.shape != (hi - lo,):
            raise ValueError(
                f"hit {i_hit}: block of dimension {block.measurement.shape[0]} "
                f"does not fit {hi - lo} rows"
            )
        self.measurements[lo:hi] = block.measurement
        self.measurement_cov[lo:hi, lo:hi] = block.covariance
        self.positions[lo:hi] = block.position
        self.states[i_hit] = block.state

    def freeze(self, parameters: np.ndarray, blocks: AssembledBlocks,
               method: ResidualMethod) -> CombinedTrajectory:
        missing = [i for i, s in enumerate(self.states) if s is None]
        if missing:
            raise RuntimeError(f"hits {missing} were never filled")
        return CombinedTrajectory(
            hits=self.hits,
            parameters=parameters,
            derivatives=blocks.derivatives,
            measurements=self.measurements,
            measurement_cov=self.measurement_cov,
            trajectory_positions=self.positions,
            trajectory_position_cov=blocks.position_cov,
            states=tuple(self.states),
            residual_method=method,
            position_cov_is_sentinel=blocks.position_cov_is_sentinel,
        )


class DualTrajectoryCoordinator:
    r"""
    Build a dual (forward + backward) reference trajectory for one track.

    Pipeline
    --------
    1. **Build legs**: fit the forward index list in ``propagation_direction``
       and the backward list in the opposite direction, both from the same
       reference state (:class:`SubTrajectoryBuilder`).
    2. **Validate**: an invalid leg ends the construction
       (``FailureReason.SUB_FIT_INVALID``).
    3. **Assemble** hits, derivatives and position covariance
       (:class:`BlockAssembler`).
    4. **Fill forward range** from hit 0, anchor included.
    5. **Fill backward range** skipping its anchor, continuing right after the
       last forward hit (:class:`ResidualFiller`).
    6. Any failed fill ends the construction; otherwise the result is valid.

    Invalid results never carry measurement data.

    Parameters
    ----------
    fitter : TrajectoryFitter
        Single-direction reference fitter.
    residual_method : ResidualMethod or int, optional
        ``1`` unbiased (default) or ``2`` pull based.
    mass : float, optional
        Particle mass hypothesis (GeV).
    material_effects : MaterialEffects, optional
    propagation_direction : PropagationDirection, optional
        Direction of the forward leg.

    Raises
    ------
    ConfigurationError
        If ``residual_method`` is not a recognized selector. Nothing is fitted.
    """

    __slots__ = ("residual_method", "mass", "material_effects", "propagation_direction",
                 "_legs", "_assembler", "_filler")

    def __init__(self,
                 fitter: TrajectoryFitter,
                 residual_method: Union[ResidualMethod, int] = ResidualMethod.UNBIASED,
                 *,
                 mass: float = MUON_MASS,
                 material_effects: MaterialEffects = MaterialEffects.NONE,
                 propagation_direction: PropagationDirection = PropagationDirection.ALONG_MOMENTUM):
        self.residual_method = ResidualMethod.from_selector(residual_method)
        self.mass = float(mass)
        self.material_effects = material_effects
        self.propagation_direction = propagation_direction
        self._legs = SubTrajectoryBuilder(fitter)
        self._assembler = BlockAssembler()
        self._filler = ResidualFiller(self.residual_method)

    @classmethod
    def from_config(cls, config: DualTrajectoryConfig,
                    fitter: Optional[TrajectoryFitter] = None) -> "DualTrajectoryCoordinator":
        """Coordinator from a validated config; defaults to :class:`PlanarReferenceFitter`."""
        return cls(fitter if fitter is not None else PlanarReferenceFitter(),
                   config.residual_method,
                   mass=config.mass,
                   material_effects=config.material_effects,
                   propagation_direction=config.propagation_direction)

    def construct(self,
                  measurements: Sequence[TrajectoryMeasurement],
                  reference_state: TrajectoryState,
                  forward_indices: Sequence[int],
                  backward_indices: Sequence[int],
                  field: MagneticField) -> CombinedTrajectory:
        r"""
        Run the full construction for one track.

        Parameters
        ----------
        measurements : sequence of TrajectoryMeasurement
            Smoothed Kalman fit output, indexed by ``forward_indices`` and
            ``backward_indices``.
        reference_state : TrajectoryState
            State on the anchor hit's surface; its parameters become the
            combined parameter vector.
        forward_indices, backward_indices : sequence of int
            Index lists starting with the same anchor and sharing nothing else,
            each ordered along its propagation direction.
        field : MagneticField

        Returns
        -------
        CombinedTrajectory
            Check :attr:`CombinedTrajectory.is_valid`.

        Raises
        ------
        ValueError
            If the index lists are empty or do not share exactly the anchor.
        """
        fwd_idx, bwd_idx = self._check_indices(forward_indices, backward_indices)
        parameters = np.array(reference_state.parameters, dtype=np.float64)

        fwd = self._legs.build(measurements, fwd_idx, reference_state, self.mass,
                               self.material_effects, self.propagation_direction, field)
        bwd = self._legs.build(measurements, bwd_idx, reference_state, self.mass,
                               self.material_effects, self.propagation_direction.opposite(), field)
        if not fwd.valid or not bwd.valid:
            logger.debug("sub-trajectory invalid: forward=%s backward=%s", fwd.valid, bwd.valid)
            return CombinedTrajectory.invalid(parameters, self.residual_method,
                                              FailureReason.SUB_FIT_INVALID)

        blocks = self._assembler.assemble(fwd, bwd, reference_state)
        if len(blocks.hits) != len(fwd_idx) + len(bwd_idx) - 1:
            raise ValueError(
                f"fitter returned {len(blocks.hits)} combined hits for "
                f"{len(fwd_idx)} forward and {len(bwd_idx)} backward indices"
            )

        layout = _TrajectoryLayout(blocks.hits)
        failure = self._fill_range(layout, measurements, fwd_idx, start_first=True, i_next_hit=0)
        if failure is None:
            failure = self._fill_range(layout, measurements, bwd_idx, start_first=False,
                                       i_next_hit=len(fwd_idx))
        if failure is not None:
            logger.debug("residual fill failed: %s", failure.value)
            return CombinedTrajectory.invalid(parameters, self.residual_method, failure)

        return layout.freeze(parameters, blocks, self.residual_method)

    def _fill_range(self,
                    layout: _TrajectoryLayout,
                    measurements: Sequence[TrajectoryMeasurement],
                    indices: Sequence[int],
                    start_first: bool,
                    i_next_hit: int) -> Optional[FailureReason]:
        # start_first=False skips the shared anchor, already filled by the forward range
        for i_meas in range(0 if start_first else 1, len(indices)):
            result = self._filler.fill(measurements[indices[i_meas]])
            if isinstance(result, FailureReason):
                return result
            layout.place(i_next_hit, result)
            i_next_hit += 1
        return None

    @staticmethod
    def _check_indices(forward_indices: Sequence[int],
                       backward_indices: Sequence[int]) -> Tuple[List[int], List[int]]:
        fwd = [int(i) for i in forward_indices]
        bwd = [int(i) for i in backward_indices]
        if not fwd or not bwd:
            raise ValueError("forward and backward index lists must not be empty")
        if fwd[0] != bwd[0]:
            raise ValueError(f"index lists must start with the same anchor, got {fwd[0]} and {bwd[0]}")
        shared = set(fwd) & set(bwd)
        if shared != {fwd[0]}:
            raise ValueError(f"index lists may share only their anchor, also share {sorted(shared - {fwd[0]})}")
        return fwd, bwd
