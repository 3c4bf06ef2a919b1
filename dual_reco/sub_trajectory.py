from __future__ import annotations

import logging
from typing import Sequence

from dual_reco.field import MagneticField
from dual_reco.fitters.fitter import TrajectoryFitter
from dual_reco.types import (
    MaterialEffects,
    PropagationDirection,
    SubTrajectoryResult,
    TrajectoryMeasurement,
    TrajectoryState,
)

logger = logging.getLogger(__name__)


class SubTrajectoryBuilder:
    r"""
    Build one leg (forward or backward) of a dual trajectory.

    The same operation serves both legs; only ``direction`` and the index list
    differ. Hits are taken from ``measurements`` in the order of ``indices``
    (already consistent with ``direction``) and handed to the fitter.
    """

    __slots__ = ("fitter",)

    def __init__(self, fitter: TrajectoryFitter) -> None:
        self.fitter = fitter

    def build(self,
              measurements: Sequence[TrajectoryMeasurement],
              indices: Sequence[int],
              reference_state: TrajectoryState,
              mass: float,
              material_effects: MaterialEffects,
              direction: PropagationDirection,
              field: MagneticField) -> SubTrajectoryResult:
        r"""
        Fit the reference trajectory through ``measurements[indices]``.

        Returns
        -------
        SubTrajectoryResult
            Invalid if the fitter reports failure or any per-hit state is
            invalid. Check :attr:`SubTrajectoryResult.valid` before use.
        """
        hits = [measurements[i].hit for i in indices]
        result = self.fitter.fit(hits, reference_state,
                                 mass=mass,
                                 material_effects=material_effects,
                                 direction=direction,
                                 field=field)
        if result.valid and not all(s.valid for s in result.states):
            logger.debug("%s leg has an invalid state", direction.value)
            return SubTrajectoryResult.invalid(result.hits)
        return result
