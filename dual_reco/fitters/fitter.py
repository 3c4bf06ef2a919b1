import abc
import logging
from typing import Sequence

from dual_reco.field import MagneticField
from dual_reco.types import (
    Hit,
    MaterialEffects,
    PropagationDirection,
    SubTrajectoryResult,
    TrajectoryState,
)


class TrajectoryFitter(abc.ABC):
    r"""
    Abstract single-direction reference trajectory fitter.

    A fitter propagates a reference state through an already ordered list of
    hits and returns, per hit, the propagated state and the derivatives of the
    predicted measurement with respect to the reference parameters.

    Contract
    --------
    * Hits are used in the order given; no reordering.
    * The returned :class:`SubTrajectoryResult` carries ``hit.dimension`` rows
      of derivatives per hit and one column per reference parameter.
    * A fit that cannot reach a hit, or produces an invalid state, returns
      ``SubTrajectoryResult.invalid(...)`` rather than raising.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    @abc.abstractmethod
    def fit(self,
            hits: Sequence[Hit],
            reference_state: TrajectoryState,
            *,
            mass: float,
            material_effects: MaterialEffects,
            direction: PropagationDirection,
            field: MagneticField) -> SubTrajectoryResult:
        r"""
        Build a reference trajectory through ``hits`` starting at ``reference_state``.

        Parameters
        ----------
        hits : sequence of Hit
            Ordered consistently with ``direction``.
        reference_state : TrajectoryState
            Starting state (on the first hit's surface for dual trajectories).
        mass : float
            Particle mass hypothesis (GeV).
        material_effects : MaterialEffects
            Material model selector.
        direction : PropagationDirection
            Propagation direction from the reference state.
        field : MagneticField
            Field lookup.

        Returns
        -------
        SubTrajectoryResult
        """
