import abc
from typing import Sequence

import numpy as np


class MagneticField(abc.ABC):
    """Field lookup used by the reference fitters."""

    @abc.abstractmethod
    def in_tesla(self, position: Sequence[float]) -> np.ndarray:
        """Field vector (Tesla) at a global position (meters)."""


class UniformField(MagneticField):
    """Constant field, e.g. a dipole magnet or a solenoid bore far from its ends."""

    __slots__ = ("_b",)

    def __init__(self, bx: float = 0.0, by: float = 0.0, bz: float = 0.0) -> None:
        self._b = np.array([bx, by, bz], dtype=np.float64)
        self._b.setflags(write=False)

    def in_tesla(self, position: Sequence[float]) -> np.ndarray:
        return self._b

    def __repr__(self) -> str:
        return f"UniformField(bx={self._b[0]}, by={self._b[1]}, bz={self._b[2]})"
