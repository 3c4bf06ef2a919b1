from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, MutableMapping, Tuple, Type, TypeVar

import orjson

from dual_reco.errors import ConfigurationError
from dual_reco.field import UniformField
from dual_reco.types import MaterialEffects, PropagationDirection, ResidualMethod

# GeV
MUON_MASS = 0.1056583755

_E = TypeVar("_E", MaterialEffects, PropagationDirection)


def load_config(config_path: Path) -> MutableMapping[str, dict]:
    r"""
    Load a JSON configuration with :mod:`orjson`.

    Parameters
    ----------
    config_path : pathlib.Path
        Path to the JSON file.

    Returns
    -------
    dict
        Parsed configuration (blocks such as ``"dual_config"`` and
        ``"telescope_config"``).

    Raises
    ------
    ValueError
        If the file cannot be read or parsed.
    """
    try:
        return orjson.loads(Path(config_path).read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e


def _enum_value(enum_cls: Type[_E], value: Any, key: str) -> _E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"{key} must be one of {allowed}, not {value!r}") from None


@dataclass(slots=True)
class DualTrajectoryConfig:
    r"""
    Settings of a dual trajectory construction.

    Attributes
    ----------
    residual_method : ResidualMethod
        ``1`` (unbiased) or ``2`` (pull based).
    mass : float
        Particle mass hypothesis in GeV (default: muon).
    material_effects : MaterialEffects
        Material model forwarded to the fitter.
    propagation_direction : PropagationDirection
        Direction of the forward leg; the backward leg uses the opposite.
    field_tesla : tuple of float
        Uniform field vector used by the CLI.
    """
    residual_method: ResidualMethod = ResidualMethod.UNBIASED
    mass: float = MUON_MASS
    material_effects: MaterialEffects = MaterialEffects.NONE
    propagation_direction: PropagationDirection = PropagationDirection.ALONG_MOMENTUM
    field_tesla: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @classmethod
    def from_mapping(cls, block: Mapping[str, Any]) -> "DualTrajectoryConfig":
        r"""
        Validate and convert a ``"dual_config"`` block.

        Raises
        ------
        ConfigurationError
            On unknown keys, an unrecognized residual method, a non-positive
            mass, unknown enum names or a malformed field vector.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(block) - known
        if unknown:
            raise ConfigurationError(f"unknown dual_config keys: {', '.join(sorted(unknown))}")

        method = ResidualMethod.from_selector(block.get("residual_method", ResidualMethod.UNBIASED))
        mass = float(block.get("mass", MUON_MASS))
        if not mass > 0.0:
            raise ConfigurationError(f"mass must be positive, not {mass!r}")
        field = tuple(float(v) for v in block.get("field_tesla", (0.0, 0.0, 0.0)))
        if len(field) != 3:
            raise ConfigurationError(f"field_tesla needs 3 components, got {len(field)}")

        return cls(
            residual_method=method,
            mass=mass,
            material_effects=_enum_value(MaterialEffects,
                                         block.get("material_effects", "none"),
                                         "material_effects"),
            propagation_direction=_enum_value(PropagationDirection,
                                              block.get("propagation_direction", "along_momentum"),
                                              "propagation_direction"),
            field_tesla=field,
        )

    def make_field(self) -> UniformField:
        return UniformField(*self.field_tesla)
