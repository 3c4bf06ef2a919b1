__all__ = [
    "ConfigurationError",
    "ResidualMethod", "PropagationDirection", "MaterialEffects", "FailureReason",
    "DetectorElement", "Hit", "TrajectoryState", "TrajectoryMeasurement",
    "SubTrajectoryResult", "CombinedTrajectory",
    "MagneticField", "UniformField",
    "TrajectoryFitter", "PlanarReferenceFitter",
    "combine_states", "local_ape", "inflated_hit_error",
    "SubTrajectoryBuilder", "BlockAssembler", "ResidualFiller",
    "DualTrajectoryCoordinator", "DualTrajectoryConfig", "load_config",
    "PlanarKalmanSmoother",
    "Telescope", "build_telescope", "simulate_track", "hits_from_frame",
    "residual_frame", "summarize_pulls", "validity_summary",
]

# Core types
from .errors import ConfigurationError
from .types import (
    ResidualMethod,
    PropagationDirection,
    MaterialEffects,
    FailureReason,
    DetectorElement,
    Hit,
    TrajectoryState,
    TrajectoryMeasurement,
    SubTrajectoryResult,
    CombinedTrajectory,
)
from .field import MagneticField, UniformField

# Fitters
from .fitters.fitter import TrajectoryFitter
from .fitters.planar import PlanarReferenceFitter

# Dual trajectory construction
from .combiner import combine_states
from .ape import local_ape, inflated_hit_error
from .sub_trajectory import SubTrajectoryBuilder
from .assembler import BlockAssembler
from .residuals import ResidualFiller
from .coordinator import DualTrajectoryCoordinator
from .config import DualTrajectoryConfig, load_config

# Kalman fit & simulation
from .kalman import PlanarKalmanSmoother
from .simulation import Telescope, build_telescope, simulate_track, hits_from_frame

# Metrics
from .metrics import residual_frame, summarize_pulls, validity_summary
