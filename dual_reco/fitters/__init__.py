from .fitter import TrajectoryFitter
from .planar import PlanarReferenceFitter, transport_matrix, scattering_covariance

__all__ = ["TrajectoryFitter", "PlanarReferenceFitter", "transport_matrix", "scattering_covariance"]
