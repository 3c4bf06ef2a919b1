class ConfigurationError(ValueError):
    """Raised for an unusable configuration value (e.g. an unknown residual method)."""
