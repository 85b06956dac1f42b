"""Configuration error types."""


class ConfigValidationError(Exception):
    """Raised when the declared share configuration is invalid."""
    pass
