"""Configuration management."""
from sharesync.config.desired_state import DeclaredState
from sharesync.config.loader import ConfigLoader
from sharesync.models.config import ConfigValidationError

__all__ = ['ConfigLoader', 'ConfigValidationError', 'DeclaredState']
