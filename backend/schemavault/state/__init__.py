"""
State module for schemavault.

One current-snapshot pointer per named environment.
"""

from .environments import (
    EnvironmentState,
    EnvironmentStateTracker,
    InvalidEnvironmentError,
    validate_environment,
)

__all__ = [
    "EnvironmentState",
    "EnvironmentStateTracker",
    "InvalidEnvironmentError",
    "validate_environment",
]
