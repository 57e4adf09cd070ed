"""FairVRF configuration module."""

from .base import OracleSettings, RotationPolicy
from .logging import configure_logging, log_error

__all__ = ["OracleSettings", "RotationPolicy", "configure_logging", "log_error"]
