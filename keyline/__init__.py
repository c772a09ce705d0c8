"""
Keyline - hierarchical-key authorization engine.
"""

__version__ = "0.1.0"

from .config import ConfigError, ConfigLoader, KeylineConfig
from .faults import Fault, FaultDomain, Severity

__all__ = [
    "__version__",
    "ConfigError",
    "ConfigLoader",
    "KeylineConfig",
    "Fault",
    "FaultDomain",
    "Severity",
]
