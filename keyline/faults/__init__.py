"""
Keyline Faults - Typed failure signals.

Failures raised by the auth engine are structured fault objects carrying a
stable code, a public message, a domain and severity, and the metadata the
caller layer may surface. Transport mapping (HTTP status, JSON body) happens
outside this package using ``Fault.status`` and ``Fault.to_public_dict()``.

Core exports:
- Fault: Base fault class
- FaultDomain: Domain taxonomy
- Severity: Severity levels
- FaultReporter: Severity-aware logging of faults
"""

from .core import (
    DOMAIN_DEFAULTS,
    Fault,
    FaultDomain,
    Severity,
)
from .handlers import FaultReporter

__all__ = [
    "DOMAIN_DEFAULTS",
    "Fault",
    "FaultDomain",
    "Severity",
    "FaultReporter",
]
