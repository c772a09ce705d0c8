"""
Keyline Faults - Reporting.

Maps fault severity to log levels so every component reports failures the
same way.
"""

from __future__ import annotations

import logging
from typing import Optional

from .core import Fault, Severity


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARN: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.FATAL: logging.CRITICAL,
}


class FaultReporter:
    """
    Log faults with structured metadata.

    Never resolves or swallows a fault; callers re-raise after reporting.

    Usage:
        ```python
        reporter = FaultReporter()
        try:
            ...
        except Fault as fault:
            reporter.report(fault)
            raise
        ```
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("keyline.faults")

    def level_for(self, fault: Fault) -> int:
        return _LEVELS.get(fault.severity, logging.ERROR)

    def report(self, fault: Fault, **extra) -> None:
        """Log fault at the level implied by its severity."""
        self.logger.log(
            self.level_for(fault),
            f"[{fault.domain.value}] {fault.code}: {fault.message}",
            extra={"fault": fault.to_dict(), **extra},
        )
