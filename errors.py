"""Error taxonomy shared by the simulation components.

Leaf components raise these; the engine turns them into ERROR events.
"""
from typing import Any, Dict, Optional

WARNING = "warning"
ERROR = "error"
CRITICAL = "critical"


class SimulationError(Exception):
    """Base class for every failure the engine reports to its host"""
    code = "SIM_001"
    severity = ERROR
    recoverable = True

    def __init__(self, message: str, code: Optional[str] = None,
                 severity: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if severity is not None:
            self.severity = severity
        self.details = details or {}
        if self.severity == CRITICAL:
            self.recoverable = False


class ValidationError(SimulationError):
    code = "CFG_001"


class InvalidParameters(ValidationError):
    pass


class InvalidInput(ValidationError):
    code = "SIM_001"


class NumericalInstability(SimulationError):
    code = "SIM_003"
    severity = CRITICAL
    recoverable = False


class ProtocolError(SimulationError):
    code = "COM_001"


class PerformanceWarning:
    """Cycle overrun record; informational only, never raised"""
    code = "PERF_001"
    severity = WARNING

    def __init__(self, cycle_time: float, target_time: float):
        self.cycle_time = cycle_time    # ms
        self.target_time = target_time  # ms
        self.message = (f"Slow simulation cycle: {cycle_time:.2f}ms "
                        f"({target_time:.0f}ms target)")

    @property
    def details(self) -> Dict[str, Any]:
        return {"cycleTime": self.cycle_time, "targetTime": self.target_time}
