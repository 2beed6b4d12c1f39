"""
Exception hierarchy for scenario runs.
"""
from typing import Optional


class ScenarioRunnerError(Exception):
    """Base exception for scenario runner errors"""
    pass


class ProvisioningFailed(ScenarioRunnerError):
    """Browser engine could not be made available; the scenario must not proceed"""
    def __init__(self, engine: str, reason: str):
        self.engine = engine
        self.reason = reason
        super().__init__(f"Failed to provision {engine}: {reason}")


class SessionStateError(ScenarioRunnerError):
    """Operation attempted on a session in the wrong state"""
    def __init__(self, scenario_id: str, state: str, operation: str):
        self.scenario_id = scenario_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} session for scenario '{scenario_id}' in state '{state}'"
        )


class ProcessSpawnError(ScenarioRunnerError):
    """Executable missing or not runnable"""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class ProcessTimeout(ScenarioRunnerError):
    """Process exceeded its time bound and was killed"""
    def __init__(self, command: str, timeout: float, idle: bool = False):
        self.command = command
        self.timeout = timeout
        self.idle = idle
        if idle:
            message = f"'{command}' produced no output for {timeout:g}s"
        else:
            message = f"'{command}' timed out after {timeout:g}s"
        super().__init__(message)


class EvidenceCaptureError(ScenarioRunnerError):
    """Screenshot or other failure evidence could not be captured"""
    def __init__(self, scenario_id: str, reason: str, label: Optional[str] = None):
        self.scenario_id = scenario_id
        self.label = label
        super().__init__(f"Evidence capture failed for '{scenario_id}': {reason}")
