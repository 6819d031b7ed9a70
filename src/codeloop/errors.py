# errors.py
# Exception taxonomy for the agent control loop.
#
# Every error the controller raises on purpose derives from AgentError, so the
# orchestrator can turn it into an observation instead of crashing.


class AgentError(Exception):
    """Base class for all controller-raised errors."""


class UnknownTool(AgentError):
    """Raised when an action names a tool absent from the registry."""


class SchemaViolation(AgentError):
    """Raised when tool args or plan JSON fail schema validation."""


class PathNotAllowed(AgentError):
    """Raised when the sandbox policy rejects a path."""


class DiffInvalid(AgentError):
    """Raised for oversized, malformed, path-mismatched or conflicting diffs."""


class DependencyUnmet(AgentError):
    """Raised when a write is not preceded by an fs.read of the same path."""


class CommandNotAllowed(AgentError):
    """Raised when exec.run is denied by the deny patterns or the allowlist."""


class StepFailed(AgentError):
    """Raised when a step exits with a code outside its accepted set."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class PlanRejected(AgentError):
    """Raised by plan validation for rejections without a narrower type."""
