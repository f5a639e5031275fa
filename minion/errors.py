"""Exception hierarchy shared by the workspace and orchestration layers."""


class MinionError(Exception):
    """Base class for all orchestrator errors."""
    pass


class ValidationError(MinionError):
    """Raised when a request is malformed (missing name, description, ...)."""
    pass


class NotFoundError(MinionError):
    """Raised when an agent, task or workspace id is unknown."""
    pass


class ConflictError(MinionError):
    """Raised when a request collides with the current state."""
    pass
