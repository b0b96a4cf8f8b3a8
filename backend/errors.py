"""Error taxonomy for the orchestration engine.

Every failure the engine raises on purpose derives from ``ConductorError`` so
the API layer can map it to a response without catching arbitrary exceptions.

- ``SpawnError``: the native transport failed to start (or is not installed).
- ``NetworkError``: the remote transport call failed.
- ``ParseError``: planner output is not a valid Plan shape.
- ``ValidationError``: a task references an unknown or non-executing agent.
- ``AlreadyRunningError`` / ``InvalidTransitionError``: state-machine guards.
- ``SessionCancelledError``: user-initiated termination.
"""

from typing import Any


class ConductorError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.details}


class TransportError(ConductorError):
    """A TransportBridge could not carry out a turn."""


class SpawnError(TransportError):
    """The native agent process could not be started."""


class NetworkError(TransportError):
    """The remote provider call could not be opened or failed mid-stream."""


class ParseError(ConductorError):
    """Planner output could not be parsed into a Plan."""


class ValidationError(ConductorError):
    """A task assignment does not resolve to an executable agent."""


class AlreadyRunningError(ConductorError):
    """A session or turn is already in flight."""


class InvalidTransitionError(ConductorError):
    """The requested state transition is not allowed from the current state."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot {requested} a session in state '{current}'",
            current=current,
            requested=requested,
        )


class SessionCancelledError(ConductorError):
    """The session or run was cancelled by the user."""
