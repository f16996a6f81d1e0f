"""
Paper Engine – Error Taxonomy

Exceptions raised inside a tick never cross the tick boundary; the engine
converts them into a failed TickOutcome. Pure modules raise ValueError for
invalid arguments.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine failures."""


class StoreError(EngineError):
    """A persistence read or write failed."""


class ExecutionError(EngineError):
    """The execution guard could not produce a fill."""


class OrderRejected(EngineError):
    """Order failed pre-execution validation and must not be persisted."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or code)


class SessionTransitionError(ValueError):
    """Requested session action is not valid from the current state."""
