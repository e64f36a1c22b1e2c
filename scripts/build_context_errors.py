"""Error types raised by the build context archive assembler.

Missing input paths and interrupted reads are reported with the built-in
``FileNotFoundError`` and ``OSError`` so callers can handle them the same way
they would any other filesystem failure. The types below cover the conditions
that only exist because of the context and session lifecycle.
"""

from __future__ import annotations

__all__ = [
    "BuildContextError",
    "ContextDisposedError",
    "OperationCancelledError",
    "SessionDisposedError",
]


class BuildContextError(RuntimeError):
    """Base class for lifecycle failures of build contexts and sessions."""


class ContextDisposedError(BuildContextError):
    """Raised when a closed :class:`~build_context.BuildContext` is used."""

    def __init__(self) -> None:
        super().__init__("build context has been closed")


class SessionDisposedError(BuildContextError):
    """Raised when an archive session is used after teardown."""

    def __init__(self) -> None:
        super().__init__("archive session has been closed")


class OperationCancelledError(BuildContextError):
    """Raised when an asynchronous operation observes its cancel event."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} was cancelled")
        self.operation = operation
