"""Typed errors raised inside the execution package.

The public ``execute()`` / ``install()`` entry points convert these into
failed results; only registration calls let them reach the caller.
"""

from __future__ import annotations


class CellRunError(Exception):
    """Base class for engine errors."""


class EnvironmentNotReadyError(CellRunError):
    """Raised when no usable Python interpreter has been detected."""

    def __init__(self, status: str = ""):
        self.status = status
        message = "Python not ready"
        if status:
            message = f"{message}: {status}"
        super().__init__(message)


class UnsupportedDialectError(CellRunError, ValueError):
    """Raised for a SQL dialect tag outside the supported set."""

    def __init__(self, dialect: str):
        self.dialect = dialect
        super().__init__(f"Unsupported database type: {dialect}")


class ConnectionNotFoundError(CellRunError, LookupError):
    """Raised when a named connection is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No database connection named {name!r}")


class DuplicateConnectionError(CellRunError):
    """Raised when registering a connection name that already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Connection {name!r} is already registered; pass replace=True to overwrite it"
        )
