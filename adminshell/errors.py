class AdminShellError(Exception):
    """Base class for errors raised by adminshell."""


class SessionConnectError(AdminShellError, ConnectionError):
    """Transport or authentication failure while opening a session."""


class NotConnectedError(AdminShellError):
    """A command was submitted while no session is connected."""

    def __init__(self, message: str = "Not connected to any server"):
        super().__init__(message)


class MalformedRequestError(AdminShellError, ValueError):
    """The planner produced a request of unknown shape or with invalid fields."""


class CompactionWriteError(AdminShellError, OSError):
    """The dialogue or command log could not be written to disk."""
