from typing import Any, Optional


class RemoteError(Exception):
    """Base for failures that reach the agent as an error result, never as a protocol fault."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransportError(RemoteError):
    pass


class RemoteTimeout(RemoteError):
    pass


class RemoteCommandError(RemoteError):
    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result


class NotFound(RemoteError):
    pass


class AmbiguousMatch(RemoteError):
    pass


class UnsupportedEnvironment(RemoteError):
    pass


class MalformedRequest(RemoteError):
    pass


class LocalClientError(Exception):
    """No local shell client could be spawned. Fatal for the server process."""
