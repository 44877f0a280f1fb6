"""
Error types raised by the relay core.

Connection- and subprocess-local failures are normally caught at their loop
boundary and turned into state + events; these classes exist so callers that
do see them (route handlers, the agent-facing confirm call, tests) can tell
them apart.
"""


class RelayError(RuntimeError):
    """Base class for every error raised by askrelay."""


class AuthenticationFailed(RelayError):
    """A peer presented a missing or wrong token, or never authenticated."""


class RequestTimeout(RelayError):
    """A pending request reached its deadline without an answer."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"request {request_id} timed out after {timeout:g}s")
        self.request_id = request_id
        self.timeout = timeout


class RequestCancelled(RelayError):
    """A pending request was cancelled before any channel answered it."""

    def __init__(self, request_id: str):
        super().__init__(f"request {request_id} was cancelled")
        self.request_id = request_id


class ConnectionLost(RelayError):
    """A peer or endpoint connection went away."""


class ConfigConflict(RelayError, ValueError):
    """Endpoint CRUD would break the name or host:port uniqueness rule."""


class UnknownEndpoint(RelayError, LookupError):
    def __init__(self, endpoint_id: str):
        super().__init__(f"no relay endpoint with id {endpoint_id!r}")
        self.endpoint_id = endpoint_id


class SubprocessFailure(RelayError):
    """The tunnel subprocess could not be started or died unexpectedly."""


class FrameError(RelayError, ValueError):
    """A wire frame could not be decoded."""
