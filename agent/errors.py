from __future__ import annotations


class SessionError(Exception):
    """A failure that ends the current connection; the lifecycle manager redials."""
    pass
class DialError(SessionError):
    """Transport connection could not be established."""
    pass
class ReadError(SessionError):
    """Reading the next inbound frame failed."""
    pass
class ConnectionClosedError(SessionError):
    """The peer (or a local abort) closed the connection."""
    pass
class KeepaliveError(SessionError):
    """A liveness probe failed or was not acknowledged in time."""
    pass
