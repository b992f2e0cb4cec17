"""Error taxonomy for the remote session and process-control layers."""


class Pm2OpsError(Exception):
    """Base class for every error raised by this package."""

    kind = "error"


class AuthenticationError(Pm2OpsError):
    """Credentials or key material were rejected or could not be loaded."""

    kind = "authentication"


class HostKeyRejected(Pm2OpsError):
    """The host key is awaiting an operator decision or was rejected."""

    kind = "host_key_rejected"

    def __init__(self, message: str, is_changed: bool = False):
        super().__init__(message)
        self.is_changed = is_changed


class ConnectFailed(Pm2OpsError):
    """Transport could not be established for a reason other than auth/host key."""

    kind = "connect_failed"


class NotConnected(Pm2OpsError):
    """An operation needed a live session and there is none."""

    kind = "not_connected"


class CommandTimeout(Pm2OpsError):
    """A remote command exceeded its deadline. The session may still be alive."""

    kind = "timeout"


class ChannelFatal(Pm2OpsError):
    """The transport died while running a command; the session was torn down."""

    kind = "channel_fatal"


class PersistenceError(Pm2OpsError):
    """The local settings document could not be read or written."""

    kind = "persistence"


class ProcessParseError(Pm2OpsError):
    """Process manager output could not be parsed by a strategy."""

    kind = "parse"
