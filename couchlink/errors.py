class CouchlinkError(Exception):
    pass


class ConfigError(CouchlinkError):
    pass


class TransportError(CouchlinkError):
    """Network connect failure (unreachable, refused, handshake)."""


class AuthError(CouchlinkError):
    """Credential rejected by the remote host."""


class ChannelError(CouchlinkError):
    """PTY shell channel could not be opened or written."""


class ExecError(CouchlinkError):
    """One-shot command failed or could not be started."""
