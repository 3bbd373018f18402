"""Exception types for membar."""


class MemBarError(Exception):
    """Base class for all membar errors."""


class CounterUnavailable(MemBarError):
    """An operating-system memory counter could not be read."""


class ConfigError(MemBarError):
    """Invalid configuration value."""


class ProtocolError(MemBarError):
    """Malformed frame or message on the statistics channel."""


class ChannelError(MemBarError):
    """Base class for statistics channel failures."""


class ChannelNoConnection(ChannelError):
    """Request issued while the channel has no connection."""


class ChannelInterrupted(ChannelError):
    """The connection dropped; the channel is reconnecting."""


class ChannelInvalidated(ChannelError):
    """The channel was torn down and must be recreated."""


class RequestTimeout(ChannelError):
    """A caller-imposed deadline expired before the reply arrived."""
