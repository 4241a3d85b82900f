"""Base exceptions for termgate."""


class TermgateError(Exception):
    """Base exception for all termgate errors."""

    pass


class ConfigError(TermgateError):
    """Configuration is invalid."""

    pass


class ListenerStartError(TermgateError):
    """The SSH listener could not be started."""

    pass


class AddressInUseError(ListenerStartError):
    """Listening port is already bound."""

    pass


class TransportNotAvailableError(ListenerStartError):
    """SSH transport cannot run (no event loop, missing backend)."""

    pass


class HostKeyNotFoundError(ListenerStartError):
    """No usable host key in the host key directory."""

    pass


class ListenerFaultError(ListenerStartError):
    """Any other listener startup failure."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class KeyDecodeError(TermgateError):
    """OpenSSH public key text is malformed."""

    pass


class ChannelError(TermgateError):
    """Channel write failed."""

    pass


class ChannelClosedError(ChannelError):
    """Channel is closed, the peer is gone."""

    pass


class SendTimeoutError(ChannelError):
    """Channel did not accept data within the write timeout."""

    pass


class AppStartError(TermgateError):
    """Application instance failed to start."""

    pass
