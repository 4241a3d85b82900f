"""Data types and protocols shared between the transport and applications."""

from dataclasses import dataclass
from typing import Any, Callable, Protocol

from termgate.keys import Key


@dataclass(frozen=True)
class Connection:
    """Peer details captured when a channel opens."""

    username: str
    remote_ip: str
    remote_port: int


# ============================================================================
# Channel events (transport -> session)
# ============================================================================


@dataclass(frozen=True)
class ChannelEvent:
    """Base class for events delivered to a session."""

    pass


@dataclass(frozen=True)
class ChannelOpen(ChannelEvent):
    """A channel was opened for this session."""

    channel: "Channel"


@dataclass(frozen=True)
class TerminalNegotiation(ChannelEvent):
    """Client requested a pseudo-terminal."""

    width: int
    height: int
    term_type: str = ""


@dataclass(frozen=True)
class WindowChange(ChannelEvent):
    """Client terminal was resized."""

    width: int
    height: int


@dataclass(frozen=True)
class InputBytes(ChannelEvent):
    """Raw bytes typed by the peer."""

    data: bytes


@dataclass(frozen=True)
class EndOfInput(ChannelEvent):
    """Peer sent EOF on its input stream."""

    pass


@dataclass(frozen=True)
class ChannelClosed(ChannelEvent):
    """Channel closed cleanly."""

    pass


@dataclass(frozen=True)
class Env(ChannelEvent):
    """Peer sent an environment variable."""

    name: str
    value: str


@dataclass(frozen=True)
class ShellRequest(ChannelEvent):
    """Peer requested a shell."""

    pass


@dataclass(frozen=True)
class ExecRequest(ChannelEvent):
    """Peer requested a command."""

    command: str


@dataclass(frozen=True)
class Signal(ChannelEvent):
    """Peer delivered a signal."""

    name: str


@dataclass(frozen=True)
class ExitStatus(ChannelEvent):
    """Exit status reported on the channel."""

    status: int


@dataclass(frozen=True)
class ExitSignal(ChannelEvent):
    """Exit signal reported on the channel."""

    name: str


@dataclass(frozen=True)
class PeerProcessExited(ChannelEvent):
    """The peer or the process serving it went away abnormally."""

    detail: str


@dataclass(frozen=True)
class ApplicationExited(ChannelEvent):
    """Application instance finished on its own."""

    pass


# ============================================================================
# Application events (session -> application)
# ============================================================================


@dataclass(frozen=True)
class Resize:
    """Terminal size changed."""

    width: int
    height: int


@dataclass(frozen=True)
class KeyPress:
    """A decoded key press."""

    key: Key


AppEvent = Resize | KeyPress

# Output sink handed to applications: one call per rendered frame.
FrameSink = Callable[[str], None]


# ============================================================================
# Collaborator protocols
# ============================================================================


class Channel(Protocol):
    """Transport channel carrying one interactive terminal."""

    def connection_info(self) -> Connection:
        """Return the peer details for this channel."""
        ...

    async def write(self, data: bytes, timeout: float) -> None:
        """Write data, waiting at most timeout seconds for the peer.

        Raises:
            ChannelClosedError: Channel is closed.
            SendTimeoutError: Peer did not accept data in time.
        """
        ...

    def close(self) -> None:
        """Close the channel."""
        ...

    def exit(self, status: int) -> None:
        """Report an exit status and close the channel."""
        ...


class AppHandle(Protocol):
    """Running application instance."""

    def send(self, event: AppEvent) -> None:
        """Queue an event for the application. Never blocks."""
        ...

    async def wait(self) -> None:
        """Wait for the application to finish. Raises if it crashed."""
        ...

    async def stop(self) -> None:
        """Stop the application and wait for it to finish."""
        ...


class Application(Protocol):
    """Starts application instances, one per session."""

    async def start(self, spec: Any, sink: FrameSink) -> AppHandle:
        """Start an instance of spec that renders frames into sink.

        Raises:
            AppStartError: The instance could not be started.
        """
        ...
