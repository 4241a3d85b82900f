"""asyncssh bridge.

TermgateSSHServer is created by asyncssh once per TCP connection and
handles admission and authentication. SSHChannelBridge is created once per
session channel; it turns asyncssh callbacks into ChannelEvents for its
SessionActor and implements the Channel protocol the actor writes through.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import asyncssh

from termgate.auth import AuthMethod, AuthNegotiator
from termgate.config import ThrottleConfig
from termgate.errors import ChannelClosedError, SendTimeoutError
from termgate.protocols import (
    ChannelClosed,
    ChannelEvent,
    ChannelOpen,
    Connection,
    EndOfInput,
    Env,
    ExecRequest,
    InputBytes,
    PeerProcessExited,
    ShellRequest,
    Signal,
    TerminalNegotiation,
    WindowChange,
)
from termgate.registry import Admission, AdmissionGate, AdmissionState
from termgate.session import FailureReason, SessionActor

logger = logging.getLogger(__name__)


@dataclass
class ListenerContext:
    """Shared state handed to every TermgateSSHServer of one listener."""

    auth: AuthMethod
    throttle: ThrottleConfig
    gate: AdmissionGate
    create_session: Callable[[Admission], SessionActor]
    # Live connections, closed by Server.close()
    connections: set[asyncssh.SSHServerConnection] = field(default_factory=set)


class SSHChannelBridge(asyncssh.SSHServerSession):
    """One SSH session channel feeding one SessionActor."""

    def __init__(self, actor: SessionActor):
        self._actor = actor
        self._chan: Optional[asyncssh.SSHServerChannel] = None
        self._size: Optional[tuple[int, int]] = None
        self._writable = asyncio.Event()
        self._writable.set()
        self._closed = False

    @property
    def actor(self) -> SessionActor:
        return self._actor

    def _deliver(self, event: ChannelEvent) -> None:
        self._actor.deliver(event)

    # ------------------------------------------------------------------
    # asyncssh callbacks
    # ------------------------------------------------------------------

    def connection_made(self, chan: asyncssh.SSHServerChannel) -> None:
        self._chan = chan
        self._deliver(ChannelOpen(self))

    def pty_requested(self, term_type: str, term_size, term_modes) -> bool:
        width, height = term_size[0], term_size[1]
        self._size = (width, height)
        self._deliver(TerminalNegotiation(width, height, term_type or ""))
        return True

    def terminal_size_changed(
        self, width: int, height: int, pixwidth: int, pixheight: int
    ) -> None:
        if self._size == (width, height):
            return
        self._size = (width, height)
        self._deliver(WindowChange(width, height))

    def shell_requested(self) -> bool:
        self._deliver(ShellRequest())
        return True

    def exec_requested(self, command: str) -> bool:
        self._deliver(ExecRequest(command))
        return True

    def subsystem_requested(self, subsystem: str) -> bool:
        logger.debug(f"Refusing subsystem {subsystem!r}")
        return False

    def session_started(self) -> None:
        for name, value in self._chan.get_environment().items():
            self._deliver(Env(name, value))

    def data_received(self, data: bytes, datatype) -> None:
        self._deliver(InputBytes(bytes(data)))

    def eof_received(self) -> bool:
        self._deliver(EndOfInput())
        # Keep the channel open so frames can still be written
        return True

    def signal_received(self, signal: str) -> None:
        self._deliver(Signal(signal))

    def pause_writing(self) -> None:
        self._writable.clear()

    def resume_writing(self) -> None:
        self._writable.set()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._closed = True
        # Wake any write waiting on flow control
        self._writable.set()

        if exc is None:
            self._deliver(ChannelClosed())
        else:
            self._deliver(PeerProcessExited(str(exc)))

    # ------------------------------------------------------------------
    # Channel protocol
    # ------------------------------------------------------------------

    def connection_info(self) -> Connection:
        username = self._chan.get_extra_info("username") or ""
        peername = self._chan.get_extra_info("peername")
        if peername:
            return Connection(username, str(peername[0]), int(peername[1]))
        return Connection(username, "", 0)

    async def write(self, data: bytes, timeout: float) -> None:
        if self._is_closed():
            raise ChannelClosedError("Channel is closed")

        if not self._writable.is_set():
            try:
                await asyncio.wait_for(self._writable.wait(), timeout)
            except asyncio.TimeoutError:
                raise SendTimeoutError(f"Peer not reading after {timeout}s") from None

            if self._is_closed():
                raise ChannelClosedError("Channel is closed")

        try:
            self._chan.write(data)
        except (OSError, asyncssh.Error) as e:
            raise ChannelClosedError(str(e)) from e

    def close(self) -> None:
        if self._chan and not self._closed:
            self._chan.close()

    def exit(self, status: int) -> None:
        if self._chan and not self._closed:
            self._chan.exit(status)

    def _is_closed(self) -> bool:
        return self._closed or self._chan is None or self._chan.is_closing()


class TermgateSSHServer(asyncssh.SSHServer):
    """Per-connection admission and authentication.

    A slot is reserved on the first authentication request, before any
    credential is checked. If the server is full the connection is
    disconnected there and then, so a rejected peer never reaches an
    application. The reserved slot is handed to the first session channel;
    further channels on the same connection reserve their own.
    """

    def __init__(self, context: ListenerContext):
        self._context = context
        self._negotiator = AuthNegotiator(context.auth, context.throttle)
        self._conn: Optional[asyncssh.SSHServerConnection] = None
        self._admission: Optional[Admission] = None
        self._rejected = False
        self._peer = "unknown"

    @property
    def negotiator(self) -> AuthNegotiator:
        return self._negotiator

    @property
    def rejected(self) -> bool:
        """True if the connection was refused for lack of capacity."""
        return self._rejected

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        self._conn = conn
        self._context.connections.add(conn)
        peername = conn.get_extra_info("peername")
        if peername:
            self._peer = f"{peername[0]}:{peername[1]}"
        logger.debug(f"Connection from {self._peer}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._context.connections.discard(self._conn)
        if self._admission:
            self._admission.release()
            self._admission = None

        if exc:
            logger.debug(f"Connection from {self._peer} lost: {exc}")
        else:
            logger.debug(f"Connection from {self._peer} closed")

    def begin_auth(self, username: str) -> bool:
        if not self._rejected and self._admission is None:
            self._admission = self._context.gate.try_reserve()
            if self._admission is None:
                self._reject()

        if self._rejected:
            # No method will succeed; the disconnect is already on its way
            return True
        return self._negotiator.auth_required

    def password_auth_supported(self) -> bool:
        return not self._rejected and self._negotiator.password_supported

    async def validate_password(self, username: str, password: str) -> bool:
        if self._rejected:
            return False
        return await self._negotiator.check_password(username, password)

    def public_key_auth_supported(self) -> bool:
        return not self._rejected and self._negotiator.public_key_supported

    def validate_public_key(self, username: str, key: asyncssh.SSHKey) -> bool:
        if self._rejected:
            return False
        return self._negotiator.check_ssh_key(username, key)

    def session_requested(self):
        if self._rejected:
            return False

        admission = self._admission
        self._admission = None
        if admission is None or admission.state is AdmissionState.RELEASED:
            admission = self._context.gate.try_reserve()
            if admission is None:
                logger.warning(
                    f"Refused extra channel from {self._peer}: "
                    f"{FailureReason.CAPACITY_EXCEEDED.value}"
                )
                return False

        actor = self._context.create_session(admission)
        return SSHChannelBridge(actor)

    def _reject(self) -> None:
        self._rejected = True
        gate = self._context.gate
        logger.warning(
            f"Rejected connection from {self._peer}: "
            f"{FailureReason.CAPACITY_EXCEEDED.value} "
            f"(max_sessions={gate.max_sessions})"
        )
        self._conn.disconnect(
            asyncssh.DISC_TOO_MANY_CONNECTIONS, "Too many sessions"
        )
