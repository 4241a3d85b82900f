"""SSH listener orchestration - ties transport, sessions and admission together."""

import asyncio
import errno
import logging
import signal
import socket
from pathlib import Path
from typing import Any, Optional

import asyncssh

from termgate.auth import AuthMethod, auth_method_from_config
from termgate.config import Config
from termgate.errors import (
    AddressInUseError,
    HostKeyNotFoundError,
    ListenerFaultError,
    TransportNotAvailableError,
)
from termgate.protocols import Application
from termgate.registry import Admission, AdmissionGate, SessionRegistry
from termgate.session import SessionActor, SessionHook
from termgate.transport import ListenerContext, TermgateSSHServer

logger = logging.getLogger(__name__)

# OpenSSH host key file names, in order of preference
HOST_KEY_NAMES = ("ssh_host_ed25519_key", "ssh_host_ecdsa_key", "ssh_host_rsa_key")


def find_host_keys(directory: Path | str) -> list[Path]:
    """Find host key files in a directory.

    Args:
        directory: Directory holding OpenSSH-named host keys.

    Returns:
        Paths of the key files present, in order of preference.

    Raises:
        HostKeyNotFoundError: If none of the known key files exist.
    """
    path = Path(directory).expanduser()
    keys = [path / name for name in HOST_KEY_NAMES if (path / name).is_file()]
    if not keys:
        raise HostKeyNotFoundError(
            f"No host key available in {path} (expected one of {', '.join(HOST_KEY_NAMES)})"
        )
    return keys


class Server:
    """SSH server serving one application to every session.

    Responsibilities:
    - Load host keys and start the asyncssh listener
    - Map listener startup failures to ListenerStartError subclasses
    - Enforce max_sessions through the AdmissionGate
    - Create, track and cancel SessionActors
    """

    def __init__(
        self,
        config: Config,
        application: Application,
        spec: Any,
        auth: Optional[AuthMethod] = None,
        on_connect: Optional[SessionHook] = None,
        on_disconnect: Optional[SessionHook] = None,
    ):
        """Initialize server.

        Args:
            config: Server configuration.
            application: Starts one application instance per session.
            spec: Application specification passed to application.start().
            auth: Authentication method. Built from config.auth if None.
            on_connect: Called when a session becomes active.
            on_disconnect: Called when an active session ends.
        """
        self._config = config
        self._application = application
        self._spec = spec
        self._auth = auth if auth is not None else auth_method_from_config(config.auth)
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect

        self.gate = AdmissionGate(config.max_sessions)
        self.sessions = SessionRegistry()

        self._acceptor: Optional[asyncssh.SSHAcceptor] = None
        self._connections: set[asyncssh.SSHServerConnection] = set()
        self._port: Optional[int] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start listening.

        Raises:
            HostKeyNotFoundError: No usable host key.
            AddressInUseError: Port already bound.
            TransportNotAvailableError: Bind address unavailable on this host.
            ListenerFaultError: Any other startup failure.
        """
        host_keys = find_host_keys(self._config.host_key_directory)

        context = ListenerContext(
            auth=self._auth,
            throttle=self._config.throttle,
            gate=self.gate,
            create_session=self._create_session,
            connections=self._connections,
        )

        try:
            self._acceptor = await asyncssh.create_server(
                lambda: TermgateSSHServer(context),
                self._config.bind_address,
                self._config.port,
                server_host_keys=[str(path) for path in host_keys],
                encoding=None,
                line_editor=False,
                login_timeout=self._config.login_timeout,
            )
        except asyncssh.KeyImportError as e:
            raise HostKeyNotFoundError(f"No host key available: {e}") from e
        except socket.gaierror as e:
            raise TransportNotAvailableError(
                f"Cannot resolve {self._config.bind_address}: {e}"
            ) from e
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise AddressInUseError(
                    f"Port {self._config.port} already in use"
                ) from e
            if e.errno == errno.EADDRNOTAVAIL:
                raise TransportNotAvailableError(
                    f"Address {self._config.bind_address} not available"
                ) from e
            raise ListenerFaultError(str(e)) from e
        except (asyncssh.Error, ValueError) as e:
            raise ListenerFaultError(str(e)) from e

        self._port = self._acceptor.get_port() or self._config.port
        self._running = True
        logger.info(
            f"Listening on {self._config.bind_address}:{self._port} "
            f"(max_sessions={self._config.max_sessions or 'unlimited'})"
        )

    def get_port(self) -> Optional[int]:
        """Get the actual bound port."""
        return self._port

    async def run_forever(self) -> None:
        """Run until stop() or a shutdown signal."""
        if not self._running:
            await self.start()

        self._setup_signals()

        try:
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.close()

    async def stop(self) -> None:
        """Ask run_forever() to shut down."""
        self._running = False

    async def close(self) -> None:
        """Stop listening and end every live session."""
        self._running = False

        if self._acceptor:
            self._acceptor.close()

        actors = self.sessions.list_all()
        for actor in actors:
            await actor.stop()

        # The listener does not finish closing while connections remain open
        connections = list(self._connections)
        for conn in connections:
            conn.close()
        for conn in connections:
            await conn.wait_closed()

        if self._acceptor:
            await self._acceptor.wait_closed()
            self._acceptor = None

        if actors:
            logger.info(f"Closed {len(actors)} sessions")
        if connections:
            logger.info(f"Closed {len(connections)} connections")
        logger.info("Server stopped")

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(self.stop()),
            )

    def _create_session(self, admission: Admission) -> SessionActor:
        actor = SessionActor(
            self._application,
            self._spec,
            on_connect=self._on_connect,
            on_disconnect=self._on_disconnect,
            admission=admission,
            send_timeout=self._config.send_timeout,
            on_terminated=self._session_ended,
        )
        self.sessions.add(actor)
        actor.start()
        logger.debug(f"Session {actor.session_id} created ({len(self.sessions)} live)")
        return actor

    def _session_ended(self, actor: SessionActor) -> None:
        self.sessions.remove(actor.session_id)
        logger.debug(f"Session {actor.session_id} removed ({len(self.sessions)} live)")
