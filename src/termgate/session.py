"""Per-channel session state machine.

A SessionActor owns one SSH channel from open to close:

    INITIALIZING --ChannelOpen--> ACTIVE --close/exit/error--> TERMINATED
    INITIALIZING --start failure / protocol violation--> TERMINATED

Events arrive through deliver() and are processed one at a time, in order,
by the actor's own task. Teardown happens exactly once, when the state
becomes TERMINATED; the run loop exits right after, so nothing can move the
session out of TERMINATED.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional

from termgate.keys import KeyDecoder
from termgate.protocols import (
    AppHandle,
    Application,
    ApplicationExited,
    Channel,
    ChannelClosed,
    ChannelEvent,
    ChannelOpen,
    Connection,
    EndOfInput,
    Env,
    ExecRequest,
    ExitSignal,
    ExitStatus,
    InputBytes,
    KeyPress,
    PeerProcessExited,
    Resize,
    ShellRequest,
    Signal,
    TerminalNegotiation,
    WindowChange,
)
from termgate.registry import Admission
from termgate.relay import DEFAULT_SEND_TIMEOUT, RenderRelay

logger = logging.getLogger(__name__)

# on_connect / on_disconnect hook signature
SessionHook = Callable[[Connection, AppHandle], None]

# Acknowledged by the transport layer; nothing to do here
_IGNORED_EVENTS = (EndOfInput, Env, ShellRequest, ExecRequest, Signal, ExitStatus)

# How long an unfinished escape sequence waits for the rest of its bytes
KEY_FLUSH_DELAY = 0.05


@dataclass(frozen=True)
class _FlushInput(ChannelEvent):
    """Emit held-back input once no more bytes have arrived."""

    generation: int


class SessionState(Enum):
    """Session lifecycle states."""

    INITIALIZING = auto()
    ACTIVE = auto()
    TERMINATED = auto()


_VALID_TRANSITIONS = {
    SessionState.INITIALIZING: {SessionState.ACTIVE, SessionState.TERMINATED},
    SessionState.ACTIVE: {SessionState.TERMINATED},
    SessionState.TERMINATED: set(),
}


class FailureReason(Enum):
    """Why a session ended abnormally."""

    INITIALIZATION_FAILED = "initialization_failed"
    PEER_EXITED = "peer_exited"
    PROTOCOL_VIOLATION = "protocol_violation"
    CAPACITY_EXCEEDED = "capacity_exceeded"


@dataclass(frozen=True)
class SessionOutcome:
    """How a session ended. reason is None for a normal end."""

    reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def failed(cls, reason: FailureReason, detail: Optional[str] = None) -> "SessionOutcome":
        return cls(reason=reason, detail=detail)

    def __str__(self) -> str:
        if self.ok:
            return "ok" if self.detail is None else f"ok ({self.detail})"
        if self.detail:
            return f"{self.reason.value}: {self.detail}"
        return self.reason.value


OK = SessionOutcome()


class SessionActor:
    """Drives one application instance from one SSH channel.

    Attributes:
        session_id: Random identifier used in logs and the registry.
    """

    def __init__(
        self,
        application: Application,
        spec: Any,
        on_connect: Optional[SessionHook] = None,
        on_disconnect: Optional[SessionHook] = None,
        admission: Optional[Admission] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_terminated: Optional[Callable[["SessionActor"], None]] = None,
        session_id: Optional[str] = None,
    ):
        """Initialize session actor.

        Args:
            application: Starts the application instance on channel open.
            spec: Application specification handed to application.start().
            on_connect: Called once the session is active.
            on_disconnect: Called on teardown if the session was active.
            admission: Reserved slot, activated with the session and
                released on teardown.
            send_timeout: Render relay write timeout in seconds.
            on_terminated: Called when the actor task has finished.
            session_id: Override the generated session ID.
        """
        self.session_id = session_id or secrets.token_hex(8)
        self._application = application
        self._spec = spec
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._admission = admission
        self._send_timeout = send_timeout
        self._on_terminated = on_terminated

        self._inbox: asyncio.Queue[ChannelEvent] = asyncio.Queue()
        self._state = SessionState.INITIALIZING
        self._outcome: Optional[SessionOutcome] = None
        self._exit_status: Optional[int] = None

        self._channel: Optional[Channel] = None
        self._connection: Optional[Connection] = None
        self._relay: Optional[RenderRelay] = None
        self._handle: Optional[AppHandle] = None
        self._watcher: Optional[asyncio.Task] = None
        self._keys = KeyDecoder()
        self._input_generation = 0
        self._flush_timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def outcome(self) -> Optional[SessionOutcome]:
        """Outcome once terminated, None before."""
        return self._outcome

    @property
    def connection(self) -> Optional[Connection]:
        """Peer details, set when the channel opens."""
        return self._connection

    @property
    def handle(self) -> Optional[AppHandle]:
        return self._handle

    def start(self) -> asyncio.Task:
        """Start the actor task."""
        self._task = asyncio.create_task(self.run())
        self._task.add_done_callback(self._task_done)
        return self._task

    def deliver(self, event: ChannelEvent) -> None:
        """Queue an event for the actor. Never blocks.

        Events arriving after termination are dropped.
        """
        if self._state is SessionState.TERMINATED:
            logger.debug(
                f"Session {self.session_id} dropped {type(event).__name__} after termination"
            )
            return
        self._inbox.put_nowait(event)

    async def wait(self) -> Optional[SessionOutcome]:
        """Wait for the actor task to finish and return the outcome."""
        if self._task:
            await asyncio.wait([self._task])
        return self._outcome

    async def stop(self) -> None:
        """Cancel the actor. Teardown still runs."""
        if self._task and not self._task.done():
            self._task.cancel()
        await self.wait()

        # A task cancelled before its first step never ran its teardown
        if self._state is not SessionState.TERMINATED:
            self._take_unopened_channel()
            await self._terminate(SessionOutcome(detail="cancelled"))

    async def run(self) -> SessionOutcome:
        """Process events until the session terminates."""
        try:
            while self._state is not SessionState.TERMINATED:
                event = await self._inbox.get()
                await self._handle_event(event)
        except asyncio.CancelledError:
            if self._state is not SessionState.TERMINATED:
                await self._terminate(SessionOutcome(detail="cancelled"))
            raise
        except Exception as e:
            # Raised by an embedder hook; tear down and let the task fail
            if self._state is not SessionState.TERMINATED:
                reason = (
                    FailureReason.INITIALIZATION_FAILED
                    if self._state is SessionState.INITIALIZING
                    else FailureReason.PEER_EXITED
                )
                await self._terminate(SessionOutcome.failed(reason, str(e)))
            raise

        return self._outcome

    def _transition_to(self, new_state: SessionState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is not valid from current state.
        """
        if new_state not in _VALID_TRANSITIONS[self._state]:
            raise ValueError(f"Invalid transition: {self._state} -> {new_state}")
        self._state = new_state

    async def _handle_event(self, event: ChannelEvent) -> None:
        if self._state is SessionState.INITIALIZING:
            if isinstance(event, ChannelOpen):
                await self._open(event.channel)
            else:
                await self._protocol_violation(
                    f"{type(event).__name__} received before channel open"
                )
            return

        if isinstance(event, (TerminalNegotiation, WindowChange)):
            self._handle.send(Resize(event.width, event.height))
        elif isinstance(event, InputBytes):
            self._send_keys(self._keys.feed(event.data))
            self._schedule_flush()
        elif isinstance(event, _FlushInput):
            if event.generation == self._input_generation:
                self._flush_timer = None
                self._send_keys(self._keys.flush())
        elif isinstance(event, (ChannelClosed, ExitSignal)):
            await self._terminate(OK)
        elif isinstance(event, PeerProcessExited):
            await self._terminate(
                SessionOutcome.failed(FailureReason.PEER_EXITED, event.detail)
            )
        elif isinstance(event, ApplicationExited):
            self._exit_status = 0
            await self._terminate(OK)
        elif isinstance(event, ChannelOpen):
            await self._protocol_violation("second channel open on an active session")
        elif isinstance(event, _IGNORED_EVENTS):
            logger.debug(f"Session {self.session_id} ignoring {event}")
        else:
            logger.warning(f"Session {self.session_id} got unknown event {event!r}")

    def _take_unopened_channel(self) -> None:
        """Bind the channel of a queued ChannelOpen so teardown closes it."""
        while self._channel is None and not self._inbox.empty():
            event = self._inbox.get_nowait()
            if isinstance(event, ChannelOpen):
                self._channel = event.channel

    def _send_keys(self, keys) -> None:
        for key in keys:
            self._handle.send(KeyPress(key))

    def _schedule_flush(self) -> None:
        """Emit held-back input if nothing completes it within KEY_FLUSH_DELAY."""
        self._input_generation += 1
        if self._flush_timer:
            self._flush_timer.cancel()
            self._flush_timer = None
        if not self._keys.pending:
            return
        self._flush_timer = asyncio.get_running_loop().call_later(
            KEY_FLUSH_DELAY, self.deliver, _FlushInput(self._input_generation)
        )

    async def _open(self, channel: Channel) -> None:
        """Bind the channel, start relay and application, become active."""
        self._channel = channel

        try:
            self._connection = channel.connection_info()
            self._relay = RenderRelay(
                channel,
                send_timeout=self._send_timeout,
                on_closed=lambda: self.deliver(ChannelClosed()),
            )
            await self._relay.start()
            self._handle = await self._application.start(self._spec, self._relay.push)
        except Exception as e:
            logger.error(f"Session {self.session_id} failed to start: {e}")
            await self._terminate(
                SessionOutcome.failed(FailureReason.INITIALIZATION_FAILED, str(e))
            )
            return

        self._watcher = asyncio.create_task(self._watch_application(self._handle))

        if self._on_connect:
            self._on_connect(self._connection, self._handle)

        self._transition_to(SessionState.ACTIVE)
        if self._admission:
            self._admission.activate()

        logger.info(
            f"Session {self.session_id} active for {self._connection.username}"
            f"@{self._connection.remote_ip}:{self._connection.remote_port}"
        )

    async def _watch_application(self, handle: AppHandle) -> None:
        """Report the application finishing on its own."""
        try:
            await handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.deliver(PeerProcessExited(f"application crashed: {e!r}"))
            return
        self.deliver(ApplicationExited())

    async def _protocol_violation(self, detail: str) -> None:
        logger.error(f"Session {self.session_id} protocol violation: {detail}")
        await self._terminate(
            SessionOutcome.failed(FailureReason.PROTOCOL_VIOLATION, detail)
        )

    async def _terminate(self, outcome: SessionOutcome) -> None:
        """Enter TERMINATED and release everything the session holds."""
        was_active = self._state is SessionState.ACTIVE
        self._transition_to(SessionState.TERMINATED)
        self._outcome = outcome

        log = logger.info if outcome.ok else logger.warning
        log(f"Session {self.session_id} terminated: {outcome}")

        try:
            if was_active and self._on_disconnect:
                self._on_disconnect(self._connection, self._handle)
        finally:
            await self._release()

    async def _release(self) -> None:
        """Stop watcher, application and relay; close channel; free slot."""
        if self._flush_timer:
            self._flush_timer.cancel()
            self._flush_timer = None

        try:
            if self._watcher:
                self._watcher.cancel()
                try:
                    await self._watcher
                except asyncio.CancelledError:
                    pass
                self._watcher = None

            if self._handle:
                try:
                    await self._handle.stop()
                except Exception as e:
                    logger.error(f"Session {self.session_id} application stop error: {e}")
        finally:
            try:
                if self._relay:
                    await self._relay.stop()
            finally:
                self._close_channel()
                if self._admission:
                    self._admission.release()

    def _close_channel(self) -> None:
        if not self._channel:
            return
        try:
            if self._exit_status is not None:
                self._channel.exit(self._exit_status)
            else:
                self._channel.close()
        except Exception as e:
            logger.debug(f"Session {self.session_id} channel close error: {e}")

    def _task_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Session {self.session_id} ended with error: {task.exception()!r}"
            )
        if self._on_terminated:
            self._on_terminated(self)
