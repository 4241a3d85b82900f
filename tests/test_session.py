"""Tests for the SessionActor state machine."""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import MockChannel, RecordingApplication, char
from termgate.errors import AppStartError
from termgate.keys import Key, KeyType
from termgate.protocols import (
    ApplicationExited,
    ChannelClosed,
    ChannelOpen,
    Connection,
    EndOfInput,
    Env,
    ExitSignal,
    InputBytes,
    KeyPress,
    PeerProcessExited,
    Resize,
    ShellRequest,
    Signal,
    TerminalNegotiation,
    WindowChange,
)
from termgate.registry import AdmissionGate
from termgate.session import (
    KEY_FLUSH_DELAY,
    FailureReason,
    SessionActor,
    SessionOutcome,
    SessionState,
)


async def settle(times: int = 10) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


async def finished(actor: SessionActor) -> SessionOutcome:
    return await asyncio.wait_for(actor.wait(), timeout=2)


@pytest.fixture
def gate():
    return AdmissionGate(max_sessions=10)


@pytest.fixture
def hooks():
    return MagicMock(), MagicMock()


def make_actor(application, gate, hooks, **kwargs) -> SessionActor:
    on_connect, on_disconnect = hooks
    actor = SessionActor(
        application,
        spec="spec",
        on_connect=on_connect,
        on_disconnect=on_disconnect,
        admission=gate.try_reserve(),
        **kwargs,
    )
    actor.start()
    return actor


class TestSessionOutcome:
    """Test SessionOutcome values."""

    def test_ok(self):
        assert SessionOutcome().ok
        assert str(SessionOutcome()) == "ok"

    def test_failed(self):
        outcome = SessionOutcome.failed(FailureReason.PEER_EXITED, "reset")
        assert not outcome.ok
        assert outcome.reason is FailureReason.PEER_EXITED
        assert str(outcome) == "peer_exited: reset"


class TestSessionOpen:
    """Test the INITIALIZING -> ACTIVE transition."""

    @pytest.mark.asyncio
    async def test_channel_open_activates(self, application, channel, gate, hooks):
        on_connect, on_disconnect = hooks
        actor = make_actor(application, gate, hooks)
        assert actor.state is SessionState.INITIALIZING
        assert gate.pending == 1

        actor.deliver(ChannelOpen(channel))
        await settle()

        assert actor.state is SessionState.ACTIVE
        assert actor.connection == Connection("alice", "10.0.0.5", 50022)
        on_connect.assert_called_once_with(actor.connection, application.handles[0])
        on_disconnect.assert_not_called()
        assert gate.active == 1
        assert gate.pending == 0

        await actor.stop()

    @pytest.mark.asyncio
    async def test_application_receives_spec(self, channel, gate, hooks):
        application = MagicMock(wraps=RecordingApplication())
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        assert application.start.call_args.args[0] == "spec"
        await actor.stop()

    @pytest.mark.asyncio
    async def test_frames_reach_channel(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        sink = application.sinks[0]
        sink("frame 1")
        await settle()

        assert channel.writes == [b"frame 1"]
        await actor.stop()


class TestSessionInitFailure:
    """Test application start failure."""

    @pytest.mark.asyncio
    async def test_init_failure_skips_disconnect_hook(self, channel, gate, hooks):
        on_connect, on_disconnect = hooks
        application = RecordingApplication(fail=AppStartError("init blew up"))
        actor = make_actor(application, gate, hooks)

        actor.deliver(ChannelOpen(channel))
        outcome = await finished(actor)

        assert outcome.reason is FailureReason.INITIALIZATION_FAILED
        assert "init blew up" in outcome.detail
        assert actor.state is SessionState.TERMINATED
        on_connect.assert_not_called()
        on_disconnect.assert_not_called()
        assert gate.active == 0
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_init_failure_closes_channel(self, channel, gate, hooks):
        application = RecordingApplication(fail=AppStartError("nope"))
        actor = make_actor(application, gate, hooks)

        actor.deliver(ChannelOpen(channel))
        await finished(actor)

        assert channel.close_calls == 1


class TestSessionClose:
    """Test teardown on channel close."""

    @pytest.mark.asyncio
    async def test_channel_closed_runs_teardown_once(self, application, channel, gate, hooks):
        on_connect, on_disconnect = hooks
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()
        assert gate.active == 1

        actor.deliver(ChannelClosed())
        actor.deliver(ChannelClosed())
        outcome = await finished(actor)

        assert outcome.ok
        on_disconnect.assert_called_once_with(actor.connection, application.handles[0])
        assert gate.active == 0
        assert application.handles[0].stopped

    @pytest.mark.asyncio
    async def test_exit_signal_ends_session(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(ExitSignal("TERM"))

        assert (await finished(actor)).ok

    @pytest.mark.asyncio
    async def test_peer_exit_fails_session(self, application, channel, gate, hooks):
        on_connect, on_disconnect = hooks
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(PeerProcessExited("connection reset"))

        outcome = await finished(actor)

        assert outcome == SessionOutcome.failed(FailureReason.PEER_EXITED, "connection reset")
        on_disconnect.assert_called_once()
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_application_quit_exits_channel(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        application.handles[0].finish()
        outcome = await finished(actor)

        assert outcome.ok
        assert channel.exit_statuses == [0]
        assert channel.close_calls == 0

    @pytest.mark.asyncio
    async def test_application_crash_is_peer_exit(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        application.handles[0].crash(ValueError("bad model"))
        outcome = await finished(actor)

        assert outcome.reason is FailureReason.PEER_EXITED
        assert "bad model" in outcome.detail

    @pytest.mark.asyncio
    async def test_relay_close_ends_session(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        channel.closed = True
        application.sinks[0]("frame")

        assert (await finished(actor)).ok

    @pytest.mark.asyncio
    async def test_stop_runs_teardown(self, application, channel, gate, hooks):
        on_connect, on_disconnect = hooks
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        await actor.stop()

        assert actor.state is SessionState.TERMINATED
        assert actor.outcome.ok
        assert actor.outcome.detail == "cancelled"
        on_disconnect.assert_called_once()
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_on_terminated_called(self, application, channel, gate, hooks):
        on_terminated = MagicMock()
        actor = make_actor(application, gate, hooks, on_terminated=on_terminated)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(ChannelClosed())
        await finished(actor)
        await settle()

        on_terminated.assert_called_once_with(actor)

    @pytest.mark.asyncio
    async def test_events_after_termination_dropped(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(ChannelClosed())
        await finished(actor)

        actor.deliver(InputBytes(b"x"))
        actor.deliver(ChannelOpen(channel))
        await settle()

        assert actor.state is SessionState.TERMINATED
        assert application.handles[0].events == []


class TestSessionEvents:
    """Test event translation while active."""

    @pytest.mark.asyncio
    async def test_resize_then_keys_in_order(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(WindowChange(120, 40))
        actor.deliver(InputBytes(b"abc"))
        actor.deliver(ChannelClosed())
        await finished(actor)

        assert application.handles[0].events == [
            Resize(120, 40),
            KeyPress(char("a")),
            KeyPress(char("b")),
            KeyPress(char("c")),
        ]

    @pytest.mark.asyncio
    async def test_order_kept_across_concurrent_sessions(self, gate, hooks):
        """Each session sees its own events in order, however they interleave."""
        applications = [RecordingApplication() for _ in range(3)]
        actors = [make_actor(app, gate, hooks) for app in applications]

        for actor in actors:
            actor.deliver(ChannelOpen(MockChannel()))
        for i, actor in enumerate(actors):
            actor.deliver(WindowChange(80 + i, 24))
        for key in (b"x", b"y", b"z"):
            for actor in actors:
                actor.deliver(InputBytes(key))
        for actor in actors:
            actor.deliver(ChannelClosed())

        await asyncio.gather(*(finished(actor) for actor in actors))

        for i, app in enumerate(applications):
            assert app.handles[0].events == [
                Resize(80 + i, 24),
                KeyPress(char("x")),
                KeyPress(char("y")),
                KeyPress(char("z")),
            ]
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_terminal_negotiation_is_resize(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(TerminalNegotiation(100, 30, "xterm-256color"))
        actor.deliver(ChannelClosed())
        await finished(actor)

        assert application.handles[0].events == [Resize(100, 30)]

    @pytest.mark.asyncio
    async def test_escape_sequences_decoded(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(InputBytes(b"\x1b[A\r"))
        actor.deliver(ChannelClosed())
        await finished(actor)

        assert application.handles[0].events == [
            KeyPress(Key(KeyType.UP)),
            KeyPress(Key(KeyType.ENTER)),
        ]

    @pytest.mark.asyncio
    async def test_informational_events_ignored(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        for event in (EndOfInput(), Env("LANG", "C"), ShellRequest(), Signal("INT")):
            actor.deliver(event)
        await settle()

        assert actor.state is SessionState.ACTIVE
        assert application.handles[0].events == []
        await actor.stop()


class TestSessionProtocolViolation:
    """Test events arriving in the wrong state."""

    @pytest.mark.asyncio
    async def test_input_before_open(self, application, gate, hooks):
        on_connect, on_disconnect = hooks
        actor = make_actor(application, gate, hooks)

        actor.deliver(InputBytes(b"a"))
        outcome = await finished(actor)

        assert outcome.reason is FailureReason.PROTOCOL_VIOLATION
        assert application.handles == []
        on_disconnect.assert_not_called()
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_second_channel_open(self, application, channel, gate, hooks):
        on_connect, on_disconnect = hooks
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(ChannelOpen(MockChannel()))

        outcome = await finished(actor)

        assert outcome.reason is FailureReason.PROTOCOL_VIOLATION
        on_disconnect.assert_called_once()
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_violation_logged_as_error(self, application, gate, hooks, caplog):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ApplicationExited())

        with caplog.at_level("ERROR", logger="termgate.session"):
            await finished(actor)

        assert any("protocol violation" in r.message for r in caplog.records)


class TestSessionHooks:
    """Test embedder hook failures."""

    @pytest.mark.asyncio
    async def test_raising_on_connect_tears_down(self, application, channel, gate):
        on_connect = MagicMock(side_effect=RuntimeError("hook failed"))
        on_disconnect = MagicMock()
        actor = make_actor(application, gate, (on_connect, on_disconnect))

        actor.deliver(ChannelOpen(channel))
        outcome = await finished(actor)

        assert outcome.reason is FailureReason.INITIALIZATION_FAILED
        on_disconnect.assert_not_called()
        assert application.handles[0].stopped
        assert gate.active == 0
        assert gate.pending == 0


class TestSessionCancellation:
    """Test cancellation at awkward moments."""

    @pytest.mark.asyncio
    async def test_stop_before_first_step_frees_slot(self, application, hooks):
        """Stopping an actor whose task never ran still tears it down."""
        gate = AdmissionGate(max_sessions=1)
        actor = make_actor(application, gate, hooks)
        assert gate.at_capacity

        await actor.stop()

        assert actor.state is SessionState.TERMINATED
        assert actor.outcome.detail == "cancelled"
        assert gate.pending == 0
        assert not gate.at_capacity
        hooks[1].assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_before_first_step_closes_channel(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))

        await actor.stop()

        assert actor.state is SessionState.TERMINATED
        assert application.handles == []
        assert channel.close_calls == 1
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_cancel_during_teardown_frees_slot(self, application, channel, gate, hooks):
        """A cancel landing while the application stops still closes and releases."""
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        await settle()

        stopping = asyncio.Event()

        async def slow_stop():
            stopping.set()
            await asyncio.Event().wait()

        application.handles[0].stop = slow_stop
        actor.deliver(ChannelClosed())
        await asyncio.wait_for(stopping.wait(), timeout=2)

        await actor.stop()

        assert actor.state is SessionState.TERMINATED
        assert channel.close_calls == 1
        assert gate.active == 0
        assert gate.pending == 0


class TestSessionSplitInput:
    """Test input sequences split across InputBytes events."""

    @pytest.mark.asyncio
    async def test_escape_sequence_across_events(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(InputBytes(b"\x1b["))
        actor.deliver(InputBytes(b"A"))
        actor.deliver(ChannelClosed())
        await finished(actor)

        assert application.handles[0].events == [KeyPress(Key(KeyType.UP))]

    @pytest.mark.asyncio
    async def test_utf8_across_events(self, application, channel, gate, hooks):
        data = "é".encode()
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(InputBytes(data[:1]))
        actor.deliver(InputBytes(data[1:]))
        actor.deliver(ChannelClosed())
        await finished(actor)

        assert application.handles[0].events == [KeyPress(char("é"))]

    @pytest.mark.asyncio
    async def test_lone_escape_delivered_after_delay(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(InputBytes(b"\x1b"))
        await settle()

        assert application.handles[0].events == []

        await asyncio.sleep(KEY_FLUSH_DELAY * 4)

        assert application.handles[0].events == [KeyPress(Key(KeyType.ESCAPE))]
        await actor.stop()

    @pytest.mark.asyncio
    async def test_completed_sequence_not_flushed_twice(self, application, channel, gate, hooks):
        actor = make_actor(application, gate, hooks)
        actor.deliver(ChannelOpen(channel))
        actor.deliver(InputBytes(b"\x1b"))
        await settle()
        actor.deliver(InputBytes(b"[B"))

        await asyncio.sleep(KEY_FLUSH_DELAY * 4)

        assert application.handles[0].events == [KeyPress(Key(KeyType.DOWN))]
        await actor.stop()
