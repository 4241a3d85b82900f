"""Model/update/view application runtime.

An AppSpec describes a terminal application as three plain functions:

    init()                -> model
    update(model, event)  -> model, or QUIT to exit
    view(model, size)     -> screen contents as text

AppRuntime runs one instance per session in its own task and pushes a
rendered frame to the session's sink after every state change.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from termgate.errors import AppStartError
from termgate.protocols import AppEvent, FrameSink, Resize

logger = logging.getLogger(__name__)

# Returned by update() to end the application
QUIT = object()

# Cursor home + clear screen
CLEAR_SCREEN = "\x1b[H\x1b[2J"


@dataclass(frozen=True)
class TerminalSize:
    """Terminal dimensions in character cells."""

    width: int
    height: int


DEFAULT_SIZE = TerminalSize(80, 24)


@dataclass(frozen=True)
class AppSpec:
    """An application as init/update/view functions."""

    init: Callable[[], Any]
    update: Callable[[Any, AppEvent], Any]
    view: Callable[[Any, TerminalSize], str]


def render_frame(body: str) -> str:
    """Turn view output into a full-screen frame for a raw terminal."""
    return CLEAR_SCREEN + body.replace("\r\n", "\n").replace("\n", "\r\n")


class AppInstance:
    """One running application, driven by an event queue."""

    def __init__(self, spec: AppSpec, model: Any, sink: FrameSink):
        self._spec = spec
        self._model = model
        self._sink = sink
        self._size = DEFAULT_SIZE
        self._queue: asyncio.Queue[AppEvent] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def model(self) -> Any:
        return self._model

    @property
    def size(self) -> TerminalSize:
        return self._size

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    def send(self, event: AppEvent) -> None:
        """Queue an event. Never blocks."""
        self._queue.put_nowait(event)

    async def wait(self) -> None:
        """Wait until the application quits. Re-raises if it crashed."""
        if self._task:
            await self._task

    async def stop(self) -> None:
        """Cancel the application task."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        self._render()

        while True:
            event = await self._queue.get()

            if isinstance(event, Resize):
                self._size = TerminalSize(event.width, event.height)

            model = self._spec.update(self._model, event)
            if model is QUIT:
                logger.debug("Application quit")
                return

            self._model = model
            self._render()

    def _render(self) -> None:
        self._sink(render_frame(self._spec.view(self._model, self._size)))


class AppRuntime:
    """Application implementation that starts AppSpec instances."""

    async def start(self, spec: AppSpec, sink: FrameSink) -> AppInstance:
        """Start an instance of spec.

        Raises:
            AppStartError: If spec.init() raises.
        """
        try:
            model = spec.init()
        except Exception as e:
            raise AppStartError(f"Application init failed: {e}") from e

        instance = AppInstance(spec, model, sink)
        instance.start()
        return instance
