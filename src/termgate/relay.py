"""Render relay: forwards application frames to the SSH channel."""

import asyncio
import logging
from typing import Callable, Optional

from termgate.errors import ChannelClosedError, SendTimeoutError
from termgate.protocols import Channel

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 0.25  # seconds


class RenderRelay:
    """Writes frames to a channel without blocking the application.

    The application pushes frames at its own pace; a single consumer task
    writes them out. Frames are full-screen snapshots, so while a write is
    in flight only the newest pending frame is kept.

    - write times out: the frame is dropped and the relay keeps going
    - channel closed: the relay stops for good and calls on_closed
    """

    def __init__(
        self,
        channel: Channel,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_closed: Optional[Callable[[], None]] = None,
    ):
        """Initialize render relay.

        Args:
            channel: Channel to write frames to.
            send_timeout: Maximum time to wait for one write, in seconds.
            on_closed: Called once when the channel reports it is closed.
        """
        self._channel = channel
        self._send_timeout = send_timeout
        self._on_closed = on_closed
        self._pending: Optional[str] = None
        self._frame_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._closed = False
        self.frames_written = 0
        self.frames_dropped = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def closed(self) -> bool:
        """True once the channel reported it is closed."""
        return self._closed

    async def start(self) -> None:
        """Start the relay task."""
        self._running = True
        self._task = asyncio.create_task(self._write_loop())

    async def stop(self) -> None:
        """Stop the relay. Pending frames are discarded."""
        self._running = False
        self._pending = None

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def push(self, frame: str) -> None:
        """Queue a frame for writing. Never blocks.

        Args:
            frame: Rendered screen contents.
        """
        if not self._running:
            return

        if self._pending is not None:
            self.frames_dropped += 1
        self._pending = frame
        self._frame_event.set()

    async def _write_loop(self) -> None:
        """Consume frames until stopped or the channel closes."""
        try:
            while self._running:
                await self._frame_event.wait()
                self._frame_event.clear()

                frame, self._pending = self._pending, None
                if frame is None:
                    continue

                try:
                    await self._channel.write(frame.encode("utf-8"), self._send_timeout)
                    self.frames_written += 1
                except SendTimeoutError:
                    # Peer is slow; the next frame supersedes this one
                    self.frames_dropped += 1
                    logger.debug(
                        f"Frame write timed out after {self._send_timeout}s, dropped"
                    )
                except ChannelClosedError:
                    logger.debug("Channel closed, stopping render relay")
                    self._mark_closed()
                    return

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Render relay error: {e}")
            self._mark_closed()

    def _mark_closed(self) -> None:
        self._running = False
        self._closed = True
        self._pending = None
        if self._on_closed:
            self._on_closed()
