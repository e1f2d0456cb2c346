"""
Bidirectional coupling of two established byte streams.

Two copy tasks run per session: client -> server and server -> client.
Whichever returns first (EOF or error) ends the session: both legs are
closed, which makes the other copy's pending read or write return, and both
tasks are joined before the outcome is reported.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from frame_dump import log_frame

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024


class ShortWriteError(OSError):
    """Destination accepted fewer bytes than were read from the source."""


@dataclass(frozen=True)
class CouplingOutcome:
    side: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def clean(self):
        return self.error is None


class RunGroup:
    """
    Runs actors concurrently until the first one returns.

    Each actor is an ``execute`` coroutine function paired with an
    ``interrupt`` callable. When any execute returns (or raises), every
    interrupt is called with that result and all executes are awaited.
    Interrupts must make their execute return promptly and must tolerate
    being called more than once.
    """

    def __init__(self):
        self._actors = []

    def add(self, execute, interrupt):
        self._actors.append((execute, interrupt))

    def _interrupt(self, result):
        for _, interrupt in self._actors:
            interrupt(result)

    async def run(self):
        """Return the first actor's result, or raise its exception."""
        if not self._actors:
            return None

        tasks = [asyncio.ensure_future(execute()) for execute, _ in self._actors]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            first = next(task for task in tasks if task in done)
            error = first.exception()
            result = error if error is not None else first.result()
            self._interrupt(result)
            await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            self._interrupt(None)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if error is not None:
            raise error
        return result


class Leg:
    """One TCP connection of a relayed session ("client" or "server")."""

    def __init__(self, label, reader, writer, session_id):
        self.label = label
        self.reader = reader
        self.writer = writer
        self.session_id = session_id
        self.closed = False
        # drain() returns only once every written byte reached the socket.
        writer.transport.set_write_buffer_limits(high=0)

    @property
    def peer(self):
        return self.writer.get_extra_info("peername")

    async def write(self, data):
        # A closing transport drops writes without reporting an error.
        if self.writer.is_closing():
            raise ShortWriteError(
                f"short write: {self.label} connection closed, "
                f"0 of {len(data)} bytes written")
        self.writer.write(data)
        await self.writer.drain()

    def close(self, _reason=None):
        if self.closed:
            return
        self.closed = True
        self.writer.close()
        # Bytes still buffered belong to a copy blocked on a peer that is not
        # reading; drop them so its drain() returns.
        if self.writer.transport.get_write_buffer_size():
            self.writer.transport.abort()
        logger.info(f"[{self.session_id}] {self.label.capitalize()} connection closed")


async def pipe(src, dst, dump=False):
    """Copy ``src`` to ``dst`` chunk by chunk until EOF or error."""
    while True:
        try:
            data = await src.reader.read(CHUNK_SIZE)
        except OSError as e:
            return CouplingOutcome(src.label, e)
        if not data:
            return CouplingOutcome()

        if dump:
            log_frame(src.session_id, src.label, data)

        try:
            await dst.write(data)
        except OSError as e:
            return CouplingOutcome(dst.label, e)


async def couple(client, server, dump=False):
    """Relay between two legs until either side ends; both legs end closed."""
    group = RunGroup()
    group.add(lambda: pipe(server, client, dump), server.close)
    group.add(lambda: pipe(client, server, dump), client.close)
    return await group.run()
