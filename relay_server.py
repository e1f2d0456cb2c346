"""
Accept loop and per-connection handling for the relay.

RelayServer owns the listening socket and the session counter. Every accepted
connection runs in its own task: dial the upstream once, couple the two legs,
log how it ended. Handler tasks are not awaited on shutdown.
"""
import asyncio
import enum
import itertools
import logging
import socket

from relay_config import Address, format_address
from stream_coupler import Leg, couple

logger = logging.getLogger(__name__)


class ListenerState(enum.Enum):
    CREATED = "created"
    BOUND = "bound"
    ACCEPTING = "accepting"
    CLOSING = "closing"
    STOPPED = "stopped"


async def handle_connection(conn, session_id, upstream, dump=False):
    """Relay one accepted socket to ``upstream``. Never raises on I/O errors."""
    try:
        reader, writer = await asyncio.open_connection(sock=conn)
    except OSError as e:
        logger.error(f"[{session_id}] Failed to set up accepted connection: {e}")
        conn.close()
        return
    client = Leg("client", reader, writer, session_id)
    logger.info(f"[{session_id}] Accepted from: {format_address(client.peer)}")

    server = None
    try:
        try:
            up_reader, up_writer = await asyncio.open_connection(upstream.host, upstream.port)
        except OSError as e:
            logger.error(f"[{session_id}] Failed to dial {upstream}: {e}")
            return

        server = Leg("server", up_reader, up_writer, session_id)
        logger.info(f"[{session_id}] Connected to server: {format_address(server.peer)}")

        outcome = await couple(client, server, dump)
        if not outcome.clean:
            logger.error(f"[{session_id}] Failed to transfer data ({outcome.side}): {outcome.error}")
    except Exception:
        logger.exception(f"[{session_id}] Relay aborted")
    finally:
        client.close()
        if server is not None:
            server.close()


class RelayServer:
    """
    Listens on ``listen`` and relays each connection to ``upstream``.

    Lifecycle: CREATED -> BOUND -> ACCEPTING -> CLOSING -> STOPPED. ``stop()``
    ends the accept loop and closes the listening socket; sessions already
    accepted keep running.
    """

    def __init__(self, listen, upstream, dump=False):
        self.listen = listen
        self.upstream = upstream
        self.dump = dump
        self.state = ListenerState.CREATED
        self._sessions = itertools.count(1)
        self._sock = None
        self._accept_task = None
        self._handlers = set()

    @property
    def address(self):
        """Bound address (the real port when listening on port 0)."""
        if self._sock is None:
            return self.listen
        return Address(*self._sock.getsockname()[:2], self._sock.family)

    @property
    def active_sessions(self):
        return len(self._handlers)

    def bind(self):
        if self.state is not ListenerState.CREATED:
            raise RuntimeError(f"cannot bind a listener in state {self.state.value}")
        self._sock = socket.create_server(
            (self.listen.host, self.listen.port), family=self.listen.family)
        self._sock.setblocking(False)
        self.state = ListenerState.BOUND

    async def serve(self):
        """Accept until ``stop()``; fatal accept errors propagate."""
        if self.state is ListenerState.CREATED:
            self.bind()
        if self.state is not ListenerState.BOUND:
            return

        self._accept_task = asyncio.ensure_future(self._accept_loop())
        self.state = ListenerState.ACCEPTING
        logger.info(f"Relay server listening on {self.address}")

        try:
            await self._accept_task
        except asyncio.CancelledError:
            if self.state is not ListenerState.CLOSING:
                raise
        finally:
            self._sock.close()
            self.state = ListenerState.STOPPED

    def stop(self):
        if self.state is ListenerState.ACCEPTING:
            self.state = ListenerState.CLOSING
            self._accept_task.cancel()
        elif self.state in (ListenerState.CREATED, ListenerState.BOUND):
            if self._sock is not None:
                self._sock.close()
            self.state = ListenerState.STOPPED

    async def _accept_loop(self):
        loop = asyncio.get_running_loop()
        while True:
            try:
                conn, _ = await loop.sock_accept(self._sock)
            except ConnectionAbortedError:
                continue
            except OSError:
                if self.state is ListenerState.CLOSING:
                    return
                raise
            self._spawn(conn)

    def _spawn(self, conn):
        session_id = next(self._sessions)
        task = asyncio.ensure_future(
            handle_connection(conn, session_id, self.upstream, self.dump))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)
