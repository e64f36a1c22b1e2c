"""Line-oriented TCP daemon run inside the harness container.

The daemon accepts connections, splits incoming UTF-8 text into commands on
carriage returns and newlines, and answers every command with one line. The
``stop`` command (case-insensitive) makes the daemon stop accepting work once
the current batch of commands has been answered.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import typing as typ

__all__ = ["STOP_COMMAND", "CommandDaemon", "LineSplitter", "respond", "run_daemon"]

LOGGER = logging.getLogger(__name__)

STOP_COMMAND: typ.Final[str] = "stop"
RECEIVE_CHUNK_SIZE: typ.Final[int] = 1024
LISTEN_BACKLOG: typ.Final[int] = 100


class LineSplitter:
    """Accumulate received text and yield complete, non-empty lines.

    Examples
    --------
    >>> splitter = LineSplitter()
    >>> splitter.feed("one\\r\\ntw")
    ['one']
    >>> splitter.feed("o\\n")
    ['two']
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        data = self._pending + text
        pieces = [piece for piece in data.replace("\r", "\n").split("\n") if piece]
        if data.endswith(("\r", "\n")) or not pieces:
            self._pending = ""
            return pieces
        self._pending = pieces.pop()
        return pieces


def respond(command: str) -> tuple[str, bool]:
    """Return the reply for ``command`` and whether the daemon should stop."""
    if command.lower() == STOP_COMMAND:
        return f'Received command "{command}" - stopping execution', True
    return f'Received unknown command "{command}"', False


class CommandDaemon:
    """Serve the command protocol until a client sends ``stop``."""

    def __init__(self) -> None:
        self.stopped = asyncio.Event()
        self._writers: set[asyncio.StreamWriter] = set()

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Answer commands from one client until it disconnects or stops us."""
        peer = writer.get_extra_info("peername")
        print(f"Received connection from {peer}")
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        splitter = LineSplitter()
        self._writers.add(writer)
        try:
            while not self.stopped.is_set():
                data = await reader.read(RECEIVE_CHUNK_SIZE)
                if not data:
                    break
                for command in splitter.feed(decoder.decode(data)):
                    message, stop = respond(command)
                    writer.write(f"{message}\n".encode())
                    await writer.drain()
                    print(message)
                    if stop:
                        self.stopped.set()
        except ConnectionError:
            LOGGER.info("connection from %s dropped", peer)
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    def close_connections(self) -> None:
        """Drop every client that is still connected."""
        for writer in list(self._writers):
            writer.close()


async def run_daemon(host: str, port: int) -> None:
    """Listen on ``host:port`` and serve until a client sends ``stop``."""
    daemon = CommandDaemon()
    print("Starting server...")
    server = await asyncio.start_server(
        daemon.handle_connection, host, port, backlog=LISTEN_BACKLOG
    )
    async with server:
        print(f"Now listening on {host}:{port}")
        await daemon.stopped.wait()
        daemon.close_connections()
    LOGGER.info("daemon on %s:%s stopped", host, port)
