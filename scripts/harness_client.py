"""Console client for the harness daemon.

Lines typed on standard input are forwarded to the daemon; everything the
daemon sends back is written to standard output. The client exits when its
input ends or the daemon closes the connection.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import sys
import threading
import typing as typ

__all__ = ["run_client"]

LOGGER = logging.getLogger(__name__)

RECEIVE_CHUNK_SIZE: typ.Final[int] = 1024


def _start_line_reader(
    stream: typ.TextIO,
    loop: asyncio.AbstractEventLoop,
    queue: asyncio.Queue[str | None],
) -> None:
    """Feed lines from ``stream`` into ``queue`` from a daemon thread.

    A ``None`` item marks end of input. The thread is a daemon so a blocked
    ``readline`` never keeps the process alive after the client finishes.
    """

    def _pump() -> None:
        with contextlib.suppress(RuntimeError):  # loop closed before EOF
            for line in iter(stream.readline, ""):
                loop.call_soon_threadsafe(queue.put_nowait, line)
            loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=_pump, name="harness-client-stdin", daemon=True).start()


async def _forward_input(
    queue: asyncio.Queue[str | None], writer: asyncio.StreamWriter
) -> None:
    while (line := await queue.get()) is not None:
        command = line.rstrip("\r\n")
        if not command:
            continue
        writer.write(f"{command}\n".encode())
        await writer.drain()


async def _echo_replies(reader: asyncio.StreamReader, output: typ.TextIO) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while data := await reader.read(RECEIVE_CHUNK_SIZE):
        output.write(decoder.decode(data))
        output.flush()


async def run_client(
    host: str,
    port: int,
    *,
    stdin: typ.TextIO | None = None,
    stdout: typ.TextIO | None = None,
) -> int:
    """Connect to the daemon at ``host:port`` and relay console traffic.

    Returns
    -------
    int
        ``0`` after a normal session, ``1`` when the connection could not be
        established.
    """
    source = stdin if stdin is not None else sys.stdin
    output = stdout if stdout is not None else sys.stdout

    print(f"Attempting to connect to server: {host}:{port}", file=output)
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError:
        LOGGER.exception("could not connect to %s:%s", host, port)
        print("Failed to connect to server!", file=sys.stderr)
        return 1
    print("Successfully connected!", file=output)

    queue: asyncio.Queue[str | None] = asyncio.Queue()
    _start_line_reader(source, asyncio.get_running_loop(), queue)
    forward = asyncio.create_task(_forward_input(queue, writer))
    echo = asyncio.create_task(_echo_replies(reader, output))
    try:
        await asyncio.wait({forward, echo}, return_when=asyncio.FIRST_COMPLETED)
        if not echo.done() and forward.exception() is None and writer.can_write_eof():
            # Input is exhausted; let the daemon answer what it already has.
            writer.write_eof()
            await echo
    except ConnectionError:
        LOGGER.info("server at %s:%s disconnected", host, port)
    finally:
        for task in (forward, echo):
            task.cancel()
        await asyncio.gather(forward, echo, return_exceptions=True)
        writer.close()
        with contextlib.suppress(ConnectionError):
            await writer.wait_closed()
    return 0
