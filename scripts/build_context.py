"""Reusable in-memory build contexts for container image builds.

A :class:`BuildContext` owns one growable buffer holding a gzip-compressed tar
archive. The archive is regenerated wholesale by :meth:`BuildContext.rebuild`
and handed out for reading by :meth:`BuildContext.access`. Both operations, and
their ``*_async`` counterparts, run under a single exclusivity guard: at most
one rebuild or one access touches the buffer at any time.

The asynchronous forms hold the guard across every suspension point of the
caller's callback. Mixing a synchronous call with an in-flight asynchronous
operation on the same event loop thread therefore blocks that thread until the
asynchronous operation finishes, which it cannot do; keep to one style per
event loop. The asynchronous forms wait for the guard by polling every
``GUARD_POLL_INTERVAL_S`` seconds, so a contended acquisition may lag by up
to that interval and waiters are not served in arrival order.

Example
-------
>>> from pathlib import Path
>>> with BuildContext() as context:
...     context.rebuild(lambda session: session.add_directory(Path("app"), "/"))
...     payload = context.access(lambda stream: stream.read())
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
import threading
import typing as typ

import build_context_errors as _errors
import build_context_session as _session

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import types

ArchiveSession = _session.ArchiveSession
CHUNK_SIZE = _session.CHUNK_SIZE
BuildContextError = _errors.BuildContextError
ContextDisposedError = _errors.ContextDisposedError
OperationCancelledError = _errors.OperationCancelledError
SessionDisposedError = _errors.SessionDisposedError

__all__ = [
    "CHUNK_SIZE",
    "ArchiveSession",
    "BuildContext",
    "BuildContextError",
    "ContextDisposedError",
    "OperationCancelledError",
    "SessionDisposedError",
]

LOGGER = logging.getLogger(__name__)

GUARD_POLL_INTERVAL_S: typ.Final[float] = 0.01

T = typ.TypeVar("T")

Populate = typ.Callable[[ArchiveSession], None]
PopulateAsync = typ.Callable[[ArchiveSession], "cabc.Awaitable[None]"]


def _raise_if_cancelled(cancel: asyncio.Event | None, operation: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(operation)


class BuildContext:
    """Own a rewindable gzip-compressed tar archive held in memory.

    A new context already contains a valid, empty archive, so it can be read
    before the first rebuild. Every rebuild discards the previous contents; a
    rebuild that fails part way leaves the context usable and the next
    successful rebuild replaces whatever was written.

    Examples
    --------
    >>> context = BuildContext()
    >>> context.rebuild(lambda session: session.add_entry("/hello", b"hi"))
    >>> context.close()
    """

    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        self._guard = threading.Lock()
        self._state = threading.Lock()
        self._closed = False
        self._active = False
        self.rebuild(lambda _session: None)

    def __enter__(self) -> BuildContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: types.TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        """``True`` once :meth:`close` has been called."""
        return self._closed

    def _is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise ContextDisposedError

    def _begin(self) -> io.BytesIO:
        """Mark an operation active and rewind the buffer; guard must be held."""
        with self._state:
            if self._closed:
                raise ContextDisposedError
            self._active = True
        self._buffer.seek(0)
        return self._buffer

    def _end(self) -> None:
        with self._state:
            self._active = False
            if self._closed:
                self._buffer.close()

    @contextlib.contextmanager
    def _exclusive(self) -> cabc.Iterator[io.BytesIO]:
        self._ensure_open()
        with self._guard:
            buffer = self._begin()
            try:
                yield buffer
            finally:
                self._end()

    async def _acquire_guard(
        self, cancel: asyncio.Event | None, operation: str
    ) -> None:
        while not self._guard.acquire(blocking=False):
            _raise_if_cancelled(cancel, operation)
            await asyncio.sleep(GUARD_POLL_INTERVAL_S)

    @contextlib.asynccontextmanager
    async def _exclusive_async(
        self, cancel: asyncio.Event | None, operation: str
    ) -> cabc.AsyncIterator[io.BytesIO]:
        self._ensure_open()
        _raise_if_cancelled(cancel, operation)
        await self._acquire_guard(cancel, operation)
        try:
            buffer = self._begin()
            try:
                yield buffer
            finally:
                self._end()
        finally:
            self._guard.release()

    def _log_rebuilt(self, session: ArchiveSession, buffer: io.BytesIO) -> None:
        LOGGER.debug(
            "rebuilt build context: %d entries, %d compressed bytes",
            session.entry_count,
            buffer.tell(),
        )

    def rebuild(self, populate: Populate) -> None:
        """Regenerate the archive by running ``populate`` against a new session.

        Parameters
        ----------
        populate : Callable[[ArchiveSession], None]
            Callback that adds entries through the session it receives. The
            session is closed when the callback returns or raises.

        Raises
        ------
        ContextDisposedError
            The context has been closed.
        """
        with self._exclusive() as buffer:
            buffer.truncate()
            session = ArchiveSession(buffer, owner_closed=self._is_closed)
            try:
                populate(session)
            finally:
                session.close()
            self._log_rebuilt(session, buffer)

    async def rebuild_async(
        self,
        populate: PopulateAsync,
        *,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Asynchronous form of :meth:`rebuild`.

        The guard is held until ``populate`` completes, including while it is
        suspended. Setting ``cancel`` aborts the wait for the guard or the
        next I/O step of the session with :class:`OperationCancelledError`;
        the session is closed either way.
        """
        async with self._exclusive_async(cancel, "rebuild") as buffer:
            buffer.truncate()
            session = ArchiveSession(
                buffer, cancel=cancel, owner_closed=self._is_closed
            )
            try:
                await populate(session)
            finally:
                session.close()
            self._log_rebuilt(session, buffer)

    def access(self, consume: typ.Callable[[typ.BinaryIO], T]) -> T:
        """Call ``consume`` with the archive stream positioned at its start.

        The stream must be read before ``consume`` returns and must not be
        kept afterwards. The value returned by ``consume`` is passed through.
        """
        with self._exclusive() as buffer:
            return consume(buffer)

    async def access_async(
        self,
        consume: typ.Callable[[typ.BinaryIO], cabc.Awaitable[T]],
        *,
        cancel: asyncio.Event | None = None,
    ) -> T:
        """Asynchronous form of :meth:`access`."""
        async with self._exclusive_async(cancel, "access") as buffer:
            _raise_if_cancelled(cancel, "access")
            return await consume(buffer)

    def close(self) -> None:
        """Release the backing buffer. Calling it again does nothing.

        When an operation is in progress the buffer is released as soon as
        that operation finishes. A session handed out by a running rebuild
        is disposed at once: its next ingestion call raises
        :class:`SessionDisposedError`.
        """
        with self._state:
            if self._closed:
                return
            self._closed = True
            if not self._active:
                self._buffer.close()
        LOGGER.debug("closed build context")
