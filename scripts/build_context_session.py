"""Archive sessions that populate a build context's backing buffer.

A session layers a ``tarfile`` writer over a ``gzip`` writer over a buffer it
does not own. Entries are framed by hand (header, data in bounded chunks,
block padding) so file contents can be streamed without loading whole files
into memory and so the asynchronous variants can suspend between chunks.

Closing a session finishes the tar stream first and the gzip stream second,
leaving the borrowed buffer open for the owning
:class:`~build_context.BuildContext` to rewind and read.

Example
-------
>>> import io
>>> buffer = io.BytesIO()
>>> with ArchiveSession(buffer) as session:
...     session.add_entry("/Dockerfile", b"FROM scratch\\n")
>>> buffer.getvalue()[:2]
b'\\x1f\\x8b'
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import posixpath
import tarfile
import typing as typ
from pathlib import Path

from build_context_errors import OperationCancelledError, SessionDisposedError

if typ.TYPE_CHECKING:
    import types

__all__ = ["CHUNK_SIZE", "ArchiveSession"]

LOGGER = logging.getLogger(__name__)

# Bounds peak memory per entry rather than tuning throughput.
CHUNK_SIZE: typ.Final[int] = 1024

TAR_FORMAT: typ.Final[int] = tarfile.PAX_FORMAT
TAR_ENCODING: typ.Final[str] = "utf-8"


def _list_directory(real_path: Path) -> tuple[list[Path], list[Path]]:
    """Return the files and subdirectories directly beneath ``real_path``.

    Both lists are sorted by name so repeated walks over an unchanged tree
    produce the same entry order. Anything that does not resolve to a
    directory, including dangling symlinks, is listed as a file so that
    reading it reports the underlying failure.
    """
    with os.scandir(real_path) as entries:
        ordered = sorted(entries, key=lambda entry: entry.name)
    files = [Path(entry.path) for entry in ordered if not entry.is_dir()]
    directories = [Path(entry.path) for entry in ordered if entry.is_dir()]
    return files, directories


class _TarEntryWriter:
    """Write tar entries piecewise onto an open ``TarFile``.

    ``TarFile.addfile`` needs the whole payload as a file object; this writer
    splits the same work into header, data and padding steps.
    """

    def __init__(self, tar: tarfile.TarFile) -> None:
        self._tar = tar
        self._current: tarfile.TarInfo | None = None
        self._written = 0

    def put_next_entry(self, virtual_path: str, size: int) -> None:
        if self._current is not None:
            message = f"entry {self._current.name!r} was not closed"
            raise RuntimeError(message)
        info = tarfile.TarInfo(name=virtual_path)
        info.size = size
        header = info.tobuf(self._tar.format, self._tar.encoding, self._tar.errors)
        self._tar.fileobj.write(header)
        self._tar.offset += len(header)
        self._current = info
        self._written = 0

    def write(self, chunk: bytes) -> None:
        if self._current is None:
            message = "no tar entry is open"
            raise RuntimeError(message)
        if self._written + len(chunk) > self._current.size:
            message = (
                f"entry {self._current.name!r} exceeds its declared size of "
                f"{self._current.size} bytes"
            )
            raise OSError(message)
        self._tar.fileobj.write(chunk)
        self._written += len(chunk)

    def close_entry(self) -> tarfile.TarInfo:
        info = self._current
        if info is None:
            message = "no tar entry is open"
            raise RuntimeError(message)
        if self._written != info.size:
            message = (
                f"short read for {info.name!r}: expected {info.size} bytes, "
                f"got {self._written}"
            )
            raise OSError(message)
        blocks, remainder = divmod(info.size, tarfile.BLOCKSIZE)
        if remainder:
            self._tar.fileobj.write(tarfile.NUL * (tarfile.BLOCKSIZE - remainder))
            blocks += 1
        self._tar.offset += blocks * tarfile.BLOCKSIZE
        self._tar.members.append(info)
        self._current = None
        return info


class ArchiveSession:
    """Populate one gzip-compressed tar stream over a borrowed buffer.

    Parameters
    ----------
    buffer : typing.BinaryIO
        Writable stream positioned where the archive should start. The
        session writes through it but never closes it.
    cancel : asyncio.Event, optional
        Event consulted by the ``*_async`` methods before every suspension
        point. When set, the pending call raises
        :class:`~build_context_errors.OperationCancelledError`.
    owner_closed : Callable[[], bool], optional
        Reports whether the owner of ``buffer`` has been closed. Once it
        returns ``True`` the session counts as disposed even though its own
        streams are still open.

    Notes
    -----
    Entries appear in the archive in the order the ``add_*`` calls are made.
    Once :meth:`close` has run, or ``owner_closed`` reports true, every
    ingestion method raises
    :class:`~build_context_errors.SessionDisposedError`.
    """

    def __init__(
        self,
        buffer: typ.BinaryIO,
        *,
        cancel: asyncio.Event | None = None,
        owner_closed: typ.Callable[[], bool] | None = None,
    ) -> None:
        self._cancel = cancel
        self._owner_closed = owner_closed
        self._closed = False
        self._entry_count = 0
        self._gzip = gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0)
        self._tar = tarfile.open(  # noqa: SIM115 - closed by ``close``
            fileobj=self._gzip,
            mode="w",
            format=TAR_FORMAT,
            encoding=TAR_ENCODING,
        )
        self._entries = _TarEntryWriter(self._tar)

    def __enter__(self) -> ArchiveSession:
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
        """``True`` once the session or the context owning its buffer is closed."""
        if self._closed:
            return True
        return self._owner_closed is not None and self._owner_closed()

    @property
    def entry_count(self) -> int:
        """Number of entries completed so far."""
        return self._entry_count

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionDisposedError

    def _checkpoint(self, operation: str) -> None:
        """Guard a suspension point of an asynchronous operation."""
        self._ensure_open()
        if self._cancel is not None and self._cancel.is_set():
            raise OperationCancelledError(operation)

    def _finish_entry(self) -> None:
        info = self._entries.close_entry()
        self._entry_count += 1
        LOGGER.debug("added %s (%d bytes)", info.name, info.size)

    def add_file(self, real_path: str | os.PathLike[str], virtual_path: str) -> None:
        """Stream the file at ``real_path`` into the archive as ``virtual_path``.

        Raises
        ------
        FileNotFoundError
            ``real_path`` does not exist.
        OSError
            Reading failed or the file shrank while it was being read.
        SessionDisposedError
            The session has been closed.
        """
        self._ensure_open()
        with Path(real_path).open("rb") as handle:
            size = os.fstat(handle.fileno()).st_size
            self._entries.put_next_entry(virtual_path, size)
            remaining = size
            while remaining:
                self._ensure_open()
                chunk = handle.read(min(CHUNK_SIZE, remaining))
                if not chunk:
                    break
                self._entries.write(chunk)
                remaining -= len(chunk)
            self._finish_entry()

    async def add_file_async(
        self, real_path: str | os.PathLike[str], virtual_path: str
    ) -> None:
        """Asynchronous form of :meth:`add_file`; reads run off the event loop."""
        self._checkpoint("add_file_async")
        with Path(real_path).open("rb") as handle:
            size = os.fstat(handle.fileno()).st_size
            self._entries.put_next_entry(virtual_path, size)
            remaining = size
            while remaining:
                self._checkpoint("add_file_async")
                chunk = await asyncio.to_thread(
                    handle.read, min(CHUNK_SIZE, remaining)
                )
                if not chunk:
                    break
                self._checkpoint("add_file_async")
                self._entries.write(chunk)
                remaining -= len(chunk)
            self._finish_entry()

    def add_directory(
        self,
        real_path: str | os.PathLike[str],
        virtual_path: str,
        *,
        recurse: bool = True,
    ) -> None:
        """Add every file under ``real_path`` beneath ``virtual_path``.

        Files directly in ``real_path`` are added first, then each
        subdirectory when ``recurse`` is true. Both are visited in name order.
        """
        self._ensure_open()
        files, directories = _list_directory(Path(real_path))
        for file_path in files:
            self.add_file(file_path, posixpath.join(virtual_path, file_path.name))
        if not recurse:
            return
        for directory in directories:
            self.add_directory(
                directory,
                posixpath.join(virtual_path, directory.name),
                recurse=True,
            )

    async def add_directory_async(
        self,
        real_path: str | os.PathLike[str],
        virtual_path: str,
        *,
        recurse: bool = True,
    ) -> None:
        """Asynchronous form of :meth:`add_directory`."""
        self._checkpoint("add_directory_async")
        files, directories = await asyncio.to_thread(_list_directory, Path(real_path))
        for file_path in files:
            await self.add_file_async(
                file_path, posixpath.join(virtual_path, file_path.name)
            )
        if not recurse:
            return
        for directory in directories:
            await self.add_directory_async(
                directory,
                posixpath.join(virtual_path, directory.name),
                recurse=True,
            )

    def add_entry(self, virtual_path: str, data: bytes) -> None:
        """Add ``data`` as a single entry named ``virtual_path``.

        The session stays open afterwards, exactly as with :meth:`add_file`.
        """
        self._ensure_open()
        payload = bytes(data)
        self._entries.put_next_entry(virtual_path, len(payload))
        self._entries.write(payload)
        self._finish_entry()

    async def add_entry_async(self, virtual_path: str, data: bytes) -> None:
        """Asynchronous form of :meth:`add_entry`."""
        self._checkpoint("add_entry_async")
        await asyncio.sleep(0)
        self._checkpoint("add_entry_async")
        self.add_entry(virtual_path, data)

    def close(self) -> None:
        """Finish the tar stream, then the gzip stream. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            self._tar.close()
        finally:
            self._gzip.close()
        LOGGER.debug("closed archive session after %d entries", self._entry_count)
