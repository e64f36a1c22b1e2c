#!/usr/bin/env -S uv run python
"""Build, run and probe the container harness image.

The harness packages its own deployment directory together with an embedded
Dockerfile into an in-memory build context, builds an image from it, and
starts a container whose daemon can be reached through a published port.

Commands
--------
server
    Rebuild the build context, replace any previous image and containers,
    build the image and start a container.
daemon
    Serve the line protocol on the container port (the image entry point).
client
    Connect to the published host port and relay console input.
info
    Print details about the running interpreter and host.

Examples
--------
Build and start the harness container::

    python scripts/run_container_harness.py server

Talk to it once it is running::

    python scripts/run_container_harness.py client

Configuration may also come from the environment, for example
``CONTAINER_HARNESS_IMAGE_TAG`` or ``CONTAINER_HARNESS_TIMEOUT_SECS``. The log
level is read from ``CONTAINER_HARNESS_LOG_LEVEL``.
"""

# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "cyclopts>=2.9,<4",
#     "plumbum",
# ]
# ///
from __future__ import annotations

import asyncio
import logging
import os
import platform
import sys
import typing as typ
from pathlib import Path

import cyclopts
from build_context import ArchiveSession, BuildContext
from container_host import (
    DEFAULT_ENGINE_TIMEOUT_SECS,
    ContainerEngineError,
    ContainerHost,
)
from cyclopts import App, Parameter
from harness_client import run_client
from harness_daemon import run_daemon
from harness_ports import PortUsage, bound_ports, container_port, host_port

LOGGER = logging.getLogger(__name__)

DEPLOYMENT_DIR: typ.Final[Path] = Path(__file__).resolve().parent
DOCKERFILE_RESOURCE: typ.Final[Path] = DEPLOYMENT_DIR / "resources" / "Dockerfile"
DOCKERFILE_VIRTUAL_PATH: typ.Final[str] = "/Dockerfile"

DEFAULT_IMAGE_TAG = "container-harness:runtime-build"
DEFAULT_CLIENT_HOST = "127.0.0.1"
DAEMON_BIND_HOST = "0.0.0.0"  # noqa: S104 - reached via a published port
DEFAULT_LOG_LEVEL = "INFO"

app = App(config=cyclopts.config.Env("CONTAINER_HARNESS_", command=False))


def configure_logging(level: str | None = None) -> None:
    """Configure root logging from ``level`` or ``CONTAINER_HARNESS_LOG_LEVEL``."""
    resolved = (level or os.environ.get("CONTAINER_HARNESS_LOG_LEVEL") or "").upper()
    if not resolved:
        resolved = DEFAULT_LOG_LEVEL
    if resolved not in logging.getLevelNamesMapping():
        message = f"unknown log level: {resolved!r}"
        raise SystemExit(message)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_dockerfile(path: Path = DOCKERFILE_RESOURCE) -> bytes:
    """Return the complete contents of the embedded Dockerfile.

    Raises
    ------
    OSError
        Fewer bytes were read than the file reports as its size.
    """
    with path.open("rb") as handle:
        expected = os.fstat(handle.fileno()).st_size
        contents = handle.read()
    if len(contents) != expected:
        message = (
            f"short read for {path}: expected {expected} bytes, got {len(contents)}"
        )
        raise OSError(message)
    return contents


async def populate_context(
    session: ArchiveSession, *, root: Path, dockerfile: bytes
) -> None:
    """Add ``root`` at ``/`` followed by ``dockerfile`` at ``/Dockerfile``."""
    await session.add_directory_async(root, "/")
    await session.add_entry_async(DOCKERFILE_VIRTUAL_PATH, dockerfile)


async def deploy_server(
    *,
    image_tag: str,
    timeout_secs: int,
    pull: bool = False,
    root: Path = DEPLOYMENT_DIR,
) -> str:
    """Build the harness image from ``root`` and start a container from it.

    Returns
    -------
    str
        The id of the started container.
    """
    host = ContainerHost(timeout_secs=timeout_secs)
    dockerfile = load_dockerfile(DOCKERFILE_RESOURCE)

    async def _populate(session: ArchiveSession) -> None:
        await populate_context(session, root=root, dockerfile=dockerfile)

    with BuildContext() as context:
        await context.rebuild_async(_populate)
        await asyncio.to_thread(host.remove_stale, image_tag)
        output = await host.build_image_async(context, image_tag, pull=pull)
    if output:
        print(output, end="")
    return await asyncio.to_thread(host.run_container, image_tag, bound_ports())


@app.command
def server(
    *,
    image_tag: typ.Annotated[
        str,
        Parameter(env_var="CONTAINER_HARNESS_IMAGE_TAG"),
    ] = DEFAULT_IMAGE_TAG,
    timeout_secs: typ.Annotated[
        int,
        Parameter(env_var="CONTAINER_HARNESS_TIMEOUT_SECS"),
    ] = DEFAULT_ENGINE_TIMEOUT_SECS,
    pull: typ.Annotated[
        bool,
        Parameter(env_var="CONTAINER_HARNESS_PULL"),
    ] = False,
) -> None:
    """Build the harness image and start a container from it.

    Parameters
    ----------
    image_tag : str, optional
        Tag given to the built image. Any container created from an image with
        the same tag is removed first, as is the image itself.
    timeout_secs : int, optional
        Timeout in seconds for each container engine command.
    pull : bool, optional
        Always attempt to pull a newer version of the base image.
    """
    if timeout_secs <= 0:
        message = "timeout-secs must be a positive integer"
        raise SystemExit(message)
    try:
        container_id = asyncio.run(
            deploy_server(image_tag=image_tag, timeout_secs=timeout_secs, pull=pull)
        )
    except OSError as error:
        LOGGER.exception("build context not ready")
        message = f"build context not ready: {error}"
        raise SystemExit(message) from error
    except ContainerEngineError as error:
        raise SystemExit(str(error)) from error
    print(f"Started container {container_id}")


@app.command
def daemon(
    *,
    port: typ.Annotated[
        int | None,
        Parameter(env_var="CONTAINER_HARNESS_DAEMON_PORT"),
    ] = None,
) -> None:
    """Serve the line protocol until a client sends ``stop``."""
    listen_port = port
    if listen_port is None:
        listen_port = container_port(PortUsage.HOST_COMMUNICATION)
    asyncio.run(run_daemon(DAEMON_BIND_HOST, listen_port))


@app.command
def client(
    *,
    host: typ.Annotated[
        str,
        Parameter(env_var="CONTAINER_HARNESS_HOST"),
    ] = DEFAULT_CLIENT_HOST,
    port: typ.Annotated[
        int | None,
        Parameter(env_var="CONTAINER_HARNESS_CLIENT_PORT"),
    ] = None,
) -> None:
    """Relay console input to the daemon published on the host."""
    target_port = port
    if target_port is None:
        target_port = host_port(PortUsage.HOST_COMMUNICATION)
    if asyncio.run(run_client(host, target_port)) != 0:
        message = f"could not connect to {host}:{target_port}"
        raise SystemExit(message)


def describe_environment() -> list[str]:
    """Return human-readable facts about the current process and host."""
    return [
        f"Current directory: {Path.cwd()}",
        f"Processor count: {os.cpu_count()}",
        f"Process path: {sys.executable}",
        f"Python version: {platform.python_version()}",
        f"OS version: {platform.platform()}",
    ]


@app.command
def info() -> None:
    """Print details about the interpreter and host."""
    for line in describe_environment():
        print(line)


def main() -> None:
    """Configure logging and dispatch to the requested command."""
    configure_logging()
    app()


if __name__ == "__main__":
    main()
