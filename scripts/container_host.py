"""Container engine operations driven through the ``docker`` CLI.

:class:`ContainerHost` wraps the handful of engine calls the harness needs:
pulling base images, building an image from a :class:`~build_context.BuildContext`
streamed on standard input, clearing out stale containers and images, and
starting the freshly built image with its ports published.

Every command runs through ``plumbum.local`` with a timeout. Non-zero exit
codes are logged with their captured output and raised as
:class:`ContainerEngineError`.
"""

from __future__ import annotations

import asyncio
import dataclasses as dc
import logging
import os
import shlex
import typing as typ

from plumbum import local
from plumbum.commands import CommandNotFound
from plumbum.commands.processes import ProcessTimedOut

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from build_context import BuildContext
    from harness_ports import ContainerPortBinding

__all__ = [
    "DEFAULT_ENGINE_TIMEOUT_SECS",
    "ContainerEngineError",
    "ContainerHost",
    "EngineResult",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_ENGINE_CLI = "docker"
DEFAULT_ENGINE_TIMEOUT_SECS = 600


class ContainerEngineError(RuntimeError):
    """Raised when a container engine command cannot run or fails."""


@dc.dataclass(frozen=True)
class EngineResult:
    """Outcome of one engine CLI invocation."""

    command: list[str]
    return_code: int
    stdout: str
    stderr: str


class ContainerHost:
    """Issue container engine commands through a CLI executable.

    Parameters
    ----------
    cli : str, optional
        Engine executable to invoke. Defaults to ``docker``.
    timeout_secs : int, optional
        Upper bound applied to every command, in seconds.
    """

    def __init__(
        self,
        *,
        cli: str = DEFAULT_ENGINE_CLI,
        timeout_secs: int = DEFAULT_ENGINE_TIMEOUT_SECS,
    ) -> None:
        if timeout_secs <= 0:
            message = "timeout_secs must be a positive integer"
            raise ValueError(message)
        self.cli = cli
        self.timeout_secs = timeout_secs

    def _run(
        self, args: cabc.Sequence[str], *, stdin: bytes | None = None
    ) -> EngineResult:
        command = [self.cli, *args]
        joined = shlex.join(command)
        LOGGER.debug("running %s", joined)
        try:
            invocation = local[self.cli][list(args)]
            if stdin is not None:
                invocation = invocation << stdin
            return_code, stdout, stderr = invocation.run(
                retcode=None,
                timeout=self.timeout_secs,
            )
        except CommandNotFound as error:
            message = f"{self.cli} not found on PATH; unable to run {joined}"
            raise ContainerEngineError(message) from error
        except ProcessTimedOut as error:
            LOGGER.exception(
                "%s timed out after %s seconds", joined, self.timeout_secs
            )
            message = f"{joined} timed out after {self.timeout_secs} seconds"
            raise ContainerEngineError(message) from error

        result = EngineResult(
            command=command,
            return_code=return_code,
            stdout=stdout,
            stderr=stderr,
        )
        if result.return_code != 0:
            _report_failure(result)
        return result

    def pull_image(self, name: str, tag: str | None = None) -> None:
        """Pull ``name:tag`` from its registry; ``tag`` defaults to ``latest``."""
        reference = f"{name}:{tag or 'latest'}"
        self._run(["pull", reference])
        LOGGER.info("pulled %s", reference)

    def _build_args(self, tag: str, *, pull: bool) -> list[str]:
        args = ["build", "--rm", "--tag", tag]
        if pull:
            args.append("--pull")
        args.append("-")
        return args

    def build_image(
        self, context: BuildContext, tag: str, *, pull: bool = False
    ) -> str:
        """Build ``tag`` from ``context`` and return the engine's build output.

        The archive is streamed to ``docker build -`` while the context is
        held, so no rebuild can interleave with the submission.
        """
        args = self._build_args(tag, pull=pull)

        def _submit(stream: typ.BinaryIO) -> EngineResult:
            return self._run(args, stdin=stream.read())

        result = context.access(_submit)
        LOGGER.info("built image %s", tag)
        return result.stdout

    async def build_image_async(
        self, context: BuildContext, tag: str, *, pull: bool = False
    ) -> str:
        """Asynchronous form of :meth:`build_image`."""
        args = self._build_args(tag, pull=pull)

        async def _submit(stream: typ.BinaryIO) -> EngineResult:
            payload = stream.read()
            return await asyncio.to_thread(self._run, args, stdin=payload)

        result = await context.access_async(_submit)
        LOGGER.info("built image %s", tag)
        return result.stdout

    def list_containers(self, image: str) -> list[str]:
        """Return the ids of all containers created from ``image``."""
        result = self._run(["ps", "--all", "--format", "{{.ID}} {{.Image}}"])
        matches: list[str] = []
        for line in result.stdout.splitlines():
            container_id, _, container_image = line.strip().partition(" ")
            if container_id and container_image == image:
                matches.append(container_id)
        return matches

    def remove_container(self, container_id: str) -> None:
        """Force-remove ``container_id``, stopping it first when running."""
        self._run(["rm", "--force", container_id])
        LOGGER.info("removed container %s", container_id)

    def list_images(self, tag: str) -> list[str]:
        """Return ``[tag]`` when an image carries ``tag``, else an empty list."""
        result = self._run(["images", "--format", "{{.Repository}}:{{.Tag}}"])
        lines = (line.strip() for line in result.stdout.splitlines())
        return [line for line in lines if line == tag]

    def remove_image(self, tag: str) -> None:
        """Delete the image tagged ``tag``."""
        self._run(["rmi", tag])
        LOGGER.info("removed image %s", tag)

    def remove_stale(self, tag: str) -> None:
        """Remove every container built from ``tag`` and then the image itself."""
        for container_id in self.list_containers(tag):
            self.remove_container(container_id)
        for image in self.list_images(tag):
            self.remove_image(image)

    def run_container(
        self, image: str, ports: cabc.Iterable[ContainerPortBinding] = ()
    ) -> str:
        """Create and start a detached, auto-removed container of ``image``.

        Returns
        -------
        str
            The id the engine assigned to the new container.
        """
        args = ["run", "--detach", "--rm"]
        for binding in ports:
            args.extend(["--publish", binding.publish_spec()])
        args.append(image)
        result = self._run(args)
        container_id = result.stdout.strip()
        LOGGER.info("started container %s from %s", container_id, image)
        return container_id


def _report_failure(result: EngineResult) -> typ.NoReturn:
    """Log diagnostics for a failed engine command and raise."""
    joined = shlex.join(result.command)
    LOGGER.error("container engine command failed: %s", joined)
    if result.stdout:
        LOGGER.error("engine stdout:%s%s", os.linesep, result.stdout)
    if result.stderr:
        LOGGER.error("engine stderr:%s%s", os.linesep, result.stderr)
    message = f"{joined} failed (exit code {result.return_code})"
    raise ContainerEngineError(message)
