"""CLI wiring tests for the container harness entry point."""

from __future__ import annotations

import logging
import typing as typ

import pytest

if typ.TYPE_CHECKING:
    from types import ModuleType


@pytest.fixture
def captured_deploys(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
) -> list[dict[str, object]]:
    """Replace ``deploy_server`` with a recorder that reports a fixed id."""
    calls: list[dict[str, object]] = []

    async def fake_deploy_server(**kwargs: object) -> str:
        calls.append(kwargs)
        return "abc123"

    monkeypatch.setattr(
        run_container_harness_module, "deploy_server", fake_deploy_server
    )
    return calls


def test_server_uses_defaults(
    run_container_harness_module: ModuleType,
    captured_deploys: list[dict[str, object]],
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Confirm the server command deploys with default arguments."""
    run_container_harness_module.app(["server"])

    assert captured_deploys == [
        {
            "image_tag": run_container_harness_module.DEFAULT_IMAGE_TAG,
            "timeout_secs": run_container_harness_module.DEFAULT_ENGINE_TIMEOUT_SECS,
            "pull": False,
        }
    ]
    assert "Started container abc123" in capsys.readouterr().out


def test_server_honours_environment(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
    captured_deploys: list[dict[str, object]],
) -> None:
    """Ensure environment variables influence the deployment."""
    monkeypatch.setenv("CONTAINER_HARNESS_IMAGE_TAG", "demo:env")
    monkeypatch.setenv("CONTAINER_HARNESS_TIMEOUT_SECS", "60")

    run_container_harness_module.app(["server"])

    assert captured_deploys == [
        {"image_tag": "demo:env", "timeout_secs": 60, "pull": False}
    ]


def test_server_cli_overrides_env(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
    captured_deploys: list[dict[str, object]],
) -> None:
    """Ensure CLI arguments override environment configuration."""
    monkeypatch.setenv("CONTAINER_HARNESS_IMAGE_TAG", "demo:env")
    monkeypatch.setenv("CONTAINER_HARNESS_TIMEOUT_SECS", "60")

    run_container_harness_module.app(
        ["server", "--image-tag", "demo:cli", "--timeout-secs", "5", "--pull"]
    )

    assert captured_deploys == [
        {"image_tag": "demo:cli", "timeout_secs": 5, "pull": True}
    ]


def test_server_rejects_non_positive_timeout(
    run_container_harness_module: ModuleType,
    captured_deploys: list[dict[str, object]],
) -> None:
    """A zero timeout aborts before anything is deployed."""
    with pytest.raises(SystemExit, match="positive integer"):
        run_container_harness_module.server(timeout_secs=0)

    assert captured_deploys == []


def test_server_reports_unready_build_context(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Filesystem failures while rebuilding abort with a clear message."""

    async def failing_deploy(**_kwargs: object) -> str:
        message = "no such directory"
        raise FileNotFoundError(message)

    monkeypatch.setattr(run_container_harness_module, "deploy_server", failing_deploy)

    with caplog.at_level("ERROR"), pytest.raises(SystemExit) as excinfo:
        run_container_harness_module.server()

    assert "build context not ready" in str(excinfo.value)
    assert "build context not ready" in caplog.text


def test_server_reports_engine_failures(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
    container_host_module: ModuleType,
) -> None:
    """Engine errors are converted to ``SystemExit``."""

    async def failing_deploy(**_kwargs: object) -> str:
        message = "docker build failed (exit code 1)"
        raise container_host_module.ContainerEngineError(message)

    monkeypatch.setattr(run_container_harness_module, "deploy_server", failing_deploy)

    with pytest.raises(SystemExit, match="exit code 1"):
        run_container_harness_module.server()


def test_daemon_listens_on_container_port(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
) -> None:
    """The daemon binds every interface on the container port by default."""
    observed: list[tuple[str, int]] = []

    async def fake_run_daemon(host: str, port: int) -> None:
        observed.append((host, port))

    monkeypatch.setattr(run_container_harness_module, "run_daemon", fake_run_daemon)

    run_container_harness_module.app(["daemon"])
    run_container_harness_module.app(["daemon", "--port", "6000"])

    assert observed == [("0.0.0.0", 5000), ("0.0.0.0", 6000)]


def test_client_dials_published_host_port(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
) -> None:
    """The client targets the loopback host port unless told otherwise."""
    observed: list[tuple[str, int]] = []

    async def fake_run_client(host: str, port: int) -> int:
        observed.append((host, port))
        return 0

    monkeypatch.setattr(run_container_harness_module, "run_client", fake_run_client)
    monkeypatch.setenv("CONTAINER_HARNESS_HOST", "10.0.0.5")

    run_container_harness_module.app(["client"])

    assert observed == [("10.0.0.5", 11000)]


def test_client_failure_exits(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
) -> None:
    """A failed connection turns into ``SystemExit``."""

    async def fake_run_client(_host: str, _port: int) -> int:
        return 1

    monkeypatch.setattr(run_container_harness_module, "run_client", fake_run_client)

    with pytest.raises(SystemExit, match="could not connect"):
        run_container_harness_module.client()


def test_info_prints_environment(
    run_container_harness_module: ModuleType,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """The info command lists interpreter and host details."""
    run_container_harness_module.app(["info"])

    output = capsys.readouterr().out
    for label in (
        "Current directory:",
        "Processor count:",
        "Process path:",
        "Python version:",
        "OS version:",
    ):
        assert label in output


def test_configure_logging_reads_environment(
    monkeypatch: pytest.MonkeyPatch,
    run_container_harness_module: ModuleType,
) -> None:
    """Unknown levels abort; known ones are accepted."""
    recorded: list[dict[str, object]] = []
    monkeypatch.setattr(
        logging, "basicConfig", lambda **kwargs: recorded.append(kwargs)
    )

    monkeypatch.setenv("CONTAINER_HARNESS_LOG_LEVEL", "debug")
    run_container_harness_module.configure_logging()

    monkeypatch.setenv("CONTAINER_HARNESS_LOG_LEVEL", "chatty")
    with pytest.raises(SystemExit, match="unknown log level"):
        run_container_harness_module.configure_logging()

    assert recorded[0]["level"] == "DEBUG"
