"""Shared fixtures for build context and harness tests."""

from __future__ import annotations

import importlib
import io
import sys
import tarfile
import typing as typ
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).resolve().parents[1]
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

if typ.TYPE_CHECKING:
    from types import ModuleType

ArchiveEntries = list[tuple[str, bytes]]


def _load_module_from_scripts(module_name: str) -> ModuleType:
    """Import ``module_name`` from ``scripts``, reusing an already loaded copy."""
    if not (SCRIPTS_DIR / f"{module_name}.py").is_file():  # pragma: no cover
        msg = f"{module_name!r} is not a module in {SCRIPTS_DIR}"
        raise RuntimeError(msg)
    return importlib.import_module(module_name)


@pytest.fixture(scope="module")
def build_context_module() -> ModuleType:
    """Provide the ``build_context`` facade module."""
    return _load_module_from_scripts("build_context")


@pytest.fixture(scope="module")
def session_module() -> ModuleType:
    """Provide the ``build_context_session`` module."""
    return _load_module_from_scripts("build_context_session")


@pytest.fixture(scope="module")
def container_host_module() -> ModuleType:
    """Provide the ``container_host`` module."""
    return _load_module_from_scripts("container_host")


@pytest.fixture(scope="module")
def harness_daemon_module() -> ModuleType:
    """Provide the ``harness_daemon`` module."""
    return _load_module_from_scripts("harness_daemon")


@pytest.fixture(scope="module")
def harness_client_module() -> ModuleType:
    """Provide the ``harness_client`` module."""
    return _load_module_from_scripts("harness_client")


@pytest.fixture(scope="module")
def harness_ports_module() -> ModuleType:
    """Provide the ``harness_ports`` module."""
    return _load_module_from_scripts("harness_ports")


@pytest.fixture(scope="module")
def run_container_harness_module() -> ModuleType:
    """Load ``run_container_harness`` as a real module for CLI tests."""
    return _load_module_from_scripts("run_container_harness")


def read_archive(payload: bytes) -> ArchiveEntries:
    """Return ``(name, contents)`` for every entry of a gzip tar ``payload``."""
    entries: ArchiveEntries = []
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        for member in tar.getmembers():
            extracted = tar.extractfile(member)
            data = extracted.read() if extracted is not None else b""
            entries.append((member.name, data))
    return entries


@pytest.fixture
def archive_reader() -> typ.Callable[[bytes], ArchiveEntries]:
    """Provide :func:`read_archive` to tests."""
    return read_archive


@pytest.fixture
def context_tree(tmp_path: Path) -> Path:
    """Create ``a.txt`` (``xyz``) and ``sub/b.txt`` (``z``) under a fresh root."""
    root = tmp_path / "tree"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"xyz")
    (root / "sub" / "b.txt").write_bytes(b"z")
    return root
