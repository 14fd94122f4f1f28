# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for protoc-callback tests."""

from __future__ import annotations

import os
import shutil
import sys
import tempfile
import time
from collections.abc import Iterator, Mapping
from pathlib import Path

import pytest
from google.protobuf.compiler import plugin_pb2

from protoc_callback import make_launcher

_FAKE_PROTOC = str(Path(__file__).parent / "fake_protoc.py")
REPO_ROOT = Path(__file__).resolve().parent.parent

EMPTY_PROTO = """
syntax = "proto3";
package empty;
"""


def _short_dir(prefix: str) -> str:
    """Return a short temporary directory; Unix socket paths are limited to ~104 bytes."""
    return tempfile.mkdtemp(prefix=f"pcb-{prefix}-", dir="/tmp")


def plugin_cmd() -> list[str]:
    """Command that runs the stand-in executable from this checkout."""
    return [sys.executable, "-m", "protoc_callback.plugin"]


def plugin_env() -> dict[str, str]:
    """Environment making this checkout importable in child processes."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(REPO_ROOT), env.get("PYTHONPATH", "")) if p)
    return env


def make_request(parameter: str | None = None, files: Mapping[str, str] | None = None) -> bytes:
    """Serialize a CodeGeneratorRequest with the given parameter and (name → package) files."""
    request = plugin_pb2.CodeGeneratorRequest()
    if parameter is not None:
        request.parameter = parameter
    for name, package in (files or {}).items():
        request.file_to_generate.append(name)
        descriptor = request.proto_file.add()
        descriptor.name = name
        descriptor.package = package
    return request.SerializeToString()


def make_response(files: Mapping[str, str]) -> bytes:
    """Serialize a CodeGeneratorResponse holding *files* (name → content)."""
    response = plugin_pb2.CodeGeneratorResponse()
    for name, content in files.items():
        response.file.add(name=name, content=content)
    return response.SerializeToString()


def parse_request(data: bytes) -> plugin_pb2.CodeGeneratorRequest:
    """Parse serialized CodeGeneratorRequest bytes."""
    return plugin_pb2.CodeGeneratorRequest.FromString(data)


def process_alive(pid: int) -> bool:
    """Return True if *pid* exists and is not a zombie."""
    stat = Path(f"/proc/{pid}/stat")
    if Path("/proc").is_dir():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except FileNotFoundError:
            return False
        return state not in ("Z", "X")
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def wait_gone(pids: list[int], timeout: float = 5.0) -> list[int]:
    """Poll until every pid is gone; return the ones still alive after *timeout*."""
    deadline = time.monotonic() + timeout
    alive = list(pids)
    while alive and time.monotonic() < deadline:
        alive = [pid for pid in alive if process_alive(pid)]
        if alive:
            time.sleep(0.05)
    return alive


@pytest.fixture()
def short_dir() -> Iterator[str]:
    """A short-path scratch directory for rendezvous sockets."""
    path = _short_dir("t")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(scope="session")
def fake_protoc(tmp_path_factory: pytest.TempPathFactory) -> str:
    """Executable path of the fake compiler."""
    directory = tmp_path_factory.mktemp("fake-protoc")
    return str(make_launcher(directory / "protoc", [sys.executable, _FAKE_PROTOC]))


@pytest.fixture()
def real_protoc() -> str:
    """Path of a real protoc, or skip."""
    path = os.environ.get("PROTOC") or shutil.which("protoc")
    if not path:
        pytest.skip("protoc not installed")
    return path


@pytest.fixture()
def proto_dir(tmp_path: Path) -> Path:
    """A search path holding ``empty.proto``."""
    directory = tmp_path / "protos"
    directory.mkdir()
    (directory / "empty.proto").write_text(EMPTY_PROTO)
    return directory


@pytest.fixture()
def created_dirs(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Record every bridge directory (``protoc-cb-*``) created through ``tempfile.mkdtemp``."""
    created: list[str] = []
    original = tempfile.mkdtemp

    def recording_mkdtemp(*args: object, **kwargs: object) -> str:
        path = original(*args, **kwargs)  # type: ignore[call-overload]
        if os.path.basename(path).startswith("protoc-cb-"):
            created.append(path)
        return path

    monkeypatch.setattr(tempfile, "mkdtemp", recording_mkdtemp)
    return created
