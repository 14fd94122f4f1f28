# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Run protoc with an in-process callback standing in for the plugin.

:class:`Protoc` assembles a compiler command line that registers the
stand-in executable (:mod:`protoc_callback.plugin`) as the plugin for the
``callback`` output kind and passes a fresh rendezvous key as its option.
While the compiler runs, the host waits for the stand-in to connect, hands
the forwarded CodeGeneratorRequest bytes to the callback, and sends the
returned CodeGeneratorResponse bytes back.

Example::

    Protoc().proto_path("protos").proto_file("protos/foo.proto").out_dir("gen").run(
        10.0, lambda request: build_response(request)
    )

Every wait (connection, forwarded request, callback, compiler exit) shares one
deadline.  When it elapses the compiler's whole process group is killed.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from types import TracebackType
from typing import BinaryIO, Self

from protoc_callback._common import (
    PLUGIN_ENV,
    PLUGIN_NAME,
    PROTOC_ENV,
    CallbackError,
    ChannelError,
    Deadline,
    InvocationTimeout,
    ProcessError,
    RendezvousError,
    ScaffoldError,
    protoc_logger,
    stderr_logger,
)
from protoc_callback.channel import (
    MAX_KEY_BYTES,
    REQUEST,
    RESPONSE,
    ChannelPair,
    RendezvousEndpoint,
    recv_message,
    send_message,
)

__all__ = [
    "GenerateCallback",
    "Protoc",
    "make_launcher",
]

GenerateCallback = Callable[[bytes], bytes]
"""Receives serialized CodeGeneratorRequest bytes, returns CodeGeneratorResponse bytes."""

_POLL_INTERVAL = 0.05
_STDERR_KEEP_LINES = 200
_PACKAGE_ROOT = Path(__file__).resolve().parent.parent
_SESSION_PREFIX = "protoc-cb-"
_SESSION_SOCKET = "s.sock"
_SHORT_TMP = "/tmp"
_RESERVED_FLAGS = (f"--{PLUGIN_NAME}_out", f"--{PLUGIN_NAME}_opt", f"--plugin=protoc-gen-{PLUGIN_NAME}")


def make_launcher(path: str | os.PathLike[str], argv: Iterable[str], *, env: Mapping[str, str] | None = None) -> Path:
    """Write an executable ``/bin/sh`` script that execs *argv* with its own arguments appended.

    The compiler only accepts a plugin *path*, so this is how a Python entry
    point gets registered as a plugin.
    """
    lines = ["#!/bin/sh"]
    for name, value in (env or {}).items():
        lines.append(f"{name}={shlex.quote(value)}; export {name}")
    lines.append(f'exec {shlex.join(argv)} "$@"')
    launcher = Path(path)
    launcher.write_text("\n".join(lines) + "\n")
    launcher.chmod(0o755)
    return launcher


def _default_plugin(directory: str) -> str:
    """Locate the stand-in: ``$PROTOC_CALLBACK_PLUGIN`` or a launcher for this interpreter."""
    configured = os.environ.get(PLUGIN_ENV)
    if configured:
        return configured
    pythonpath = os.pathsep.join(p for p in (str(_PACKAGE_ROOT), os.environ.get("PYTHONPATH", "")) if p)
    path = Path(directory) / f"protoc-gen-{PLUGIN_NAME}"
    try:
        launcher = make_launcher(path, [sys.executable, "-m", "protoc_callback.plugin"], env={"PYTHONPATH": pythonpath})
    except OSError as e:
        raise ScaffoldError(f"cannot write plugin launcher {path}: {e}") from e
    return str(launcher)


def _session_parent() -> str | None:
    """Parent for session directories: the default temp dir unless its socket key would be too long."""
    longest_key = os.path.join(tempfile.gettempdir(), _SESSION_PREFIX + "x" * 8, _SESSION_SOCKET)
    if len(os.fsencode(longest_key)) <= MAX_KEY_BYTES:
        return None
    protoc_logger.debug("Temp dir too long for a socket address, using %s", _SHORT_TMP)
    return _SHORT_TMP


def check_extra_arg(value: str) -> str:
    """Reject raw compiler arguments that would override the callback plugin wiring."""
    for flag in _RESERVED_FLAGS:
        if value == flag or value.startswith(flag + "="):
            raise ValueError(f"{flag} is reserved for the callback plugin: {value!r}")
    return value


# ---------------------------------------------------------------------------
# Compiler stderr
# ---------------------------------------------------------------------------


class _StderrCollector:
    """Drain compiler stderr line-by-line on a daemon thread.

    Each line is forwarded to ``protoc_callback.protoc.stderr`` and the most
    recent ones are kept for error messages.
    """

    __slots__ = ("_lines", "_pipe", "_thread")

    def __init__(self, pipe: BinaryIO) -> None:
        """Start draining *pipe*."""
        self._pipe = pipe
        self._lines: deque[str] = deque(maxlen=_STDERR_KEEP_LINES)
        self._thread = threading.Thread(target=self._drain, name="protoc-stderr", daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        try:
            for raw_line in self._pipe:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    stderr_logger.info(line)
                    self._lines.append(line)
        except (OSError, ValueError):
            pass
        except Exception:
            protoc_logger.debug("Unexpected error in stderr drain", exc_info=True)

    def close(self, timeout: float = 5.0) -> None:
        """Wait for the drain to finish, then close the pipe."""
        self._thread.join(timeout=timeout)
        with contextlib.suppress(OSError, ValueError):
            self._pipe.close()

    def text(self) -> str:
        """Captured stderr so far."""
        return "\n".join(self._lines)


# ---------------------------------------------------------------------------
# Invocation session
# ---------------------------------------------------------------------------


class _InvocationSession:
    """State of one compiler run: process, rendezvous endpoint, channel pair, deadline.

    Use as a context manager; leaving it kills and reaps the compiler if it
    is still running, closes every socket, and removes the session directory.
    """

    __slots__ = ("_deadline", "_directory", "_endpoint", "_pair", "_proc", "_stderr")

    def __init__(self, deadline: Deadline) -> None:
        """Create the session directory and bind the rendezvous endpoint in it."""
        self._deadline = deadline
        self._proc: subprocess.Popen[bytes] | None = None
        self._stderr: _StderrCollector | None = None
        self._pair: ChannelPair | None = None
        try:
            self._directory = tempfile.mkdtemp(prefix=_SESSION_PREFIX, dir=_session_parent())
        except OSError as e:
            raise ScaffoldError(f"cannot create session directory: {e}") from e
        try:
            self._endpoint = RendezvousEndpoint.create(self._directory, _SESSION_SOCKET)
        except BaseException:
            shutil.rmtree(self._directory, ignore_errors=True)
            raise

    @property
    def directory(self) -> str:
        """Private directory holding the rendezvous socket and the default launcher."""
        return self._directory

    @property
    def key(self) -> str:
        """The rendezvous key handed to the stand-in."""
        return self._endpoint.key

    def spawn(self, cmd: list[str]) -> None:
        """Start the compiler in its own process group without waiting for it."""
        if protoc_logger.isEnabledFor(logging.DEBUG):
            protoc_logger.debug("Spawning compiler: %s", shlex.join(cmd))
        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessError(f"failed to spawn {cmd[0]!r}: {e}") from e
        assert self._proc.stderr is not None
        self._stderr = _StderrCollector(self._proc.stderr)
        protoc_logger.debug("Compiler spawned: pid=%d", self._proc.pid)

    def serve(self, callback: GenerateCallback) -> None:
        """Drive the round trip and check the compiler's exit status.

        Raises:
            InvocationTimeout: The deadline elapsed at any stage.
            CallbackError: The callback raised or returned a non-bytes value.
            ChannelError: The request or response could not be transferred.
            RendezvousError: The stand-in never connected properly.
            ProcessError: The compiler exited with a non-zero status.

        """
        pair = self._await_connection()
        if pair is None:
            returncode = self._await_exit()
            if returncode != 0:
                raise self._process_error(returncode)
            raise RendezvousError("compiler exited without launching the plugin")

        self._pair = pair
        failure: CallbackError | ChannelError | None = None
        try:
            request = recv_message(pair.request, REQUEST, self._deadline)
            protoc_logger.debug("Request received: %d bytes", len(request))
            response = self._invoke(callback, request)
            send_message(pair.response, response, RESPONSE, self._deadline)
            protoc_logger.debug("Response sent: %d bytes", len(response))
        except (CallbackError, ChannelError) as e:
            failure = e
        finally:
            # Without a response the stand-in sees EOF and fails on its own.
            pair.close()

        returncode = self._await_exit()
        if failure is not None:
            raise failure
        if returncode != 0:
            raise self._process_error(returncode)

    def _await_connection(self) -> ChannelPair | None:
        """Race the inbound connection against compiler exit; None if the compiler exited first."""
        assert self._proc is not None
        while True:
            if self._endpoint.wait_connection(min(self._deadline.remaining(), _POLL_INTERVAL)):
                return self._endpoint.accept(self._deadline)
            if self._proc.poll() is not None:
                if self._endpoint.wait_connection(0):
                    return self._endpoint.accept(self._deadline)
                protoc_logger.debug("Compiler exited before connecting: returncode=%d", self._proc.returncode)
                return None
            self._deadline.check("the plugin to connect")

    def _invoke(self, callback: GenerateCallback, request: bytes) -> bytes:
        """Call *callback* on a worker thread, bounded by the remaining deadline."""
        done = threading.Event()
        result: list[object] = []
        errors: list[Exception] = []

        def target() -> None:
            try:
                result.append(callback(request))
            except Exception as e:
                errors.append(e)
            finally:
                done.set()

        worker = threading.Thread(target=target, name="protoc-callback", daemon=True)
        worker.start()
        if not done.wait(self._deadline.remaining()):
            raise InvocationTimeout(
                f"timed out after {self._deadline.timeout:g}s waiting for the generation callback"
            )
        if errors:
            raise CallbackError(f"generation callback failed: {errors[0]!r}") from errors[0]
        if not result:
            raise CallbackError("generation callback exited without returning")
        response = result[0]
        if not isinstance(response, bytes | bytearray | memoryview):
            raise CallbackError(f"generation callback must return bytes, got {type(response).__name__}")
        return bytes(response)

    def _await_exit(self) -> int:
        assert self._proc is not None
        try:
            return self._proc.wait(timeout=self._deadline.remaining())
        except subprocess.TimeoutExpired:
            raise InvocationTimeout(
                f"timed out after {self._deadline.timeout:g}s waiting for the compiler to exit"
            ) from None

    def _process_error(self, returncode: int) -> ProcessError:
        assert self._proc is not None
        if self._stderr is not None:
            self._stderr.close()
        stderr = self._stderr.text() if self._stderr is not None else ""
        return ProcessError(f"compiler exited with status {returncode}", returncode=returncode, stderr=stderr)

    def _kill(self) -> None:
        """SIGKILL the compiler's process group (compiler and stand-in) and reap the compiler."""
        assert self._proc is not None
        protoc_logger.warning("Killing compiler process group: pid=%d", self._proc.pid)
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._proc.pid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            self._proc.kill()
        self._proc.wait()

    def close(self) -> None:
        """Release everything the session owns; safe to call more than once."""
        if self._pair is not None:
            self._pair.close()
        self._endpoint.close()
        if self._proc is not None:
            if self._proc.poll() is None:
                self._kill()
            if self._stderr is not None:
                self._stderr.close()
            protoc_logger.debug("Compiler reaped: pid=%d, returncode=%s", self._proc.pid, self._proc.returncode)
        try:
            shutil.rmtree(self._directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ScaffoldError(f"cannot remove session directory {self._directory!r}: {e}") from e

    def __enter__(self) -> Self:
        """Enter the session."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Tear the session down on every exit path."""
        self.close()


# ---------------------------------------------------------------------------
# Protoc builder
# ---------------------------------------------------------------------------


class Protoc:
    """Configure-then-run builder for one compiler invocation with a callback plugin.

    All configuration methods return ``self`` so calls can be chained.
    """

    __slots__ = ("_args", "_out_dir", "_plugin_path", "_proto_files", "_proto_paths", "_protoc_path")

    def __init__(self) -> None:
        """Start with no inputs and the default compiler and stand-in."""
        self._protoc_path: str | None = None
        self._plugin_path: str | None = None
        self._out_dir: str | None = None
        self._proto_files: list[str] = []
        self._proto_paths: list[str] = []
        self._args: list[str] = []

    def protoc_path(self, path: str | os.PathLike[str]) -> Self:
        """Compiler executable (default: ``$PROTOC``, else ``protoc`` on ``PATH``)."""
        self._protoc_path = os.fspath(path)
        return self

    def plugin_path(self, path: str | os.PathLike[str]) -> Self:
        """Stand-in executable (default: ``$PROTOC_CALLBACK_PLUGIN``, else a generated launcher)."""
        self._plugin_path = os.fspath(path)
        return self

    def out_dir(self, path: str | os.PathLike[str]) -> Self:
        """Directory the compiler writes generated files into."""
        self._out_dir = os.fspath(path)
        return self

    def proto_file(self, path: str | os.PathLike[str]) -> Self:
        """Add one input file."""
        self._proto_files.append(os.fspath(path))
        return self

    def proto_files(self, paths: Iterable[str | os.PathLike[str]]) -> Self:
        """Add several input files."""
        self._proto_files.extend(os.fspath(p) for p in paths)
        return self

    def proto_path(self, path: str | os.PathLike[str]) -> Self:
        """Add one import search path."""
        self._proto_paths.append(os.fspath(path))
        return self

    def proto_paths(self, paths: Iterable[str | os.PathLike[str]]) -> Self:
        """Add several import search paths."""
        self._proto_paths.extend(os.fspath(p) for p in paths)
        return self

    def arg(self, value: str) -> Self:
        """Pass an extra raw argument to the compiler, before the input files.

        Raises:
            ValueError: *value* is one of the flags that register the callback plugin.

        """
        self._args.append(check_extra_arg(value))
        return self

    def _validate(self) -> None:
        if self._out_dir is None:
            raise ValueError("out_dir is required")
        if not self._proto_files:
            raise ValueError("at least one proto_file is required")

    def build_command(self, plugin: str, key: str) -> list[str]:
        """Return the compiler argv registering *plugin* and passing *key* as its option."""
        self._validate()
        protoc = self._protoc_path or os.environ.get(PROTOC_ENV) or "protoc"
        return [
            protoc,
            f"--plugin=protoc-gen-{PLUGIN_NAME}={plugin}",
            f"--{PLUGIN_NAME}_out={self._out_dir}",
            f"--{PLUGIN_NAME}_opt={key}",
            *(f"--proto_path={p}" for p in self._proto_paths),
            *self._args,
            *self._proto_files,
        ]

    def run(self, timeout: float, callback: GenerateCallback) -> None:
        """Run the compiler once, answering its plugin request with *callback*.

        Generated files end up in :meth:`out_dir`.  The call blocks until the
        compiler exits, *timeout* seconds elapse, or something fails; the
        compiler is never left running when this returns or raises.

        Args:
            timeout: Seconds allowed for the whole invocation, callback included.
            callback: Maps serialized CodeGeneratorRequest bytes to serialized
                CodeGeneratorResponse bytes.  Raising reports failure.

        Raises:
            ValueError: Missing ``out_dir`` or input files.
            InvocationTimeout: The deadline elapsed.
            CallbackError: *callback* raised (original exception chained).
            ProcessError: The compiler failed to spawn or exited non-zero.
            RendezvousError: The stand-in never connected.
            ChannelError: Request or response transfer failed.

        """
        self._validate()
        deadline = Deadline(timeout)
        with _InvocationSession(deadline) as session:
            plugin = self._plugin_path or _default_plugin(session.directory)
            session.spawn(self.build_command(plugin, session.key))
            session.serve(callback)
        protoc_logger.debug("Invocation finished in %.3fs", timeout - deadline.remaining())
