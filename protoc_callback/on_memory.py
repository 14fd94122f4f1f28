"""In-memory front end for :class:`~protoc_callback.protoc.Protoc`.

The compiler only reads inputs from, and writes outputs to, the
filesystem.  :class:`ProtocOnMemory` hides that: virtual sources are
written into a temporary input scaffold, the compiler writes into a
temporary output scaffold, and the generated files come back as
``(name, content)`` pairs.  Both scaffolds are removed before ``run``
returns or raises.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path, PurePosixPath
from typing import Self

from protoc_callback._common import ScaffoldError, scaffold_logger
from protoc_callback.protoc import GenerateCallback, Protoc, check_extra_arg

__all__ = ["ProtocOnMemory"]


def _check_name(name: str) -> str:
    path = PurePosixPath(name)
    if not name or path.is_absolute() or ".." in path.parts or str(path) == ".":
        raise ValueError(f"virtual file name must be a relative path inside the scaffold, got {name!r}")
    return str(path)


@contextlib.contextmanager
def _scaffold(prefix: str) -> Iterator[Path]:
    """Create a temporary directory and remove it on exit, whatever happens inside."""
    try:
        directory = Path(tempfile.mkdtemp(prefix=prefix))
    except OSError as e:
        raise ScaffoldError(f"cannot create scaffold directory: {e}") from e
    if scaffold_logger.isEnabledFor(logging.DEBUG):
        scaffold_logger.debug("Scaffold created: %s", directory)
    try:
        yield directory
    finally:
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ScaffoldError(f"cannot remove scaffold directory {directory}: {e}") from e
        scaffold_logger.debug("Scaffold removed: %s", directory)


def _write_sources(root: Path, files: dict[str, str]) -> None:
    try:
        for name, content in files.items():
            target = root / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content.encode("utf-8"))
    except OSError as e:
        raise ScaffoldError(f"cannot write virtual source into {root}: {e}") from e


def _read_outputs(root: Path) -> list[tuple[str, str]]:
    outputs: list[tuple[str, str]] = []
    try:
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                path = Path(dirpath) / filename
                name = path.relative_to(root).as_posix()
                outputs.append((name, path.read_bytes().decode("utf-8")))
    except OSError as e:
        raise ScaffoldError(f"cannot read generated files from {root}: {e}") from e
    except UnicodeDecodeError as e:
        raise ScaffoldError(f"generated file is not valid UTF-8: {e}") from e
    outputs.sort()
    return outputs


class ProtocOnMemory:
    """Run the compiler over virtual sources and collect generated files in memory.

    Example::

        files = (
            ProtocOnMemory()
            .add_file("empty.proto", 'syntax = "proto3";\\npackage empty;\\n')
            .run(3.0, generate)
        )
        for name, content in files:
            ...

    """

    __slots__ = ("_args", "_files", "_plugin_path", "_protoc_path")

    def __init__(self) -> None:
        """Start with no virtual files."""
        self._protoc_path: str | None = None
        self._plugin_path: str | None = None
        self._args: list[str] = []
        self._files: dict[str, str] = {}

    def protoc_path(self, path: str | os.PathLike[str]) -> Self:
        """Compiler executable; see :meth:`Protoc.protoc_path`."""
        self._protoc_path = os.fspath(path)
        return self

    def plugin_path(self, path: str | os.PathLike[str]) -> Self:
        """Stand-in executable; see :meth:`Protoc.plugin_path`."""
        self._plugin_path = os.fspath(path)
        return self

    def arg(self, value: str) -> Self:
        """Extra raw compiler argument; see :meth:`Protoc.arg`."""
        self._args.append(check_extra_arg(value))
        return self

    def add_file(self, name: str, content: str) -> Self:
        """Add a virtual source; *name* is what the compiler sees as the file name.

        Adding the same name twice replaces the earlier content.
        """
        self._files[_check_name(name)] = content
        return self

    def run(self, timeout: float, callback: GenerateCallback) -> list[tuple[str, str]]:
        """Compile the virtual sources with *callback* as the plugin.

        Returns:
            Generated ``(name, content)`` pairs sorted by name; names are
            relative POSIX paths.

        Raises:
            ValueError: No virtual files were added.
            ScaffoldError: A scaffold directory could not be created,
                populated, read, or removed.
            BridgeError: Anything :meth:`Protoc.run` raises.

        """
        if not self._files:
            raise ValueError("at least one virtual file is required")
        with _scaffold("protoc-cb-in-") as in_dir, _scaffold("protoc-cb-out-") as out_dir:
            _write_sources(in_dir, self._files)
            protoc = self._protoc_for(in_dir, out_dir)
            protoc.run(timeout, callback)
            outputs = _read_outputs(out_dir)
        scaffold_logger.debug("Collected %d generated file(s)", len(outputs))
        return outputs

    def _protoc_for(self, in_dir: Path, out_dir: Path) -> Protoc:
        protoc = Protoc()
        if self._protoc_path is not None:
            protoc.protoc_path(self._protoc_path)
        if self._plugin_path is not None:
            protoc.plugin_path(self._plugin_path)
        for value in self._args:
            protoc.arg(value)
        return protoc.proto_path(in_dir).proto_files(sorted(self._files)).out_dir(out_dir)
