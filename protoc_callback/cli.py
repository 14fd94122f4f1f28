"""Command-line interface for protoc-callback.

Usage::

    protoc-callback generate mypkg.gen:generate protos/foo.proto -I protos -o gen
    protoc-callback scan request.bin
    protoc-callback scan request.bin --field 2

"""

from __future__ import annotations

import importlib
import logging
import sys
from pathlib import Path
from typing import Annotated

import typer

from protoc_callback import __version__
from protoc_callback._common import BridgeError
from protoc_callback.fields import WireType, find_last_bytes, iter_fields
from protoc_callback.protoc import GenerateCallback, Protoc

app = typer.Typer(
    name="protoc-callback",
    help="Run protoc with a Python function as the code generator plugin.",
    add_completion=False,
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"protoc-callback {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log bridge activity to stderr")] = False,
    version: Annotated[
        bool, typer.Option("--version", "-V", help="Show version and exit", callback=_version_callback, is_eager=True)
    ] = False,
) -> None:
    """Configure logging."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_callback(target_name: str) -> GenerateCallback:
    """Resolve ``module:function`` to a callable."""
    module_name, sep, attr = target_name.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter(f"expected module:function, got {target_name!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"cannot import {module_name!r}: {e}") from e
    target: object = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise typer.BadParameter(f"{module_name!r} has no attribute {attr!r}") from None
    if not callable(target):
        raise typer.BadParameter(f"{target_name!r} is not callable")
    return target  # type: ignore[return-value]


def _describe_value(wire_type: WireType, value: int | bytes) -> str:
    if isinstance(value, int):
        return str(value)
    if wire_type in (WireType.LEN, WireType.SGROUP):
        return f"{len(value)} bytes"
    return "0x" + value[::-1].hex()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def generate(
    callback: Annotated[str, typer.Argument(help="Generation callback as module:function")],
    files: Annotated[list[str], typer.Argument(help="Input .proto files")],
    proto_path: Annotated[list[str] | None, typer.Option("--proto-path", "-I", help="Import search path")] = None,
    out_dir: Annotated[Path, typer.Option("--out-dir", "-o", help="Output directory")] = Path("."),
    protoc: Annotated[str | None, typer.Option("--protoc", help="Compiler executable")] = None,
    timeout: Annotated[float, typer.Option("--timeout", "-t", help="Seconds allowed for the run")] = 30.0,
) -> None:
    """Run the compiler with CALLBACK answering its plugin request."""
    generate_fn = _load_callback(callback)
    builder = Protoc().out_dir(out_dir).proto_files(files).proto_paths(proto_path or [])
    if protoc:
        builder.protoc_path(protoc)
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        builder.run(timeout, generate_fn)
    except (BridgeError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


@app.command()
def scan(
    path: Annotated[str, typer.Argument(help="Serialized message file, or - for stdin")],
    field: Annotated[
        int | None, typer.Option("--field", "-f", help="Print the last string value of this field")
    ] = None,
) -> None:
    """List the top-level wire fields of a serialized protobuf message."""
    try:
        data = sys.stdin.buffer.read() if path == "-" else Path(path).read_bytes()
    except OSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    try:
        if field is not None:
            value = find_last_bytes(data, field)
            if value is None:
                typer.echo(f"Error: field {field} not present", err=True)
                raise typer.Exit(1)
            typer.echo(value.decode("utf-8", errors="replace"))
            return
        for wire_field in iter_fields(data):
            typer.echo(
                f"{wire_field.number}\t{wire_field.wire_type.name}\t"
                f"{_describe_value(wire_field.wire_type, wire_field.value)}"
            )
    except BridgeError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
