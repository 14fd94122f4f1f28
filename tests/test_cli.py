# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the protoc-callback CLI tool."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from protoc_callback import __version__
from protoc_callback.cli import app
from protoc_callback.fields import WireType, encode_len_field, encode_tag, encode_varint
from tests.conftest import make_request

runner = CliRunner()


def _invoke(*args: str) -> Any:
    """Run the CLI in-process."""
    return runner.invoke(app, list(args))


# ---------------------------------------------------------------------------
# Global options
# ---------------------------------------------------------------------------


class TestGlobalOptions:
    """--version / help."""

    @pytest.mark.parametrize("flag", ["--version", "-V"])
    def test_version(self, flag: str) -> None:
        """Print the version and exit cleanly."""
        result = _invoke(flag)
        assert result.exit_code == 0
        assert f"protoc-callback {__version__}" in result.output

    def test_no_args_shows_help(self) -> None:
        """Bare invocation prints usage."""
        result = _invoke()
        assert "generate" in result.output
        assert "scan" in result.output


# ---------------------------------------------------------------------------
# scan
# ---------------------------------------------------------------------------


class TestScan:
    """Listing and extracting wire fields."""

    def test_lists_fields(self, tmp_path: Path) -> None:
        """Every top-level field is listed with its wire type."""
        path = tmp_path / "request.bin"
        path.write_bytes(make_request(parameter="/tmp/k.sock", files={"a.proto": "a"}))
        result = _invoke("scan", str(path))
        assert result.exit_code == 0, f"Failed: {result.output}"
        lines = result.output.splitlines()
        assert "1\tLEN\t7 bytes" in lines
        assert "2\tLEN\t11 bytes" in lines
        assert any(line.startswith("15\tLEN\t") for line in lines)

    def test_describes_scalar_types(self, tmp_path: Path) -> None:
        """Varints print as integers, fixed-width values as hex."""
        path = tmp_path / "scalars.bin"
        path.write_bytes(
            encode_tag(1, WireType.VARINT)
            + encode_varint(300)
            + encode_tag(2, WireType.I32)
            + b"\x01\x00\x00\x00"
        )
        result = _invoke("scan", str(path))
        assert result.exit_code == 0, f"Failed: {result.output}"
        assert result.output.splitlines() == ["1\tVARINT\t300", "2\tI32\t0x00000001"]

    def test_field(self, tmp_path: Path) -> None:
        """--field prints the last value of that field."""
        path = tmp_path / "request.bin"
        path.write_bytes(make_request(parameter="first") + encode_len_field(2, "second"))
        result = _invoke("scan", str(path), "--field", "2")
        assert result.exit_code == 0, f"Failed: {result.output}"
        assert result.output.strip() == "second"

    def test_field_missing(self, tmp_path: Path) -> None:
        """An absent field is an error."""
        path = tmp_path / "request.bin"
        path.write_bytes(make_request(files={"a.proto": "a"}))
        result = _invoke("scan", str(path), "-f", "2")
        assert result.exit_code == 1
        assert "field 2 not present" in result.output

    def test_malformed(self, tmp_path: Path) -> None:
        """Malformed input reports the fault offset."""
        path = tmp_path / "bad.bin"
        path.write_bytes(b"\x12\x05ab")
        result = _invoke("scan", str(path))
        assert result.exit_code == 1
        assert "at byte 2" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        """An unreadable input file is an error."""
        result = _invoke("scan", str(tmp_path / "nope.bin"))
        assert result.exit_code == 1
        assert "Error:" in result.output


# ---------------------------------------------------------------------------
# generate
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups required")
class TestGenerate:
    """Running the compiler with a named callback."""

    def test_generates(self, fake_protoc: str, proto_dir: Path, tmp_path: Path) -> None:
        """Outputs land in --out-dir, which is created if needed."""
        out_dir = tmp_path / "gen" / "nested"
        result = _invoke(
            "generate",
            "tests.callbacks:describe_inputs",
            str(proto_dir / "empty.proto"),
            "-I",
            str(proto_dir),
            "-o",
            str(out_dir),
            "--protoc",
            fake_protoc,
        )
        assert result.exit_code == 0, f"Failed: {result.output}"
        assert (out_dir / "empty.proto.txt").read_text() == "package empty\n"

    def test_callback_fails(self, fake_protoc: str, proto_dir: Path, tmp_path: Path) -> None:
        """A raising callback exits 1 with the error."""
        result = _invoke(
            "generate",
            "tests.callbacks:explode",
            str(proto_dir / "empty.proto"),
            "-I",
            str(proto_dir),
            "-o",
            str(tmp_path / "out"),
            "--protoc",
            fake_protoc,
            "--timeout",
            "30",
        )
        assert result.exit_code == 1
        assert "callback exploded" in result.output

    def test_missing_input(self, fake_protoc: str, tmp_path: Path) -> None:
        """Compiler failures exit 1 with its diagnostics."""
        result = _invoke(
            "generate",
            "tests.callbacks:describe_inputs",
            "missing.proto",
            "-o",
            str(tmp_path),
            "--protoc",
            fake_protoc,
        )
        assert result.exit_code == 1
        assert "File not found" in result.output

    @pytest.mark.parametrize(
        "reference",
        [
            "no_colon",
            ":fn",
            "tests.callbacks:",
            "no_such_module_xyz:fn",
            "tests.callbacks:missing",
            "tests.callbacks:NOT_CALLABLE",
        ],
    )
    def test_bad_callback_reference(self, reference: str, tmp_path: Path) -> None:
        """Unresolvable callbacks are usage errors."""
        result = _invoke("generate", reference, "a.proto", "-o", str(tmp_path))
        assert result.exit_code == 2
