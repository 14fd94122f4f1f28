# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, deadlines, and loggers shared by the bridge."""

from __future__ import annotations

import logging
import os
import time

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PARAMETER_FIELD_NUMBER = 2
"""``CodeGeneratorRequest.parameter`` (see google/protobuf/compiler/plugin.proto)."""

PLUGIN_NAME = "callback"
"""Output kind the stand-in is registered under (``--callback_out``)."""

PROTOC_ENV = "PROTOC"
PLUGIN_ENV = "PROTOC_CALLBACK_PLUGIN"
IPC_DEBUG_ENV = "PROTOC_CALLBACK_IPC_DEBUG"


def env_flag(name: str) -> bool:
    """Return True when the environment variable *name* is set to a truthy value."""
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


# ---------------------------------------------------------------------------
# Logger hierarchy: protoc_callback.*
# ---------------------------------------------------------------------------

_logger = logging.getLogger("protoc_callback")

protoc_logger = logging.getLogger("protoc_callback.protoc")
"""Invocation lifecycle (spawn, rendezvous, callback, reap)."""

stderr_logger = logging.getLogger("protoc_callback.protoc.stderr")
"""Lines the compiler (and the stand-in) write to stderr."""

channel_logger = logging.getLogger("protoc_callback.channel")
"""Rendezvous endpoint and channel traffic."""

scaffold_logger = logging.getLogger("protoc_callback.on_memory")
"""Temporary scaffold directories."""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class BridgeError(Exception):
    """Base class for every failure surfaced by ``protoc_callback``."""


class WireFormatError(BridgeError, ValueError):
    """Serialized message bytes could not be walked at the wire level."""

    def __init__(self, message: str, offset: int) -> None:
        """Record the byte offset at which decoding failed."""
        super().__init__(f"{message} (at byte {offset})")
        self.offset = offset


class MissingParameterError(BridgeError):
    """The generation request carries no rendezvous key."""


class RendezvousError(BridgeError):
    """Connecting to, or accepting on, the rendezvous endpoint failed."""


class ChannelError(BridgeError):
    """A channel message could not be sent, received, or decoded."""


class ChannelClosedError(ChannelError):
    """The peer closed a channel without sending its one message."""


class InvocationTimeout(BridgeError, TimeoutError):
    """The invocation deadline elapsed."""


class CallbackError(BridgeError):
    """The caller-supplied generation callback raised.

    The original exception is available as ``__cause__``.
    """


class ProcessError(BridgeError):
    """The compiler could not be spawned or exited unsuccessfully.

    Attributes:
        returncode: Exit status, or ``None`` when the process never started.
        stderr: Captured compiler stderr (may be truncated).

    """

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        """Build the message, appending captured stderr when present."""
        full = f"{message}\n{stderr.rstrip()}" if stderr.strip() else message
        super().__init__(full)
        self.returncode = returncode
        self.stderr = stderr


class ScaffoldError(BridgeError):
    """Creating, populating, reading, or removing a temporary scaffold failed."""


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------


class Deadline:
    """A single monotonic deadline shared by every wait in one invocation."""

    __slots__ = ("_expires_at", "timeout")

    def __init__(self, timeout: float) -> None:
        """Start the clock; *timeout* is in seconds and must be positive."""
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout!r}")
        self.timeout = timeout
        self._expires_at = time.monotonic() + timeout

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        """Whether the deadline has passed."""
        return time.monotonic() >= self._expires_at

    def check(self, waiting_for: str) -> float:
        """Return the remaining budget or raise :class:`InvocationTimeout`."""
        left = self.remaining()
        if left <= 0:
            raise InvocationTimeout(f"timed out after {self.timeout:g}s waiting for {waiting_for}")
        return left
