# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Single-shot channel pair and the rendezvous endpoint that delivers it.

Wire Protocol
-------------
The host binds a Unix domain socket whose path *is* the rendezvous key.
The stand-in connects once, creates two ``socketpair()`` conduits and
passes one end of each to the host with ``SCM_RIGHTS``::

    Stand-in→Host (rendezvous): handshake token + fds [request, response]

After that the rendezvous socket is closed and unlinked.  Each conduit then
carries exactly one message, written as a complete Arrow IPC stream and
terminated by a write shutdown::

    Stand-in→Host (request):  [IPC stream: payload schema + 1 batch + EOS] EOF
    Host→Stand-in (response): [IPC stream: payload schema + 1 batch + EOS] EOF

The batch has a single ``payload: binary`` row and carries
``protoc_callback.channel`` custom metadata naming the conduit.  A receiver
that sees EOF before any byte knows the peer gave up without answering.
"""

from __future__ import annotations

import contextlib
import logging
import os
import select
import socket
import sys
import uuid
from dataclasses import dataclass

import pyarrow as pa
import structlog
from pyarrow import ipc

from protoc_callback._common import (
    IPC_DEBUG_ENV,
    ChannelClosedError,
    ChannelError,
    Deadline,
    InvocationTimeout,
    RendezvousError,
    channel_logger,
    env_flag,
)

__all__ = [
    "MAX_KEY_BYTES",
    "REQUEST",
    "RESPONSE",
    "ChannelPair",
    "RendezvousEndpoint",
    "connect",
    "decode_message",
    "encode_message",
    "recv_message",
    "send_message",
]

REQUEST = "request"
RESPONSE = "response"

CHANNEL_KEY = b"protoc_callback.channel"
_HANDSHAKE = b"protoc-callback/1"
_PAYLOAD_SCHEMA = pa.schema([pa.field("payload", pa.binary(), nullable=False)])
_RECV_SIZE = 65536

# sun_path is 104 bytes on BSD/macOS and 108 on Linux, NUL included.
MAX_KEY_BYTES = 103

_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger | None:
    """Return the stderr IPC tracer, or ``None`` unless tracing is enabled."""
    global _ipc_log
    if not env_flag(IPC_DEBUG_ENV):
        return None
    if _ipc_log is None:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="ipc", pid=os.getpid())
    return _ipc_log


# ---------------------------------------------------------------------------
# Message framing
# ---------------------------------------------------------------------------


def encode_message(payload: bytes, channel: str) -> bytes:
    """Serialize *payload* as a one-row Arrow IPC stream tagged with *channel*."""
    batch = pa.RecordBatch.from_arrays([pa.array([bytes(payload)], type=pa.binary())], schema=_PAYLOAD_SCHEMA)
    sink = pa.BufferOutputStream()
    with ipc.new_stream(sink, _PAYLOAD_SCHEMA) as writer:
        writer.write_batch(batch, custom_metadata=pa.KeyValueMetadata({CHANNEL_KEY: channel.encode()}))
    return sink.getvalue().to_pybytes()


def decode_message(data: bytes, channel: str) -> bytes:
    """Inverse of :func:`encode_message`.

    Raises:
        ChannelClosedError: If *data* is empty.
        ChannelError: If *data* is not exactly one payload batch for *channel*.

    """
    if not data:
        raise ChannelClosedError(f"{channel} channel closed without a message")
    try:
        with ipc.open_stream(pa.BufferReader(data)) as reader:
            try:
                batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
            except StopIteration:
                raise ChannelError(f"no record batch found in {channel} message") from None
            try:
                reader.read_next_batch()
            except StopIteration:
                pass
            else:
                raise ChannelError(f"expected a single record batch in {channel} message, found multiple")
    except pa.ArrowException as e:
        raise ChannelError(f"error reading {channel} message: {e}") from e

    if not batch.schema.equals(_PAYLOAD_SCHEMA) or batch.num_rows != 1:
        raise ChannelError(f"unexpected {channel} message shape: {batch.schema} with {batch.num_rows} rows")
    tag = custom_metadata.get(CHANNEL_KEY) if custom_metadata is not None else None
    if tag != channel.encode():
        raise ChannelError(f"expected a {channel} message, got {tag!r}")
    payload: bytes = batch.column(0)[0].as_py()
    return payload


def send_message(sock: socket.socket, payload: bytes, channel: str, deadline: Deadline | None = None) -> None:
    """Write the one message for *channel* and shut down the write side."""
    data = encode_message(payload, channel)
    log = _get_ipc_log()
    if log is not None:
        log.debug("channel_send", channel=channel, payload_bytes=len(payload), wire_bytes=len(data))
    try:
        if deadline is not None:
            sock.settimeout(deadline.check(f"the {channel} message to be accepted"))
        sock.sendall(data)
        sock.shutdown(socket.SHUT_WR)
    except InvocationTimeout:
        raise
    except TimeoutError:
        assert deadline is not None
        raise InvocationTimeout(
            f"timed out after {deadline.timeout:g}s sending the {channel} message"
        ) from None
    except OSError as e:
        raise ChannelError(f"failed to send {channel} message: {e}") from e


def recv_message(sock: socket.socket, channel: str, deadline: Deadline | None = None) -> bytes:
    """Read the one message for *channel* until EOF and decode it.

    Without a *deadline* this blocks for as long as the peer keeps the
    channel open.
    """
    chunks: list[bytes] = []
    try:
        while True:
            if deadline is not None:
                sock.settimeout(deadline.check(f"the {channel} message"))
            chunk = sock.recv(_RECV_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
    except InvocationTimeout:
        raise
    except TimeoutError:
        assert deadline is not None
        raise InvocationTimeout(f"timed out after {deadline.timeout:g}s waiting for the {channel} message") from None
    except OSError as e:
        raise ChannelError(f"failed to receive {channel} message: {e}") from e
    data = b"".join(chunks)
    log = _get_ipc_log()
    if log is not None:
        log.debug("channel_recv", channel=channel, wire_bytes=len(data))
    return decode_message(data, channel)


# ---------------------------------------------------------------------------
# Channel pair
# ---------------------------------------------------------------------------


@dataclass
class ChannelPair:
    """The request and response conduits of one invocation.

    On the stand-in side ``request`` is written and ``response`` is read;
    on the host side it is the other way round.
    """

    request: socket.socket
    response: socket.socket

    def close(self) -> None:
        """Close both conduits."""
        self.request.close()
        self.response.close()


def connect(key: str) -> ChannelPair:
    """Rendezvous with the host named by *key* and hand it a fresh channel pair.

    Returns the stand-in's ends of the pair.  The rendezvous connection is
    closed before returning.
    """
    rendezvous = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        rendezvous.connect(key)
    except OSError as e:
        rendezvous.close()
        raise RendezvousError(f"cannot connect to rendezvous endpoint {key!r}: {e}") from e

    req_local, req_remote = socket.socketpair()
    res_local, res_remote = socket.socketpair()
    try:
        socket.send_fds(rendezvous, [_HANDSHAKE], [req_remote.fileno(), res_remote.fileno()])
    except OSError as e:
        req_local.close()
        res_local.close()
        raise RendezvousError(f"failed to pass channel pair to {key!r}: {e}") from e
    finally:
        req_remote.close()
        res_remote.close()
        rendezvous.close()

    log = _get_ipc_log()
    if log is not None:
        log.debug("rendezvous_connected", key=key)
    return ChannelPair(request=req_local, response=res_local)


class RendezvousEndpoint:
    """One-shot listening socket bound to a freshly generated rendezvous key."""

    __slots__ = ("_closed", "_key", "_sock")

    def __init__(self, key: str, sock: socket.socket) -> None:
        """Wrap an already bound and listening socket."""
        self._key = key
        self._sock = sock
        self._closed = False

    @classmethod
    def create(cls, directory: str | os.PathLike[str], name: str | None = None) -> RendezvousEndpoint:
        """Bind a new endpoint inside *directory*.

        *name* defaults to a random unique file name; pass a fixed one when
        *directory* is already private to this endpoint.
        """
        key = os.path.join(os.fspath(directory), name or f"{uuid.uuid4().hex}.sock")
        if len(os.fsencode(key)) > MAX_KEY_BYTES:
            raise RendezvousError(f"rendezvous key {key!r} is longer than {MAX_KEY_BYTES} bytes")
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(key)
            sock.listen(1)
        except OSError as e:
            sock.close()
            raise RendezvousError(f"cannot bind rendezvous endpoint {key!r}: {e}") from e
        if channel_logger.isEnabledFor(logging.DEBUG):
            channel_logger.debug("Rendezvous endpoint listening: key=%s", key)
        return cls(key, sock)

    @property
    def key(self) -> str:
        """The rendezvous key (the socket path)."""
        return self._key

    @property
    def closed(self) -> bool:
        """Whether the endpoint has been closed."""
        return self._closed

    def wait_connection(self, timeout: float) -> bool:
        """Return True once a connection is pending, False after *timeout* seconds."""
        readable, _, _ = select.select([self._sock], [], [], timeout)
        return bool(readable)

    def accept(self, deadline: Deadline) -> ChannelPair:
        """Accept the single connection and receive the host's ends of the pair.

        The endpoint is closed afterwards whatever the outcome.
        """
        try:
            self._sock.settimeout(deadline.check("the plugin to connect"))
            try:
                conn, _ = self._sock.accept()
            except TimeoutError:
                raise InvocationTimeout(
                    f"timed out after {deadline.timeout:g}s waiting for the plugin to connect"
                ) from None
            except OSError as e:
                raise RendezvousError(f"accept on {self._key!r} failed: {e}") from e
        finally:
            self.close()

        with conn:
            try:
                conn.settimeout(deadline.check("the channel pair"))
                msg, fds, _flags, _addr = socket.recv_fds(conn, len(_HANDSHAKE), 2)
            except InvocationTimeout:
                raise
            except TimeoutError:
                raise InvocationTimeout(
                    f"timed out after {deadline.timeout:g}s waiting for the channel pair"
                ) from None
            except OSError as e:
                raise RendezvousError(f"failed to receive channel pair: {e}") from e

        if msg != _HANDSHAKE or len(fds) != 2:
            for fd in fds:
                with contextlib.suppress(OSError):
                    os.close(fd)
            raise RendezvousError(f"unexpected rendezvous handshake {msg!r} with {len(fds)} descriptors")
        if channel_logger.isEnabledFor(logging.DEBUG):
            channel_logger.debug("Channel pair received: key=%s, fds=%s", self._key, fds)
        return ChannelPair(request=socket.socket(fileno=fds[0]), response=socket.socket(fileno=fds[1]))

    def close(self) -> None:
        """Stop listening and unlink the socket path; idempotent."""
        if self._closed:
            return
        self._closed = True
        self._sock.close()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self._key)

    def __enter__(self) -> RendezvousEndpoint:
        """Enter the context (no-op)."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the endpoint."""
        self.close()
