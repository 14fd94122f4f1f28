"""protoc-gen-callback: the stand-in plugin executable.

The compiler launches this program as "the plugin".  It reads the
CodeGeneratorRequest from stdin, takes the rendezvous key from the request's
``parameter`` field, forwards the untouched request bytes to the waiting host
process, and relays whatever the host answers to stdout.

Usage (normally assembled by :class:`protoc_callback.Protoc`)::

    protoc --plugin=protoc-gen-callback=./protoc-gen-callback \\
           --callback_out=./gen --callback_opt=<rendezvous key> foo.proto
"""

from __future__ import annotations

import logging
import sys

from protoc_callback._common import PARAMETER_FIELD_NUMBER, BridgeError, MissingParameterError
from protoc_callback.channel import REQUEST, RESPONSE, connect, recv_message, send_message
from protoc_callback.fields import find_last_string

__all__ = ["main", "relay"]

_PROG = "protoc-gen-callback"
_logger = logging.getLogger("protoc_callback.plugin")


def relay(request: bytes) -> bytes:
    """Forward *request* to the host named inside it and return the host's response."""
    key = find_last_string(request, PARAMETER_FIELD_NUMBER)
    if not key:
        raise MissingParameterError(
            f"CodeGeneratorRequest has no parameter field ({PARAMETER_FIELD_NUMBER}) holding the rendezvous key"
        )
    pair = connect(key)
    try:
        send_message(pair.request, request, REQUEST)
        return recv_message(pair.response, RESPONSE)
    finally:
        pair.close()


def main() -> int:
    """Run the stand-in; return the process exit status."""
    if sys.stdin.isatty():
        print(f"ERROR!: {_PROG} is a protoc plugin, it is not intended for direct use.", file=sys.stderr)
        print("", file=sys.stderr)
        print("It is launched by protoc_callback.Protoc, which passes the rendezvous key", file=sys.stderr)
        print("as --callback_opt.", file=sys.stderr)
        return 1

    request = sys.stdin.buffer.read()
    try:
        response = relay(request)
    except (BridgeError, OSError) as e:
        _logger.debug("Relay failed", exc_info=True)
        print(f"{_PROG}: {e}", file=sys.stderr)
        return 1

    sys.stdout.buffer.write(response)
    sys.stdout.buffer.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
