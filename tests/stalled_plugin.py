"""Plugin that connects to the rendezvous key and then never forwards the request.

Used to exercise the host's deadline while it waits for the request message.
"""

from __future__ import annotations

import sys
import time

from protoc_callback.channel import connect
from protoc_callback.fields import find_last_string


def main() -> int:
    """Connect, hold the channel pair open, and sleep."""
    key = find_last_string(sys.stdin.buffer.read(), 2)
    if key is None:
        return 1
    pair = connect(key)
    try:
        time.sleep(60)
    finally:
        pair.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
