# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Use an in-process Python function as a protoc code generator plugin."""

__version__ = "0.1.0"

from protoc_callback._common import (
    BridgeError,
    CallbackError,
    ChannelClosedError,
    ChannelError,
    Deadline,
    InvocationTimeout,
    MissingParameterError,
    ProcessError,
    RendezvousError,
    ScaffoldError,
    WireFormatError,
)
from protoc_callback.fields import WireField, WireType, find_last_bytes, find_last_string, iter_fields
from protoc_callback.on_memory import ProtocOnMemory
from protoc_callback.protoc import GenerateCallback, Protoc, make_launcher

__all__ = [
    "BridgeError",
    "CallbackError",
    "ChannelClosedError",
    "ChannelError",
    "Deadline",
    "GenerateCallback",
    "InvocationTimeout",
    "MissingParameterError",
    "ProcessError",
    "Protoc",
    "ProtocOnMemory",
    "RendezvousError",
    "ScaffoldError",
    "WireField",
    "WireFormatError",
    "WireType",
    "find_last_bytes",
    "find_last_string",
    "iter_fields",
    "make_launcher",
]
