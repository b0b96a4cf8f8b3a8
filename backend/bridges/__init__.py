"""Transport bridges executing agent turns.

Key Components:
    - TransportBridge: Common execute/cancel/status contract
    - NativeProcessBridge: Drives a native coding-agent process via a HostChannel
    - SubprocessHostChannel: Default host channel running the agent CLI
    - RemoteAPIBridge: Streams turns from a remote LLM provider
    - select_bridge: Picks the variant once per process
"""

from bridges.base import (
    BridgeEvent,
    BridgeEventKind,
    BridgeListener,
    TransportBridge,
)
from bridges.detect import select_bridge
from bridges.host_channel import SubprocessHostChannel
from bridges.native import HostChannel, NativeProcessBridge
from bridges.remote import RemoteAPIBridge

__all__ = [
    "BridgeEvent",
    "BridgeEventKind",
    "BridgeListener",
    "HostChannel",
    "NativeProcessBridge",
    "RemoteAPIBridge",
    "SubprocessHostChannel",
    "TransportBridge",
    "select_bridge",
]
