"""One-time transport selection.

The bridge variant is chosen once per process from ``settings.bridge_mode``:
``native`` and ``remote`` force a variant, ``auto`` uses the native process
bridge when its CLI is installed and falls back to the remote API otherwise.
"""

import structlog

from bridges.base import TransportBridge
from bridges.host_channel import SubprocessHostChannel
from bridges.native import HostChannel, NativeProcessBridge
from bridges.remote import RemoteAPIBridge
from config import Settings, settings as default_settings

logger = structlog.get_logger(__name__)


async def select_bridge(
    settings: Settings | None = None,
    host_channel: HostChannel | None = None,
) -> TransportBridge:
    """Pick the transport for this process.

    Args:
        settings: Settings to read the mode and credentials from.
        host_channel: Channel for the native bridge (defaults to the CLI subprocess channel).

    Returns:
        The selected bridge. It is not started.
    """
    cfg = settings or default_settings

    if cfg.bridge_mode == "remote":
        logger.info("bridge_selected", bridge="remote", reason="configured")
        return RemoteAPIBridge(settings=cfg)

    native = NativeProcessBridge(host_channel or SubprocessHostChannel(settings=cfg), settings=cfg)
    if cfg.bridge_mode == "native":
        logger.info("bridge_selected", bridge="native", reason="configured")
        return native

    availability = await native.detect_availability()
    if availability.available:
        logger.info("bridge_selected", bridge="native", reason="detected", version=availability.version)
        return native

    logger.info("bridge_selected", bridge="remote", reason="native_unavailable", error=availability.error)
    return RemoteAPIBridge(settings=cfg)
