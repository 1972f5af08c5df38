"""Port allocator - free host ports for device port forwarding."""

from __future__ import annotations

import asyncio
import socket

import structlog

from android_espresso_driver.errors import port_unavailable_error

logger = structlog.get_logger()

# Host ports used to reach the on-device server through adb forward.
SYSTEM_PORT_RANGE = (8300, 8399)


class PortAllocator:
    """Finds unused local ports with a transient bind check."""

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host

    def is_free(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.host, port))
            except OSError:
                return False
        return True

    async def acquire(self, low: int, high: int) -> int:
        """Return the first free port in the inclusive range.

        Raises:
            DriverError: If every port in the range is taken
        """

        def _scan() -> int | None:
            for port in range(low, high + 1):
                if self.is_free(port):
                    return port
            return None

        port = await asyncio.to_thread(_scan)
        if port is None:
            raise port_unavailable_error(low, high)
        logger.debug("port_allocated", port=port, low=low, high=high)
        return port
