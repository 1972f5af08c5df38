"""Tests for PortAllocator."""

from __future__ import annotations

import socket
from unittest.mock import patch

import pytest

from android_espresso_driver.errors import DriverError
from android_espresso_driver.ports import SYSTEM_PORT_RANGE, PortAllocator


class TestPortAllocator:
    """Tests for acquire."""

    @pytest.mark.asyncio
    async def test_returns_first_free_port(self) -> None:
        """Should skip taken ports and return the first free one."""
        allocator = PortAllocator()
        taken = {8300, 8301}

        with patch.object(allocator, "is_free", side_effect=lambda port: port not in taken):
            port = await allocator.acquire(*SYSTEM_PORT_RANGE)

        assert port == 8302

    @pytest.mark.asyncio
    async def test_range_is_inclusive(self) -> None:
        """Should consider the upper bound."""
        allocator = PortAllocator()

        with patch.object(allocator, "is_free", side_effect=lambda port: port == 8399):
            port = await allocator.acquire(8300, 8399)

        assert port == 8399

    @pytest.mark.asyncio
    async def test_exhausted_range(self) -> None:
        """Should raise when no port is free."""
        allocator = PortAllocator()

        with (
            patch.object(allocator, "is_free", return_value=False),
            pytest.raises(DriverError) as exc_info,
        ):
            await allocator.acquire(8300, 8302)

        assert exc_info.value.code == "ERR_PORT_UNAVAILABLE"
        assert exc_info.value.context == {"low": 8300, "high": 8302}

    def test_is_free_detects_bound_port(self) -> None:
        """Should report a listening port as taken."""
        allocator = PortAllocator()
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen()
            port = sock.getsockname()[1]

            assert allocator.is_free(port) is False

    @pytest.mark.asyncio
    async def test_acquire_is_repeatable(self) -> None:
        """Should not reserve anything between calls."""
        allocator = PortAllocator()

        with patch.object(allocator, "is_free", return_value=True):
            first = await allocator.acquire(9000, 9010)
            second = await allocator.acquire(9000, 9010)

        assert first == second == 9000
