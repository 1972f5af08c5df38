"""Protocol interfaces for pluggable session collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from android_espresso_driver.session.context import SessionContext


@dataclass
class ProxyResponse:
    """A relayed HTTP response, body bytes untouched."""

    status_code: int
    content: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def media_type(self) -> str:
        return self.headers.get("content-type", "application/json")


@runtime_checkable
class WebviewEngine(Protocol):
    """Secondary automation engine driving a web view context."""

    async def proxy_request(self, method: str, path: str, body: bytes | None) -> ProxyResponse:
        """Forward one raw request to the engine.

        Args:
            method: HTTP method
            path: Client request path, unchanged; it still carries the driver session id
            body: Raw request body

        Returns:
            The engine's response
        """
        ...

    async def stop(self) -> None:
        """Stop the engine and release its resources."""
        ...


@runtime_checkable
class WebviewEngineFactory(Protocol):
    """Creates a web view engine bound to a session's device."""

    async def create(self, ctx: SessionContext, context_name: str) -> WebviewEngine:
        """Start an engine for the named web view context.

        Raises:
            DriverError: If the web view is not available
        """
        ...


@runtime_checkable
class StoppableHandle(Protocol):
    """A running background activity that teardown must stop."""

    async def stop(self) -> None: ...
