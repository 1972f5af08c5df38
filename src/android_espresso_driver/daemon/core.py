"""Daemon core - lifecycle, shared collaborators and the session registry."""

from __future__ import annotations

from typing import Any

import structlog

from android_espresso_driver.apps.resolver import AppArtifactResolver
from android_espresso_driver.apps.tooling import ApkTooling
from android_espresso_driver.db.models import Database
from android_espresso_driver.device.manager import DeviceManager
from android_espresso_driver.errors import invalid_session_error
from android_espresso_driver.interfaces import WebviewEngineFactory
from android_espresso_driver.ports import PortAllocator
from android_espresso_driver.session.orchestrator import SessionOrchestrator

logger = structlog.get_logger()


class DaemonCore:
    """Central daemon coordinator owning one orchestrator per live session."""

    def __init__(self, webview_factory: WebviewEngineFactory | None = None) -> None:
        self.database = Database()
        self.tooling = ApkTooling()
        self.resolver = AppArtifactResolver(self.database, self.tooling)
        self.device_manager = DeviceManager()
        self.port_allocator = PortAllocator()
        self.webview_factory = webview_factory
        self.sessions: dict[str, SessionOrchestrator] = {}
        self._running = False

    async def start(self) -> None:
        """Initialize all subsystems."""
        logger.info("daemon_core_starting")
        await self.database.connect()
        self._running = True
        logger.info("daemon_core_started")

    async def stop(self) -> None:
        """Delete every live session, then shut down."""
        logger.info("daemon_core_stopping", active_sessions=len(self.sessions))
        self._running = False
        for session_id in list(self.sessions):
            await self.delete_session(session_id)
        await self.database.disconnect()
        logger.info("daemon_core_stopped")

    @property
    def is_running(self) -> bool:
        """Check if daemon is running."""
        return self._running

    def new_orchestrator(self) -> SessionOrchestrator:
        return SessionOrchestrator(
            self.resolver,
            device_manager=self.device_manager,
            port_allocator=self.port_allocator,
            webview_factory=self.webview_factory,
            tooling=self.tooling,
        )

    async def create_session(self, payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a session and register it once it is active.

        Raises:
            DriverError: SessionNotCreated when any creation step fails
        """
        orchestrator = self.new_orchestrator()
        caps = await orchestrator.create(payload)
        self.sessions[orchestrator.session_id] = orchestrator
        return orchestrator.session_id, caps

    def get_session(self, session_id: str) -> SessionOrchestrator:
        orchestrator = self.sessions.get(session_id)
        if orchestrator is None:
            raise invalid_session_error(session_id)
        return orchestrator

    async def delete_session(self, session_id: str) -> None:
        orchestrator = self.sessions.pop(session_id, None)
        if orchestrator is None:
            raise invalid_session_error(session_id)
        await orchestrator.delete()

    def list_sessions(self) -> list[dict[str, Any]]:
        return [orchestrator.summary() for orchestrator in self.sessions.values()]
