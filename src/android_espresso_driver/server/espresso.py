"""On-device server control - install, start, proxy and stop the Espresso server."""

from __future__ import annotations

import asyncio
import os
import re
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from android_espresso_driver.errors import (
    DriverError,
    server_apk_not_found_error,
    server_not_ready_error,
    server_request_error,
    session_not_created_error,
)
from android_espresso_driver.interfaces import ProxyResponse

if TYPE_CHECKING:
    from android_espresso_driver.apps.tooling import ApkTooling
    from android_espresso_driver.device.manager import AndroidDevice

logger = structlog.get_logger()

DEVICE_PORT = 6791
TEST_APK_PKG = "io.appium.espressoserver.test"
INSTRUMENTATION_RUNNER = f"{TEST_APK_PKG}/androidx.test.runner.AndroidJUnitRunner"
SERVER_APK_ENV = "ESPRESSO_SERVER_APK"

STATUS_POLL_INTERVAL = 0.5
COMMAND_TIMEOUT = 240.0

_SESSION_PATH_RE = re.compile(r"^/session/[^/]+")


def _error_message(response: httpx.Response) -> str:
    try:
        value = response.json().get("value")
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(value, dict) and value.get("message"):
        return str(value["message"])
    return f"HTTP {response.status_code}"


class EspressoServer:
    """Control handle for the instrumentation server running on a device."""

    def __init__(
        self,
        device: AndroidDevice,
        *,
        host: str = "127.0.0.1",
        system_port: int,
        device_port: int = DEVICE_PORT,
        app_package: str | None = None,
        app_activity: str | None = None,
        server_apk: str | None = None,
        force_reinstall: bool = False,
        server_launch_timeout_ms: int = 45000,
        android_install_timeout_ms: int = 90000,
        disable_suppress_accessibility_service: bool = False,
        tooling: ApkTooling | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.device = device
        self.host = host
        self.system_port = system_port
        self.device_port = device_port
        self.app_package = app_package
        self.app_activity = app_activity
        self.server_apk = server_apk or os.environ.get(SERVER_APK_ENV)
        self.force_reinstall = force_reinstall
        self.server_launch_timeout_ms = server_launch_timeout_ms
        self.android_install_timeout_ms = android_install_timeout_ms
        self.disable_suppress_accessibility_service = disable_suppress_accessibility_service
        self._tooling = tooling
        self.base_url = f"http://{host}:{system_port}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=COMMAND_TIMEOUT,
        )
        self.session_id: str | None = None
        self._instrumentation: subprocess.Popen[bytes] | None = None

    async def install_test_apk(self) -> None:
        """Install the prebuilt server package unless an installed copy can be reused."""
        apk = Path(self.server_apk).expanduser() if self.server_apk else None
        if apk is None or not apk.is_file():
            raise server_apk_not_found_error(self.server_apk)

        installed = await self.device.is_app_installed(TEST_APK_PKG)
        if installed and not self.force_reinstall:
            logger.info("server_apk_reused", package=TEST_APK_PKG, serial=self.device.serial)
            return
        if installed:
            await self.device.uninstall_apk(TEST_APK_PKG)

        if self._tooling is not None and not await self._tooling.check_apk_cert(
            apk, TEST_APK_PKG
        ):
            await self._tooling.sign(apk, TEST_APK_PKG)
        await self.device.install_apk(apk, timeout_ms=self.android_install_timeout_ms)
        logger.info("server_apk_installed", path=str(apk), serial=self.device.serial)

    async def start_session(self, caps: dict[str, Any]) -> str:
        """Launch the instrumentation, wait for /status and open a remote session.

        Raises:
            DriverError: If the server never becomes ready or refuses the session
        """
        await self._start_instrumentation()
        await self._wait_for_status()

        body = {"capabilities": {"firstMatch": [caps], "alwaysMatch": {}}}
        try:
            response = await self._client.post("/session", json=body)
        except httpx.HTTPError as exc:
            raise server_request_error("POST", "/session", str(exc), 502) from exc
        if response.status_code >= 400:
            raise session_not_created_error(
                f"On-device server refused the session: {_error_message(response)}",
                {"status_code": response.status_code},
            )

        payload = response.json()
        value = payload.get("value") or {}
        session_id = payload.get("sessionId") or value.get("sessionId")
        if not session_id:
            raise session_not_created_error("On-device server returned no session id")
        self.session_id = str(session_id)
        logger.info("server_session_started", remote_session_id=self.session_id)
        return self.session_id

    async def delete_session(self) -> None:
        """Close the remote session, then stop the instrumentation."""
        if self.session_id:
            try:
                await self._client.delete(f"/session/{self.session_id}")
            except httpx.HTTPError as exc:
                logger.warning("server_session_delete_failed", error=str(exc))
            self.session_id = None
        await self.close()
        logger.info("server_session_deleted", serial=self.device.serial)

    async def close(self) -> None:
        """Stop the instrumentation and release the HTTP client."""
        try:
            await self._stop_instrumentation()
        finally:
            await self._client.aclose()

    async def proxy_request(self, method: str, path: str, body: bytes | None) -> ProxyResponse:
        """Relay one raw request; the body is forwarded byte for byte."""
        remote_path = self._rewrite(path)
        try:
            response = await self._client.request(
                method,
                remote_path,
                content=body or None,
                headers={"content-type": "application/json; charset=utf-8"},
            )
        except httpx.HTTPError as exc:
            raise server_request_error(method, remote_path, str(exc), 502) from exc
        return ProxyResponse(
            status_code=response.status_code,
            content=response.content,
            headers={"content-type": response.headers.get("content-type", "application/json")},
        )

    async def proxy_command(
        self, path: str, method: str, body: dict[str, Any] | None = None
    ) -> Any:
        """Send a JSON command and return its ``value``.

        ``path`` may be session relative (``/screenshot``) or absolute.
        """
        if path.startswith("/session"):
            remote_path = self._rewrite(path)
        elif self.session_id:
            remote_path = f"/session/{self.session_id}{path}"
        else:
            remote_path = path
        try:
            response = await self._client.request(method, remote_path, json=body)
        except httpx.HTTPError as exc:
            raise server_request_error(method, remote_path, str(exc), 502) from exc
        if response.status_code >= 400:
            raise server_request_error(
                method, remote_path, _error_message(response), response.status_code
            )
        return response.json().get("value")

    async def status(self) -> bool:
        try:
            response = await self._client.get("/status", timeout=2.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def _rewrite(self, path: str) -> str:
        if not self.session_id:
            return path
        return _SESSION_PATH_RE.sub(f"/session/{self.session_id}", path, count=1)

    async def _start_instrumentation(self) -> None:
        args = ["am", "instrument", "-w", "-e", "debug", "false"]
        if self.disable_suppress_accessibility_service:
            args.extend(["-e", "disableSuppressAccessibilityService", "true"])
        args.append(INSTRUMENTATION_RUNNER)
        await self.device.force_stop(TEST_APK_PKG)
        self._instrumentation = await asyncio.to_thread(
            self.device.spawn_shell, args, "espresso_server"
        )
        logger.info("server_instrumentation_started", serial=self.device.serial)

    async def _wait_for_status(self) -> None:
        deadline = time.monotonic() + self.server_launch_timeout_ms / 1000
        while time.monotonic() < deadline:
            if await self.status():
                logger.info("server_ready", url=self.base_url)
                return
            proc = self._instrumentation
            if proc is not None and proc.poll() is not None:
                break
            await asyncio.sleep(STATUS_POLL_INTERVAL)
        await self._stop_instrumentation()
        raise server_not_ready_error(self.base_url, self.server_launch_timeout_ms)

    async def _stop_instrumentation(self) -> None:
        proc = self._instrumentation
        self._instrumentation = None
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                await asyncio.to_thread(proc.wait, 5)
            except subprocess.TimeoutExpired:
                proc.kill()
        try:
            await self.device.force_stop(TEST_APK_PKG)
        except DriverError as exc:
            logger.warning("server_force_stop_failed", error=str(exc))
