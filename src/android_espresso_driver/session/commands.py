"""Local command layer - commands the driver answers itself instead of forwarding."""

from __future__ import annotations

import base64
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from android_espresso_driver.errors import (
    DriverError,
    device_unavailable_error,
    invalid_argument_error,
    unknown_command_error,
)
from android_espresso_driver.session.context import NATIVE_CONTEXT, WEBVIEW_PREFIX
from android_espresso_driver.session.routing import ProxyRoute

if TYPE_CHECKING:
    from android_espresso_driver.device.manager import AndroidDevice
    from android_espresso_driver.session.context import SessionContext
    from android_espresso_driver.session.orchestrator import SessionOrchestrator

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], Awaitable[Any]]

LOG_TYPES = ["logcat"]
DEFAULT_RECORDING_TIME_LIMIT = 180

_S = r"^/session/[^/]+"
MOBILE_PREFIX = "mobile:"


def _app_id(body: dict[str, Any]) -> str:
    app_id = body.get("appId") or body.get("bundleId")
    if not app_id:
        raise invalid_argument_error("'appId' is required", {"body": body})
    return str(app_id)


def _mobile_command(body: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Split a `mobile: <name>` script into its name and its options object."""
    script = str(body.get("script") or "").strip()
    if not script.startswith(MOBILE_PREFIX):
        raise invalid_argument_error(
            f"Only '{MOBILE_PREFIX}' scripts can be executed in this context",
            {"script": script},
        )
    name = script[len(MOBILE_PREFIX) :].strip()
    if not name:
        raise invalid_argument_error("The mobile command name is missing", {"script": script})
    args = body.get("args") or []
    if isinstance(args, dict):
        options = args
    elif args and isinstance(args[0], dict):
        options = args[0]
    else:
        options = {}
    return name, options


class AndroidCommands:
    """Commands answered from the device handle, shared by all Android drivers."""

    def __init__(self, orchestrator: SessionOrchestrator) -> None:
        self.orchestrator = orchestrator

    @property
    def ctx(self) -> SessionContext:
        return self.orchestrator.ctx

    @property
    def device(self) -> AndroidDevice:
        device = self.ctx.device
        if device is None:
            raise device_unavailable_error(None, "session has no device handle")
        return device

    # Device state

    async def get_current_activity(self, body: dict[str, Any]) -> Any:
        _, activity = await self.device.focused_activity()
        return activity

    async def get_current_package(self, body: dict[str, Any]) -> Any:
        package, _ = await self.device.focused_activity()
        return package

    async def get_display_density(self, body: dict[str, Any]) -> Any:
        return await self.device.display_density()

    async def is_keyboard_shown(self, body: dict[str, Any]) -> Any:
        return await self.device.is_keyboard_shown()

    async def get_device_time(self, body: dict[str, Any]) -> Any:
        return await self.device.system_time()

    # Contexts and timeouts

    async def get_contexts(self, body: dict[str, Any]) -> Any:
        packages = await self.device.list_webview_packages()
        return [NATIVE_CONTEXT, *(f"{WEBVIEW_PREFIX}{package}" for package in packages)]

    async def get_current_context(self, body: dict[str, Any]) -> Any:
        return self.ctx.current_context

    async def set_context(self, body: dict[str, Any]) -> Any:
        if "name" not in body:
            raise invalid_argument_error("'name' is required", {"body": body})
        await self.orchestrator.set_context(body["name"])
        return None

    async def get_timeouts(self, body: dict[str, Any]) -> Any:
        return dict(self.ctx.timeouts)

    async def set_timeouts(self, body: dict[str, Any]) -> Any:
        for key in ("implicit", "pageLoad", "script"):
            if key in body and body[key] is not None:
                self.ctx.timeouts[key] = int(body[key])
        return None

    # Application lifecycle

    async def close_app(self, body: dict[str, Any]) -> Any:
        package = self.ctx.opts.app_package
        if package:
            await self.device.force_stop(package)
        return None

    async def launch_app(self, body: dict[str, Any]) -> Any:
        opts = self.ctx.opts
        if not opts.app_package:
            raise invalid_argument_error("No appPackage is known for this session")
        await self.device.start_app(opts.app_package, opts.app_activity)
        return None

    async def activate_app(self, body: dict[str, Any]) -> Any:
        await self.device.start_app(_app_id(body))
        return None

    async def terminate_app(self, body: dict[str, Any]) -> Any:
        await self.device.force_stop(_app_id(body))
        return True

    async def is_app_installed(self, body: dict[str, Any]) -> Any:
        return await self.device.is_app_installed(_app_id(body))

    async def install_app(self, body: dict[str, Any]) -> Any:
        app_path = body.get("appPath")
        if not app_path:
            raise invalid_argument_error("'appPath' is required", {"body": body})
        await self.device.install_apk(
            app_path, timeout_ms=self.ctx.opts.android_install_timeout
        )
        return None

    async def remove_app(self, body: dict[str, Any]) -> Any:
        return await self.device.uninstall_apk(_app_id(body))

    # Lock screen

    async def is_locked(self, body: dict[str, Any]) -> Any:
        return await self.device.is_screen_locked()

    async def lock(self, body: dict[str, Any]) -> Any:
        await self.device.lock()
        return None

    async def unlock(self, body: dict[str, Any]) -> Any:
        await self.device.unlock()
        return None

    # Recording and capture

    async def start_recording_screen(self, body: dict[str, Any]) -> Any:
        if self.ctx.screen_recording is not None:
            logger.info("screen_recording_already_running", session_id=self.ctx.session_id)
            return None
        options = body.get("options") or {}
        time_limit = int(options.get("timeLimit") or DEFAULT_RECORDING_TIME_LIMIT)
        self.ctx.screen_recording = await self.device.start_screen_recording(time_limit)
        return None

    async def stop_recording_screen(self, body: dict[str, Any]) -> Any:
        recording = self.ctx.screen_recording
        if recording is None:
            return ""
        self.ctx.screen_recording = None
        return await self.device.stop_screen_recording(recording)

    async def get_screenshot(self, body: dict[str, Any]) -> Any:
        png = await self.device.screenshot_png()
        return base64.b64encode(png).decode("ascii")

    # Settings and scripts

    async def get_settings(self, body: dict[str, Any]) -> Any:
        return dict(self.ctx.settings)

    async def update_settings(self, body: dict[str, Any]) -> Any:
        settings = body.get("settings")
        if not isinstance(settings, dict):
            raise invalid_argument_error("'settings' must be an object", {"body": body})
        await self.apply_settings(settings)
        self.ctx.settings.update(settings)
        return None

    async def apply_settings(self, settings: dict[str, Any]) -> None:
        """Hook for drivers whose device side must learn about new settings."""

    async def execute(self, body: dict[str, Any]) -> Any:
        name, options = _mobile_command(body)
        logger.debug("mobile_command", session_id=self.ctx.session_id, command=name)
        return await self.execute_mobile(name, options)

    async def execute_mobile(self, name: str, options: dict[str, Any]) -> Any:
        raise unknown_command_error("POST", f"{MOBILE_PREFIX} {name}")

    # Logs

    async def get_log_types(self, body: dict[str, Any]) -> Any:
        return list(LOG_TYPES)

    async def get_log(self, body: dict[str, Any]) -> Any:
        log_type = body.get("type")
        if log_type not in LOG_TYPES:
            raise invalid_argument_error(
                f"Unsupported log type '{log_type}'", {"supported": LOG_TYPES}
            )
        lines = await self.device.read_logcat()
        return [{"timestamp": None, "level": "ALL", "message": line} for line in lines]


class EspressoCommands(AndroidCommands):
    """Overrides that go through the on-device server."""

    async def get_screenshot(self, body: dict[str, Any]) -> Any:
        return await self.orchestrator.proxy_command("/screenshot", "GET")

    async def apply_settings(self, settings: dict[str, Any]) -> None:
        await self.orchestrator.proxy_command("/appium/settings", "POST", {"settings": settings})

    async def execute_mobile(self, name: str, options: dict[str, Any]) -> Any:
        return await self.orchestrator.proxy_command(
            f"/appium/execute_mobile/{name}", "POST", options
        )


class LocalCommandTable:
    """Ordered (method, pattern) -> handler bindings, fixed at construction."""

    def __init__(self, commands: AndroidCommands) -> None:
        c = commands
        bindings: list[tuple[str, str, Handler]] = [
            ("GET", rf"{_S}/appium/device/current_activity$", c.get_current_activity),
            ("GET", rf"{_S}/appium/device/current_package$", c.get_current_package),
            ("GET", rf"{_S}/appium/device/display_density$", c.get_display_density),
            ("GET", rf"{_S}/appium/device/is_keyboard_shown$", c.is_keyboard_shown),
            ("GET", rf"{_S}/appium/device/system_time$", c.get_device_time),
            ("POST", rf"{_S}/appium/device/system_time$", c.get_device_time),
            ("GET", rf"{_S}/contexts$", c.get_contexts),
            ("GET", rf"{_S}/context$", c.get_current_context),
            ("POST", rf"{_S}/context$", c.set_context),
            ("GET", rf"{_S}/timeouts$", c.get_timeouts),
            ("POST", rf"{_S}/timeouts$", c.set_timeouts),
            ("POST", rf"{_S}/appium/app/close$", c.close_app),
            ("POST", rf"{_S}/appium/app/launch$", c.launch_app),
            ("POST", rf"{_S}/appium/device/activate_app$", c.activate_app),
            ("POST", rf"{_S}/appium/device/terminate_app$", c.terminate_app),
            ("POST", rf"{_S}/appium/device/app_installed$", c.is_app_installed),
            ("POST", rf"{_S}/appium/device/install_app$", c.install_app),
            ("POST", rf"{_S}/appium/device/remove_app$", c.remove_app),
            ("POST", rf"{_S}/appium/device/is_locked$", c.is_locked),
            ("POST", rf"{_S}/appium/device/lock$", c.lock),
            ("POST", rf"{_S}/appium/device/unlock$", c.unlock),
            ("POST", rf"{_S}/appium/start_recording_screen$", c.start_recording_screen),
            ("POST", rf"{_S}/appium/stop_recording_screen$", c.stop_recording_screen),
            ("GET", rf"{_S}/screenshot$", c.get_screenshot),
            ("GET", rf"{_S}/(?:se/)?log/types$", c.get_log_types),
            ("POST", rf"{_S}/(?:se/)?log$", c.get_log),
            ("GET", rf"{_S}/appium/settings$", c.get_settings),
            ("POST", rf"{_S}/appium/settings$", c.update_settings),
            ("POST", rf"{_S}/execute(?:/sync|/async|_async)?$", c.execute),
        ]
        self._routes = [(ProxyRoute.of(method, pattern), fn) for method, pattern, fn in bindings]

    def find(self, method: str, path: str) -> Handler | None:
        for route, handler in self._routes:
            if route.matches(method, path):
                return handler
        return None

    async def dispatch(self, method: str, path: str, body: dict[str, Any]) -> Any:
        """Run the handler bound to (method, path).

        Raises:
            DriverError: ``unknown command`` when no handler is bound
        """
        handler = self.find(method, path)
        if handler is None:
            raise unknown_command_error(method, path)
        try:
            return await handler(body)
        except DriverError:
            raise
        except (TypeError, ValueError) as exc:
            raise invalid_argument_error(str(exc), {"method": method, "path": path}) from exc
