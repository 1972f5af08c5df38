"""Session orchestrator - drives session creation, command routing and teardown."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog

from android_espresso_driver.apps.resolver import AppArtifactResolver
from android_espresso_driver.apps.tooling import ApkTooling, KeystoreConfig
from android_espresso_driver.device.manager import (
    SETTINGS_HELPER_PKG_ID,
    UNICODE_IME,
    AndroidDevice,
    DeviceManager,
)
from android_espresso_driver.errors import (
    DriverError,
    as_session_not_created,
    capability_validation_error,
    invalid_argument_error,
    no_such_context_error,
    package_not_installed_error,
    proxy_inactive_error,
    session_not_created_error,
)
from android_espresso_driver.interfaces import ProxyResponse, WebviewEngineFactory
from android_espresso_driver.ports import SYSTEM_PORT_RANGE, PortAllocator
from android_espresso_driver.server.espresso import DEVICE_PORT, TEST_APK_PKG, EspressoServer
from android_espresso_driver.session import routing
from android_espresso_driver.session.commands import EspressoCommands, LocalCommandTable
from android_espresso_driver.session.context import (
    NATIVE_CONTEXT,
    WEBVIEW_PREFIX,
    SessionContext,
    SessionState,
)
from android_espresso_driver.session.options import SessionOptions, normalize_capabilities
from android_espresso_driver.validation import (
    add_wipe_data_to_avd_args,
    derive_avd_name,
    qualify_activity_name,
)

logger = structlog.get_logger()

RESERVED_PACKAGES = (SETTINGS_HELPER_PKG_ID, TEST_APK_PKG)
HIDDEN_API_LEVEL = 28
WEBVIEW_RETRY_INTERVAL = 0.5

ServerFactory = Callable[..., EspressoServer]
AuxHandlerRemover = Callable[[], Awaitable[None]]


def _server_details(caps: dict[str, Any]) -> dict[str, Any]:
    return {
        "platform": "LINUX",
        "webStorageEnabled": False,
        "takesScreenshot": True,
        "javascriptEnabled": True,
        "databaseEnabled": False,
        "networkConnectionEnabled": True,
        "locationContextEnabled": False,
        "warnings": {},
        "desired": dict(caps),
    }


def _json_response(value: Any, status_code: int = 200) -> ProxyResponse:
    return ProxyResponse(
        status_code=status_code,
        content=json.dumps({"value": value}).encode(),
        headers={"content-type": "application/json; charset=utf-8"},
    )


class SessionOrchestrator:
    """Owns exactly one session: its context, collaborators and lifecycle."""

    def __init__(
        self,
        resolver: AppArtifactResolver,
        *,
        device_manager: DeviceManager | None = None,
        port_allocator: PortAllocator | None = None,
        server_factory: ServerFactory = EspressoServer,
        webview_factory: WebviewEngineFactory | None = None,
        tooling: ApkTooling | None = None,
        session_id: str | None = None,
    ) -> None:
        self._resolver = resolver
        self._devices = device_manager or DeviceManager()
        self._ports = port_allocator or PortAllocator()
        self._server_factory = server_factory
        self._webview_factory = webview_factory
        self._tooling = tooling or ApkTooling()
        self.ctx = SessionContext(session_id=session_id or str(uuid.uuid4()))
        self.state = SessionState.IDLE
        self.commands = LocalCommandTable(EspressoCommands(self))
        self._aux_handlers: list[AuxHandlerRemover] = []
        self._proxy_request: Callable[[str, str, bytes | None], Awaitable[ProxyResponse]] | None = (
            None
        )
        self._proxy_command: Callable[..., Awaitable[Any]] | None = None

    @property
    def session_id(self) -> str:
        return self.ctx.session_id

    # Creation

    async def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create the session and return its reported capabilities.

        Any failure tears down whatever was set up, then surfaces as a
        SessionNotCreated error.
        """
        if self.state is not SessionState.IDLE:
            raise session_not_created_error(
                "A session is already running on this orchestrator",
                {"session_id": self.session_id, "state": self.state.value},
            )
        self.state = SessionState.CREATING
        logger.info("session_creating", session_id=self.session_id)
        try:
            caps = await self._create(payload)
        except Exception as exc:
            logger.error("session_create_failed", session_id=self.session_id, error=str(exc))
            await self.delete()
            error = as_session_not_created(exc)
            if error is exc:
                raise
            raise error from exc
        self.state = SessionState.ACTIVE
        logger.info("session_created", session_id=self.session_id, udid=self.ctx.opts.udid)
        return caps

    async def _create(self, payload: dict[str, Any]) -> dict[str, Any]:
        ctx = self.ctx

        # Capabilities and defaults
        caps = normalize_capabilities(payload)
        opts = SessionOptions.from_capabilities(caps)
        ctx.opts = opts
        ctx.caps = {**_server_details(caps), **caps}
        ctx.current_context = NATIVE_CONTEXT

        if opts.reboot:
            if opts.avd:
                logger.info("avd_name_defined", avd=opts.avd)
            else:
                opts.avd = derive_avd_name(opts.device_name, opts.platform_version)
            opts.avd_args = add_wipe_data_to_avd_args(opts.avd_args)

        # Host port
        if not opts.system_port:
            opts.system_port = await self._ports.acquire(*SYSTEM_PORT_RANGE)
        ctx.system_port = opts.system_port
        logger.info("port_allocated", session_id=self.session_id, port=ctx.system_port)

        # Device
        device = await self._devices.resolve_device(opts)
        ctx.device = device
        ctx.emulator_booted = device.emulator_booted
        opts.udid = device.serial

        # Application artifact
        if opts.app:
            resolved = await self._resolver.resolve(
                opts.app,
                app_package=opts.app_package,
                no_sign=opts.no_sign,
                keystore=self._keystore(opts),
            )
            opts.app = str(resolved)
            logger.info("app_resolved", app=opts.app)
        elif ctx.app_on_device:
            logger.info("app_on_device", package=opts.app_package)
            if not await device.is_app_installed(str(opts.app_package)):
                raise package_not_installed_error(str(opts.app_package))

        await self._bootstrap(device)
        return ctx.caps

    async def _bootstrap(self, device: AndroidDevice) -> None:
        ctx = self.ctx
        opts = ctx.opts

        if await device.api_level() >= HIDDEN_API_LEVEL:
            logger.warning("relaxing_hidden_api_policy", serial=device.serial)
            await device.set_hidden_api_policy("1", opts.ignore_hidden_api_policy_error)

        await self._merge_launch_info()
        await self._init_device(device)

        try:
            if await device.is_animation_on():
                await device.set_animation_state(False)
                ctx.was_animation_enabled = True
        except DriverError as exc:
            logger.warning("animation_disable_failed", serial=device.serial, error=str(exc))

        ctx.caps["deviceName"] = device.cur_device_id
        ctx.caps["deviceUDID"] = opts.udid

        server = self._server_factory(
            device,
            host=opts.server_host,
            system_port=ctx.system_port,
            device_port=DEVICE_PORT,
            app_package=opts.app_package,
            app_activity=opts.app_activity,
            server_apk=opts.espresso_server_apk,
            force_reinstall=opts.force_espresso_rebuild,
            server_launch_timeout_ms=opts.espresso_server_launch_timeout,
            android_install_timeout_ms=opts.android_install_timeout,
            disable_suppress_accessibility_service=opts.disable_suppress_accessibility_service,
            tooling=self._server_tooling(opts),
        )
        ctx.server = server
        self._proxy_request = server.proxy_request
        self._proxy_command = server.proxy_command

        logger.debug("forwarding_server_port", local=ctx.system_port, remote=DEVICE_PORT)
        await device.forward_port(int(ctx.system_port or 0), DEVICE_PORT)

        if opts.skip_unlock:
            logger.debug("unlock_skipped", reason="skipUnlock capability is set")
        else:
            await device.unlock()

        await self._init_aut(device, server)

        caps = self._final_app_caps()
        await server.start_session(caps)

        if opts.auto_launch:
            await device.wait_for_activity(
                caps["appWaitPackage"], caps["appWaitActivity"], opts.app_wait_duration
            )
        else:
            logger.info("activity_wait_skipped", reason="autoLaunch is disabled")

        if opts.auto_webview:
            await self.init_webview()

        ctx.proxy_active = True
        logger.info("proxy_activated", session_id=self.session_id)

        await self._add_device_info_to_caps(device)

    async def _merge_launch_info(self) -> None:
        opts = self.ctx.opts
        if not opts.app or (opts.app_package and opts.app_activity):
            return
        info = await self._tooling.read_launch_info(Path(opts.app))
        if info is None:
            return
        opts.app_package = opts.app_package or info.app_package
        opts.app_activity = opts.app_activity or info.app_activity
        logger.info(
            "launch_info_merged", app_package=opts.app_package, app_activity=opts.app_activity
        )

    async def _init_device(self, device: AndroidDevice) -> None:
        opts = self.ctx.opts
        await device.start_logcat()
        if opts.unicode_keyboard:
            self.ctx.default_ime = await device.get_default_ime()
            await device.set_ime(UNICODE_IME)
            logger.info("unicode_ime_enabled", previous=self.ctx.default_ime)

    async def _init_aut(self, device: AndroidDevice, server: EspressoServer) -> None:
        opts = self.ctx.opts

        if opts.uninstall_other_packages:
            await self._uninstall_other_packages(device, opts.uninstall_other_packages)

        if not opts.app:
            if opts.full_reset:
                raise capability_validation_error(
                    "Full reset requires an app capability, use fastReset if app is not provided"
                )
            logger.debug("app_assumed_on_device", package=opts.app_package)
            if opts.fast_reset and opts.app_package:
                await device.clear_app(opts.app_package)
        else:
            if not opts.skip_uninstall and opts.app_package:
                await device.uninstall_apk(opts.app_package)
            await device.install_apk(opts.app, timeout_ms=opts.android_install_timeout)

        if opts.skip_server_installation:
            logger.debug("server_installation_skipped")
            return
        await server.install_test_apk()
        try:
            await device.add_to_device_idle_whitelist(*RESERVED_PACKAGES)
        except DriverError as exc:
            logger.warning("idle_whitelist_failed", packages=RESERVED_PACKAGES, error=str(exc))

    async def _uninstall_other_packages(self, device: AndroidDevice, packages: list[str]) -> None:
        if "*" in packages:
            packages = await device.list_packages(third_party=True)
        for package in packages:
            if package in RESERVED_PACKAGES or package == self.ctx.opts.app_package:
                continue
            await device.uninstall_apk(package)

    def _final_app_caps(self) -> dict[str, Any]:
        """Fill package/activity capabilities, qualifying relative activity names."""
        caps = self.ctx.caps
        opts = self.ctx.opts
        if not caps.get("appPackage"):
            caps["appPackage"] = opts.app_package
        if not caps.get("appWaitPackage"):
            caps["appWaitPackage"] = opts.app_wait_package or opts.app_package or caps["appPackage"]
        caps["appActivity"] = qualify_activity_name(
            caps.get("appActivity") or opts.app_activity, caps["appPackage"]
        )
        caps["appWaitActivity"] = qualify_activity_name(
            caps.get("appWaitActivity") or opts.app_wait_activity or caps["appActivity"],
            caps["appWaitPackage"],
        )
        return caps

    async def _add_device_info_to_caps(self, device: AndroidDevice) -> None:
        info = await device.device_info()
        caps = self.ctx.caps
        api_version = str(info.get("apiVersion") or "")
        caps["deviceApiLevel"] = int(api_version) if api_version.isdigit() else None
        caps["platformVersion"] = info.get("platformVersion")
        caps["deviceScreenSize"] = info.get("realDisplaySize")
        caps["deviceScreenDensity"] = info.get("displayDensity")
        caps["deviceModel"] = info.get("model")
        caps["deviceManufacturer"] = info.get("manufacturer")

    def _server_tooling(self, opts: SessionOptions) -> ApkTooling | None:
        if not opts.use_keystore:
            return None
        return self._tooling.with_keystore(self._keystore(opts))

    @staticmethod
    def _keystore(opts: SessionOptions) -> KeystoreConfig | None:
        if not (opts.use_keystore and opts.keystore_path):
            return None
        return KeystoreConfig(
            path=Path(opts.keystore_path).expanduser(),
            password=opts.keystore_password or "",
            alias=opts.key_alias or "",
            key_password=opts.key_password,
        )

    # Contexts

    async def set_context(self, name: str | None) -> None:
        """Switch between the native context and a web view context."""
        ctx = self.ctx
        if not name or name == NATIVE_CONTEXT:
            await self._stop_webview_engine()
            ctx.current_context = NATIVE_CONTEXT
            return
        if not name.startswith(WEBVIEW_PREFIX) or self._webview_factory is None:
            raise no_such_context_error(name)
        if ctx.webview_engine is not None and ctx.current_context == name:
            return
        await self._stop_webview_engine()
        ctx.webview_engine = await self._webview_factory.create(ctx, name)
        ctx.current_context = name
        logger.info("context_switched", session_id=self.session_id, context=name)

    async def init_webview(self) -> None:
        """Enter the app's default web view, retrying until the timeout elapses."""
        view_name = self.ctx.default_webview_name()
        timeout = self.ctx.opts.auto_webview_timeout or 2000
        attempts = max(1, int(timeout / (WEBVIEW_RETRY_INTERVAL * 1000)))
        logger.info("webview_context_setting", context=view_name, timeout_ms=timeout)
        for attempt in range(1, attempts + 1):
            try:
                await self.set_context(view_name)
                return
            except DriverError as exc:
                if attempt == attempts:
                    raise
                logger.debug("webview_context_retry", attempt=attempt, error=str(exc))
                await asyncio.sleep(WEBVIEW_RETRY_INTERVAL)

    async def _stop_webview_engine(self) -> None:
        engine = self.ctx.webview_engine
        self.ctx.webview_engine = None
        if engine is not None:
            await engine.stop()

    # Commands

    def register_aux_handler(self, remover: AuxHandlerRemover) -> None:
        """Register a callback that removes a per-session transport handler."""
        self._aux_handlers.append(remover)

    async def proxy_request(self, method: str, path: str, body: bytes | None) -> ProxyResponse:
        if self._proxy_request is None:
            raise proxy_inactive_error(self.session_id)
        return await self._proxy_request(method, path, body)

    async def proxy_command(
        self, path: str, method: str, body: dict[str, Any] | None = None
    ) -> Any:
        if self._proxy_command is None:
            raise proxy_inactive_error(self.session_id)
        return await self._proxy_command(path, method, body)

    def route(self, method: str, path: str) -> routing.RouteDecision:
        return routing.decide(method, path, self.ctx)

    async def execute(self, method: str, path: str, body: bytes | None) -> ProxyResponse:
        """Run one session command where the routing policy sends it."""
        decision = self.route(method, path)
        logger.debug("command_routed", method=method, path=path, decision=decision.value)

        if decision is routing.RouteDecision.LOCAL:
            try:
                payload = json.loads(body) if body else {}
            except json.JSONDecodeError as exc:
                raise invalid_argument_error(f"Request body is not JSON: {exc}") from exc
            if not isinstance(payload, dict):
                raise invalid_argument_error("Request body must be a JSON object")
            value = await self.commands.dispatch(method, path, payload)
            return _json_response(value)

        if not routing.proxy_active(self.ctx):
            raise proxy_inactive_error(self.session_id)
        engine = self.ctx.webview_engine
        if decision is routing.RouteDecision.FORWARD_SECONDARY and engine is not None:
            return await engine.proxy_request(method, path, body)
        return await self.proxy_request(method, path, body)

    # Teardown

    async def delete(self) -> None:
        """Tear the session down; every step is best-effort and this never raises."""
        ctx = self.ctx
        opts = ctx.opts
        self.state = SessionState.DELETING
        was_active = ctx.proxy_active
        ctx.proxy_active = False
        logger.info("session_deleting", session_id=self.session_id, proxy_was_active=was_active)

        await self._best_effort("aux_handlers_removed", self._remove_aux_handlers)

        server = ctx.server
        ctx.server = None
        self._proxy_request = None
        self._proxy_command = None
        if server is not None:
            if was_active:
                await self._best_effort("server_session_deleted", server.delete_session)
            else:
                await self._best_effort("server_closed", server.close)
        await self._best_effort("webview_engine_stopped", self._stop_webview_engine)
        ctx.current_context = NATIVE_CONTEXT

        device = ctx.device
        if device is not None:
            await asyncio.gather(
                self._best_effort("screen_recording_stopped", self._stop_screen_recording),
                self._best_effort("media_projection_stopped", self._stop_media_projection),
                self._best_effort("screen_streaming_stopped", self._stop_screen_streaming),
            )

            if ctx.was_animation_enabled:
                await self._best_effort(
                    "animation_restored", lambda: device.set_animation_state(True)
                )
                ctx.was_animation_enabled = False

            if opts.unicode_keyboard and opts.reset_keyboard and ctx.default_ime:
                ime = ctx.default_ime
                logger.debug("ime_resetting", ime=ime)
                await self._best_effort("ime_restored", lambda: device.set_ime(ime))

            app_package = opts.app_package
            if not opts.is_chrome_session and app_package and not opts.dont_stop_app_on_reset:
                await self._best_effort("app_stopped", lambda: device.force_stop(app_package))

            uninstall = opts.full_reset and not opts.skip_uninstall and not ctx.app_on_device
            if uninstall and app_package:
                logger.debug("full_reset_uninstalling", package=app_package)
                await self._best_effort(
                    "app_uninstalled", lambda: device.uninstall_apk(app_package)
                )

            await self._best_effort("logcat_stopped", device.stop_logcat)

            if ctx.emulator_booted:
                avd_name = (opts.avd or "").lstrip("@")
                await self._best_effort("emulator_killed", lambda: device.kill_emulator(avd_name))
                ctx.emulator_booted = False

            await self._best_effort("hidden_api_policy_restored", self._restore_hidden_api_policy)

            if ctx.system_port is not None:
                port = ctx.system_port
                await self._best_effort(
                    "port_forward_removed", lambda: device.remove_port_forward(port)
                )

        self.state = SessionState.IDLE
        logger.info("session_deleted", session_id=self.session_id)

    async def _best_effort(self, step: str, action: Callable[[], Awaitable[Any]]) -> None:
        try:
            await action()
        except Exception as exc:
            logger.warning("teardown_step_failed", step=step, error=str(exc))
        else:
            logger.debug(step, session_id=self.session_id)

    async def _remove_aux_handlers(self) -> None:
        handlers, self._aux_handlers = self._aux_handlers, []
        for remover in handlers:
            await remover()

    async def _stop_screen_recording(self) -> None:
        recording = self.ctx.screen_recording
        self.ctx.screen_recording = None
        if recording is not None and self.ctx.device is not None:
            await self.ctx.device.stop_screen_recording(recording)

    async def _stop_media_projection(self) -> None:
        device = self.ctx.device
        if device is not None and await device.is_media_projection_recording_running():
            await device.stop_media_projection_recording()

    async def _stop_screen_streaming(self) -> None:
        streaming = self.ctx.screen_streaming
        self.ctx.screen_streaming = None
        if streaming is not None:
            await streaming.stop()

    async def _restore_hidden_api_policy(self) -> None:
        device = self.ctx.device
        if device is not None and await device.api_level() >= HIDDEN_API_LEVEL:
            logger.info("hidden_api_policy_restoring", serial=device.serial)
            await device.set_default_hidden_api_policy(
                self.ctx.opts.ignore_hidden_api_policy_error
            )

    def summary(self) -> dict[str, Any]:
        """Short description for session listings."""
        return {
            "id": self.session_id,
            "state": self.state.value,
            "udid": self.ctx.opts.udid,
            "context": self.ctx.current_context,
            "proxy_active": self.ctx.proxy_active,
            "created_at": self.ctx.created_at.isoformat(),
        }
