"""Pytest configuration and fixtures."""

from __future__ import annotations

import zipfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from android_espresso_driver.apps.tooling import LaunchInfo
from android_espresso_driver.db.models import Database
from android_espresso_driver.errors import DriverError, adb_command_error
from android_espresso_driver.interfaces import ProxyResponse


class FakeTooling:
    """Stands in for the SDK tools; records what it was asked to do."""

    def __init__(self) -> None:
        self.signed_ok = True
        self.sign_error: DriverError | None = None
        self.launch_info: LaunchInfo | None = LaunchInfo("com.example.app", ".MainActivity")
        self.calls: list[tuple[str, str]] = []

    def with_keystore(self, keystore: Any) -> FakeTooling:
        return self

    async def check_apk_cert(self, apk_path: Path, package: str | None) -> bool:
        self.calls.append(("check", str(apk_path)))
        return self.signed_ok

    async def sign(self, apk_path: Path, package: str | None) -> None:
        self.calls.append(("sign", str(apk_path)))
        if self.sign_error is not None:
            raise self.sign_error

    async def extract_universal_apk(self, aab_path: Path) -> Path:
        self.calls.append(("extract", str(aab_path)))
        out = aab_path.parent / "universal-out"
        out.mkdir(exist_ok=True)
        apk = out / f"{aab_path.stem}.apk"
        apk.write_bytes(b"universal")
        return apk

    async def read_launch_info(self, apk_path: Path) -> LaunchInfo | None:
        self.calls.append(("launch_info", str(apk_path)))
        return self.launch_info


class FakeDevice:
    """Device handle that records calls into a shared event log."""

    def __init__(self, events: list[str], serial: str = "emulator-5554") -> None:
        self.events = events
        self.serial = serial
        self.emulator_booted = False
        self.api = 30
        self.animation_on = True
        self.installed = {"io.appium.espressoserver.test"}
        self.third_party: list[str] = []
        self.media_projection_running = False
        self.fail: dict[str, DriverError] = {}
        self.focused: tuple[str | None, str | None] = ("com.example.app", "com.example.app.Main")

    @property
    def cur_device_id(self) -> str:
        return self.serial

    def _record(self, name: str, *args: Any) -> None:
        rendered = ",".join(str(arg) for arg in args)
        self.events.append(f"device.{name}({rendered})")
        if name in self.fail:
            raise self.fail[name]

    async def api_level(self) -> int:
        return self.api

    async def device_info(self) -> dict[str, Any]:
        return {
            "apiVersion": str(self.api),
            "platformVersion": "11",
            "manufacturer": "Google",
            "model": "Pixel 4",
            "realDisplaySize": "1080x2280",
            "displayDensity": 440,
        }

    async def is_app_installed(self, package: str) -> bool:
        return package in self.installed

    async def install_apk(self, apk_path: Path | str, *, timeout_ms: int = 90000) -> None:
        self._record("install_apk", apk_path, timeout_ms)

    async def uninstall_apk(self, package: str) -> bool:
        self._record("uninstall_apk", package)
        return True

    async def list_packages(self, third_party: bool = False) -> list[str]:
        return list(self.third_party)

    async def force_stop(self, package: str) -> None:
        self._record("force_stop", package)

    async def clear_app(self, package: str) -> None:
        self._record("clear_app", package)

    async def start_app(self, package: str, activity: str | None = None) -> None:
        self._record("start_app", package, activity)

    async def forward_port(self, system_port: int, device_port: int) -> None:
        self._record("forward_port", system_port, device_port)

    async def remove_port_forward(self, system_port: int) -> None:
        self._record("remove_port_forward", system_port)

    async def is_animation_on(self) -> bool:
        return self.animation_on

    async def set_animation_state(self, enabled: bool) -> None:
        self._record("set_animation_state", enabled)

    async def set_hidden_api_policy(self, value: str, ignore_error: bool = False) -> None:
        self._record("set_hidden_api_policy", value)

    async def set_default_hidden_api_policy(self, ignore_error: bool = False) -> None:
        self._record("set_default_hidden_api_policy")

    async def get_default_ime(self) -> str | None:
        return "com.android.inputmethod.latin/.LatinIME"

    async def set_ime(self, ime_id: str) -> None:
        self._record("set_ime", ime_id)

    async def add_to_device_idle_whitelist(self, *packages: str) -> None:
        self._record("add_to_device_idle_whitelist", *packages)

    async def unlock(self) -> None:
        self._record("unlock")

    async def focused_activity(self) -> tuple[str | None, str | None]:
        return self.focused

    async def wait_for_activity(self, package: str, activity: str, timeout_ms: int) -> None:
        self._record("wait_for_activity", package, activity, timeout_ms)

    async def start_logcat(self) -> Path:
        self._record("start_logcat")
        return Path("/tmp/logcat.log")

    async def stop_logcat(self) -> None:
        self._record("stop_logcat")

    async def stop_screen_recording(self, recording: Any) -> str:
        self._record("stop_screen_recording")
        return ""

    async def is_media_projection_recording_running(self) -> bool:
        return self.media_projection_running

    async def stop_media_projection_recording(self) -> None:
        self._record("stop_media_projection_recording")

    async def kill_emulator(self, avd_name: str | None = None) -> None:
        self._record("kill_emulator", avd_name)


class FakeDeviceManager:
    def __init__(self, device: FakeDevice) -> None:
        self.device = device
        self.resolved_with: Any = None

    async def resolve_device(self, opts: Any) -> FakeDevice:
        self.resolved_with = opts
        self.device.events.append("manager.resolve_device")
        return self.device


class FakePortAllocator:
    def __init__(self, port: int = 8300) -> None:
        self.port = port
        self.calls: list[tuple[int, int]] = []

    async def acquire(self, low: int, high: int) -> int:
        self.calls.append((low, high))
        return self.port


class FakeResolver:
    def __init__(self, events: list[str]) -> None:
        self.events = events

    async def resolve(self, app: str, **kwargs: Any) -> Path:
        self.events.append(f"resolver.resolve({app})")
        return Path(app)


class FakeServer:
    """On-device server stand-in built through the orchestrator's factory hook."""

    def __init__(self, events: list[str], device: Any, **kwargs: Any) -> None:
        self.events = events
        self.device = device
        self.kwargs = kwargs
        self.start_error: DriverError | None = None
        self.on_delete: Callable[[], None] | None = None
        self.requests: list[tuple[str, str, bytes | None]] = []

    async def install_test_apk(self) -> None:
        self.events.append("server.install_test_apk")

    async def start_session(self, caps: dict[str, Any]) -> str:
        self.events.append("server.start_session")
        if self.start_error is not None:
            raise self.start_error
        return "remote-1"

    async def delete_session(self) -> None:
        self.events.append("server.delete_session")
        if self.on_delete is not None:
            self.on_delete()

    async def close(self) -> None:
        self.events.append("server.close")

    async def proxy_request(self, method: str, path: str, body: bytes | None) -> ProxyResponse:
        self.requests.append((method, path, body))
        return ProxyResponse(200, b'{"value": "native"}', {"content-type": "application/json"})

    async def proxy_command(self, path: str, method: str, body: Any = None) -> Any:
        self.events.append(f"server.proxy_command({method} {path})")
        return "c2NyZWVu"


class FakeWebviewEngine:
    def __init__(self, name: str) -> None:
        self.name = name
        self.stopped = False
        self.requests: list[tuple[str, str, bytes | None]] = []

    async def proxy_request(self, method: str, path: str, body: bytes | None) -> ProxyResponse:
        self.requests.append((method, path, body))
        return ProxyResponse(200, b'{"value": "web"}', {"content-type": "application/json"})

    async def stop(self) -> None:
        self.stopped = True


class FakeWebviewFactory:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts = 0
        self.engines: list[FakeWebviewEngine] = []

    async def create(self, ctx: Any, context_name: str) -> FakeWebviewEngine:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise adb_command_error("forward webview", "socket not found")
        engine = FakeWebviewEngine(context_name)
        self.engines.append(engine)
        return engine


@pytest.fixture
def events() -> list[str]:
    return []


@pytest.fixture
def fake_tooling() -> FakeTooling:
    return FakeTooling()


@pytest.fixture
def fake_device(events: list[str]) -> FakeDevice:
    return FakeDevice(events)


@pytest.fixture
def make_orchestrator(
    events: list[str], fake_device: FakeDevice, fake_tooling: FakeTooling
) -> Callable[..., Any]:
    """Build an orchestrator wired to fakes; the last built server is on ``.servers``."""
    from android_espresso_driver.session.orchestrator import SessionOrchestrator

    def _make(**kwargs: Any) -> Any:
        servers: list[FakeServer] = []

        def server_factory(device: Any, **server_kwargs: Any) -> FakeServer:
            server = FakeServer(events, device, **server_kwargs)
            servers.append(server)
            return server

        orchestrator = SessionOrchestrator(
            FakeResolver(events),  # type: ignore[arg-type]
            device_manager=kwargs.pop("device_manager", FakeDeviceManager(fake_device)),
            port_allocator=kwargs.pop("port_allocator", FakePortAllocator()),
            server_factory=server_factory,  # type: ignore[arg-type]
            tooling=fake_tooling,  # type: ignore[arg-type]
            session_id="sess-1",
            **kwargs,
        )
        orchestrator.servers = servers  # type: ignore[attr-defined]
        return orchestrator

    return _make


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Connected cache database in a temp dir."""
    db = Database(tmp_path / "state.db")
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def make_zip(tmp_path: Path) -> Callable[[str, dict[str, bytes]], Path]:
    """Write a zip archive holding the given members."""

    def _make(name: str, members: dict[str, bytes]) -> Path:
        path = tmp_path / name
        with zipfile.ZipFile(path, "w") as archive:
            for member, data in members.items():
                archive.writestr(member, data)
        return path

    return _make
