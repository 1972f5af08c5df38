"""Device manager - device selection, emulator boot and per-device adb control."""

from __future__ import annotations

import asyncio
import base64
import fnmatch
import os
import re
import shlex
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from adbutils import AdbError

from android_espresso_driver.db.models import STATE_DIR
from android_espresso_driver.errors import (
    DriverError,
    activity_wait_timeout_error,
    adb_command_error,
    adb_not_found_error,
    device_unavailable_error,
    emulator_launch_error,
    tool_not_found_error,
)
from android_espresso_driver.validation import qualify_activity_name

if TYPE_CHECKING:
    from adbutils import AdbClient, AdbDevice

    from android_espresso_driver.session.options import SessionOptions

logger = structlog.get_logger()

LOG_DIR = STATE_DIR / "logs"

UNICODE_IME = "io.appium.settings/.UnicodeIME"
SETTINGS_HELPER_PKG_ID = "io.appium.settings"
RECORDER_SERVICE = f"{SETTINGS_HELPER_PKG_ID}/.recorder.RecorderService"
RECORDER_STOP_ACTION = f"{SETTINGS_HELPER_PKG_ID}.recording.ACTION_STOP"

ANIMATION_SETTINGS = (
    "window_animation_scale",
    "transition_animation_scale",
    "animator_duration_scale",
)
HIDDEN_API_POLICY_KEYS = (
    "hidden_api_policy_pre_p_apps",
    "hidden_api_policy_p_apps",
    "hidden_api_policy",
)

_FOCUS_RE = re.compile(r"(?:mCurrentFocus|mFocusedApp)=.*?\s([\w.$]+)/([\w.$]+)")
_SIZE_RE = re.compile(r"(?:Override|Physical) size:\s*(\d+x\d+)")
_DENSITY_RE = re.compile(r"(?:Override|Physical) density:\s*(\d+)")
_WEBVIEW_SOCKET_RE = re.compile(r"@webview_devtools_remote_(\d+)")
_LOCKED_MARKERS = (
    "mDreamingLockscreen=true",
    "mShowingLockscreen=true",
    "isStatusBarKeyguard=true",
    "mIsShowing=true",
)
ACTIVITY_POLL_INTERVAL = 0.5
REMOTE_STAGING_DIR = "/data/local/tmp"


@dataclass
class ScreenRecording:
    """A screenrecord process running on the device."""

    remote_path: str
    process: subprocess.Popen[bytes]
    started_at: float = field(default_factory=time.monotonic)


class AndroidDevice:
    """Per-device control handle over adbutils and the adb binary."""

    def __init__(
        self,
        serial: str,
        device: AdbDevice,
        *,
        adb_host: str = "127.0.0.1",
        adb_port: int = 5037,
        emulator_booted: bool = False,
    ) -> None:
        self.serial = serial
        self._device = device
        self.adb_host = adb_host
        self.adb_port = adb_port
        self.emulator_booted = emulator_booted
        self._api_level: int | None = None
        self._logcat: subprocess.Popen[bytes] | None = None
        self.logcat_path: Path | None = None

    @property
    def cur_device_id(self) -> str:
        return self.serial

    # Properties

    async def api_level(self) -> int:
        """Return the device SDK level (cached)."""
        if self._api_level is None:
            sdk = await self.get_prop("ro.build.version.sdk")
            self._api_level = int(sdk) if sdk.isdigit() else 0
        return self._api_level

    async def get_prop(self, name: str) -> str:
        def _get() -> str:
            return str(self._device.prop.get(name) or "")

        try:
            return (await asyncio.to_thread(_get)).strip()
        except AdbError as exc:
            raise adb_command_error(f"getprop {name}", str(exc)) from exc

    async def device_info(self) -> dict[str, Any]:
        """Return API level, platform version, screen and vendor details."""
        size_output = await self.shell("wm size")
        density_output = await self.shell("wm density")
        size_match = _SIZE_RE.findall(size_output)
        density_match = _DENSITY_RE.findall(density_output)
        return {
            "apiVersion": await self.get_prop("ro.build.version.sdk"),
            "platformVersion": await self.get_prop("ro.build.version.release"),
            "manufacturer": await self.get_prop("ro.product.manufacturer"),
            "model": await self.get_prop("ro.product.model"),
            "realDisplaySize": size_match[-1] if size_match else None,
            "displayDensity": int(density_match[-1]) if density_match else None,
        }

    # Packages

    async def is_app_installed(self, package: str) -> bool:
        output = await self.shell(f"pm path {package}")
        return "package:" in output

    async def install_apk(self, apk_path: Path | str, *, timeout_ms: int = 90000) -> None:
        """Install (or replace) a package, granting runtime permissions.

        The package is staged under /data/local/tmp and installed with pm.

        Raises:
            DriverError: If the push fails or pm does not report success
        """
        local = Path(apk_path)
        remote = f"{REMOTE_STAGING_DIR}/{local.name}"
        command = f"pm install -r -g {shlex.quote(remote)}"

        def _install() -> str:
            self._device.sync.push(str(local), remote)
            try:
                return str(self._device.shell(command, timeout=timeout_ms / 1000))
            finally:
                self._device.shell(f"rm -f {shlex.quote(remote)}")

        try:
            output = await asyncio.to_thread(_install)
        except AdbError as exc:
            raise adb_command_error(command, str(exc)) from exc
        if "Success" not in output:
            raise adb_command_error(command, output.strip() or "no output from pm install")
        logger.info("apk_installed", serial=self.serial, path=str(apk_path))

    async def uninstall_apk(self, package: str) -> bool:
        """Uninstall a package; returns False if it was not installed."""
        output = await self.shell(f"pm uninstall {package}")
        removed = "Success" in output
        logger.info("apk_uninstalled", serial=self.serial, package=package, removed=removed)
        return removed

    async def list_packages(self, third_party: bool = False) -> list[str]:
        output = await self.shell("pm list packages -3" if third_party else "pm list packages")
        return [
            line.strip().removeprefix("package:")
            for line in output.splitlines()
            if line.strip().startswith("package:")
        ]

    async def force_stop(self, package: str) -> None:
        await self.shell(f"am force-stop {package}")

    async def clear_app(self, package: str) -> None:
        await self.shell(f"pm clear {package}")

    async def start_app(self, package: str, activity: str | None = None) -> None:
        """Start an activity, or the launcher activity when none is given."""
        if activity:
            component = f"{package}/{qualify_activity_name(activity, package)}"
            await self.shell(f"am start -W -n {component}")
        else:
            await self.shell(f"monkey -p {package} -c android.intent.category.LAUNCHER 1")

    # Networking

    async def forward_port(self, system_port: int, device_port: int) -> None:
        def _forward() -> None:
            self._device.forward(f"tcp:{system_port}", f"tcp:{device_port}")

        try:
            await asyncio.to_thread(_forward)
        except AdbError as exc:
            raise adb_command_error(f"forward tcp:{system_port}", str(exc)) from exc
        logger.debug("port_forwarded", serial=self.serial, local=system_port, remote=device_port)

    async def remove_port_forward(self, system_port: int) -> None:
        try:
            await asyncio.to_thread(self._device.forward_remove, f"tcp:{system_port}", False)
        except AdbError as exc:
            raise adb_command_error(f"forward --remove tcp:{system_port}", str(exc)) from exc
        logger.debug("port_forward_removed", serial=self.serial, local=system_port)

    # Settings

    async def is_animation_on(self) -> bool:
        for key in ANIMATION_SETTINGS:
            value = (await self.shell(f"settings get global {key}")).strip()
            if value not in {"0", "0.0", "null", ""}:
                return True
        return False

    async def set_animation_state(self, enabled: bool) -> None:
        scale = "1" if enabled else "0"
        for key in ANIMATION_SETTINGS:
            await self.shell(f"settings put global {key} {scale}")

    async def set_hidden_api_policy(self, value: str, ignore_error: bool = False) -> None:
        """Relax (or set) the hidden API access policy."""
        try:
            for key in HIDDEN_API_POLICY_KEYS:
                await self.shell(f"settings put global {key} {shlex.quote(value)}")
        except DriverError as exc:
            if not ignore_error:
                raise
            logger.warning("hidden_api_policy_failed", serial=self.serial, error=str(exc))

    async def set_default_hidden_api_policy(self, ignore_error: bool = False) -> None:
        try:
            for key in HIDDEN_API_POLICY_KEYS:
                await self.shell(f"settings delete global {key}")
        except DriverError as exc:
            if not ignore_error:
                raise
            logger.warning("hidden_api_policy_restore_failed", serial=self.serial, error=str(exc))

    async def get_default_ime(self) -> str | None:
        value = (await self.shell("settings get secure default_input_method")).strip()
        return value if value and value != "null" else None

    async def set_ime(self, ime_id: str) -> None:
        await self.shell(f"ime enable {ime_id}")
        await self.shell(f"ime set {ime_id}")

    async def add_to_device_idle_whitelist(self, *packages: str) -> None:
        for package in packages:
            await self.shell(f"dumpsys deviceidle whitelist +{package}")

    async def display_density(self) -> int | None:
        match = _DENSITY_RE.findall(await self.shell("wm density"))
        return int(match[-1]) if match else None

    async def is_keyboard_shown(self) -> bool:
        return "mInputShown=true" in await self.shell("dumpsys input_method")

    async def system_time(self, fmt: str = "+%Y-%m-%dT%T%z") -> str:
        return (await self.shell(f"date {shlex.quote(fmt)}")).strip()

    async def list_webview_packages(self) -> list[str]:
        """Packages exposing a web view devtools socket."""
        sockets = await self.shell("cat /proc/net/unix")
        pids = sorted(set(_WEBVIEW_SOCKET_RE.findall(sockets)))
        if not pids:
            return []
        processes = await self.shell("ps -A -o PID,NAME")
        names: dict[str, str] = {}
        for line in processes.splitlines()[1:]:
            parts = line.split()
            if len(parts) >= 2:
                names[parts[0]] = parts[-1]
        return [names[pid] for pid in pids if pid in names]

    # Lock screen

    async def is_screen_locked(self) -> bool:
        output = await self.shell("dumpsys window")
        return any(marker in output for marker in _LOCKED_MARKERS)

    async def lock(self) -> None:
        if not await self.is_screen_locked():
            await self.shell("input keyevent 26")

    async def unlock(self) -> None:
        """Wake the device and dismiss a swipe keyguard."""
        if not await self.is_screen_locked():
            logger.debug("screen_already_unlocked", serial=self.serial)
            return
        await self.shell("input keyevent 224")
        await self.shell("wm dismiss-keyguard")
        await self.shell("input keyevent 82")
        logger.info("screen_unlocked", serial=self.serial)

    # Activities

    async def focused_activity(self) -> tuple[str | None, str | None]:
        """Return (package, activity) currently in the foreground."""
        output = await self.shell("dumpsys window")
        match = _FOCUS_RE.search(output)
        if not match:
            return None, None
        package, activity = match.group(1), match.group(2)
        return package, qualify_activity_name(activity, package)

    async def wait_for_activity(
        self, package: str | None, activity: str | None, timeout_ms: int
    ) -> None:
        """Poll the focused window until it matches package/activity patterns.

        Both values may contain ``*`` wildcards; ``activity`` may list several
        comma-separated names.

        Raises:
            DriverError: If no match appears within the timeout
        """
        wanted_activities = [
            qualify_activity_name(name.strip(), package) or "*"
            for name in (activity or "*").split(",")
            if name.strip()
        ]
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            cur_package, cur_activity = await self.focused_activity()
            if cur_package and cur_activity:
                package_ok = fnmatch.fnmatchcase(cur_package, package or "*")
                activity_ok = any(
                    fnmatch.fnmatchcase(cur_activity, wanted) for wanted in wanted_activities
                )
                if package_ok and activity_ok:
                    logger.info(
                        "activity_focused",
                        serial=self.serial,
                        package=cur_package,
                        activity=cur_activity,
                    )
                    return
            if time.monotonic() >= deadline:
                raise activity_wait_timeout_error(package or "*", activity or "*", timeout_ms)
            await asyncio.sleep(ACTIVITY_POLL_INTERVAL)

    # Logs and recording

    async def start_logcat(self) -> Path:
        """Capture logcat output to a file under the state directory."""
        adb_path = self._adb_path()
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        stamp = time.strftime("%Y%m%d_%H%M%S")
        self.logcat_path = LOG_DIR / f"logcat_{self.serial.replace(':', '_')}_{stamp}.log"
        with self.logcat_path.open("ab") as handle:
            self._logcat = subprocess.Popen(
                [*self._adb_prefix(adb_path), "logcat", "-v", "threadtime"],
                stdout=handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        logger.info("logcat_started", serial=self.serial, path=str(self.logcat_path))
        return self.logcat_path

    async def stop_logcat(self) -> None:
        proc = self._logcat
        self._logcat = None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            await asyncio.to_thread(proc.wait, 5)
        except subprocess.TimeoutExpired:
            proc.kill()
        logger.info("logcat_stopped", serial=self.serial)

    async def read_logcat(self) -> list[str]:
        if self.logcat_path is None or not self.logcat_path.exists():
            return []
        text = await asyncio.to_thread(self.logcat_path.read_text, "utf-8", "replace")
        return text.splitlines()

    async def start_screen_recording(self, time_limit_sec: int = 180) -> ScreenRecording:
        adb_path = self._adb_path()
        remote_path = f"/sdcard/screenrecord_{int(time.time() * 1000)}.mp4"
        process = subprocess.Popen(
            [
                *self._adb_prefix(adb_path),
                "shell",
                "screenrecord",
                "--time-limit",
                str(time_limit_sec),
                remote_path,
            ],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info("screen_recording_started", serial=self.serial, remote_path=remote_path)
        return ScreenRecording(remote_path=remote_path, process=process)

    async def stop_screen_recording(self, recording: ScreenRecording) -> str:
        """Stop a recording and return the video as base64."""
        await self.shell("pkill -2 screenrecord || true")
        try:
            await asyncio.to_thread(recording.process.wait, 10)
        except subprocess.TimeoutExpired:
            recording.process.send_signal(signal.SIGTERM)

        with tempfile.TemporaryDirectory(prefix="screenrecord-") as tmp:
            local_path = Path(tmp) / "recording.mp4"
            try:
                await asyncio.to_thread(
                    self._device.sync.pull, recording.remote_path, str(local_path)
                )
            except AdbError as exc:
                raise adb_command_error(f"pull {recording.remote_path}", str(exc)) from exc
            payload = await asyncio.to_thread(local_path.read_bytes)
        await self.shell(f"rm -f {recording.remote_path}")
        logger.info("screen_recording_stopped", serial=self.serial, size=len(payload))
        return base64.b64encode(payload).decode("ascii")

    async def is_media_projection_recording_running(self) -> bool:
        output = await self.shell(f"dumpsys activity services {RECORDER_SERVICE}")
        return "ServiceRecord" in output

    async def stop_media_projection_recording(self) -> None:
        await self.shell(f"am broadcast -a {RECORDER_STOP_ACTION} -p {SETTINGS_HELPER_PKG_ID}")

    async def screenshot_png(self) -> bytes:
        def _capture() -> bytes:
            return bytes(self._device.shell("screencap -p", encoding=None))

        try:
            return await asyncio.to_thread(_capture)
        except AdbError as exc:
            raise adb_command_error("screencap -p", str(exc)) from exc

    # Emulator

    async def kill_emulator(self, avd_name: str | None = None) -> None:
        await self._run_adb(["emu", "kill"])
        logger.info("emulator_killed", serial=self.serial, avd=avd_name)

    # Plumbing

    def spawn_shell(self, args: list[str], log_name: str) -> subprocess.Popen[bytes]:
        """Run a long-lived shell command in the background, output to a log file."""
        adb_path = self._adb_path()
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        with (LOG_DIR / f"{log_name}_{self.serial.replace(':', '_')}.log").open("ab") as handle:
            return subprocess.Popen(
                [*self._adb_prefix(adb_path), "shell", *args],
                stdout=handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    async def shell(self, command: str) -> str:
        def _shell() -> str:
            return str(self._device.shell(command))

        try:
            return await asyncio.to_thread(_shell)
        except AdbError as exc:
            raise adb_command_error(command, str(exc)) from exc

    def _adb_path(self) -> str:
        adb_path = shutil.which("adb")
        if not adb_path:
            raise adb_not_found_error()
        return adb_path

    def _adb_prefix(self, adb_path: str) -> list[str]:
        return [adb_path, "-H", self.adb_host, "-P", str(self.adb_port), "-s", self.serial]

    async def _run_adb(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        def _run() -> subprocess.CompletedProcess[str]:
            return subprocess.run(
                [*self._adb_prefix(self._adb_path()), *args],
                check=check,
                capture_output=True,
                text=True,
                timeout=timeout,
            )

        try:
            return await asyncio.to_thread(_run)
        except DriverError:
            raise
        except FileNotFoundError as exc:
            raise adb_not_found_error() from exc
        except subprocess.TimeoutExpired as exc:
            raise adb_command_error(" ".join(args), f"timed out after {timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            reason = (exc.stderr or exc.stdout or str(exc)).strip()
            raise adb_command_error(" ".join(args), reason) from exc


class DeviceManager:
    """Selects the device for a session, booting an emulator when asked to."""

    def __init__(self, boot_poll_interval: float = 2.0) -> None:
        self.boot_poll_interval = boot_poll_interval

    def client(self, opts: SessionOptions) -> AdbClient:
        from adbutils import AdbClient

        return AdbClient(host=opts.remote_adb_host or "127.0.0.1", port=opts.adb_port)

    async def list_serials(self, opts: SessionOptions) -> list[str]:
        """List serials of online devices on the session's adb server."""
        client = self.client(opts)

        def _list() -> list[str]:
            return [dev.serial for dev in client.device_list() if dev.serial]

        return await asyncio.to_thread(_list)

    async def resolve_device(self, opts: SessionOptions) -> AndroidDevice:
        """Pick the device for a session from udid, avd or the connected devices.

        Raises:
            DriverError: If no suitable device is available
        """
        serials = await self.list_serials(opts)
        emulator_booted = False

        if opts.udid:
            if opts.udid not in serials:
                raise device_unavailable_error(opts.udid, "device is not connected")
            serial = opts.udid
        elif opts.avd:
            avd_name = opts.avd.lstrip("@")
            running = await self._find_running_avd(opts, serials, avd_name)
            if running and not opts.reboot:
                serial = running
            else:
                if running:
                    await self._build(opts, running).kill_emulator(avd_name)
                serial = await self.launch_avd(opts, avd_name)
                emulator_booted = True
        else:
            if not serials:
                raise device_unavailable_error(None, "no connected devices")
            if len(serials) > 1:
                logger.warning("multiple_devices_connected", serials=serials, chosen=serials[0])
            serial = serials[0]

        device = self._build(opts, serial, emulator_booted=emulator_booted)
        logger.info("device_resolved", serial=serial, emulator_booted=emulator_booted)
        return device

    async def launch_avd(self, opts: SessionOptions, avd_name: str) -> str:
        """Boot an emulator and wait until it reports boot completed."""
        emulator = self._emulator_binary()
        before = set(await self.list_serials(opts))
        args = [emulator, "-avd", avd_name, *shlex.split(opts.avd_args or "")]
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        with (LOG_DIR / f"emulator_{avd_name}.log").open("ab") as handle:
            subprocess.Popen(args, stdout=handle, stderr=subprocess.STDOUT, start_new_session=True)
        logger.info("emulator_launching", avd=avd_name, args=args[1:])

        deadline = time.monotonic() + opts.avd_launch_timeout / 1000
        while time.monotonic() < deadline:
            await asyncio.sleep(self.boot_poll_interval)
            candidates = [s for s in await self.list_serials(opts) if s not in before]
            for serial in candidates:
                device = self._build(opts, serial)
                try:
                    booted = await device.get_prop("sys.boot_completed") == "1"
                except Exception as exc:
                    logger.debug("emulator_boot_poll_failed", serial=serial, error=str(exc))
                    continue
                if booted:
                    logger.info("emulator_booted", avd=avd_name, serial=serial)
                    return serial
        raise emulator_launch_error(avd_name, f"not booted within {opts.avd_launch_timeout}ms")

    async def _find_running_avd(
        self, opts: SessionOptions, serials: list[str], avd_name: str
    ) -> str | None:
        for serial in serials:
            if not serial.startswith("emulator-"):
                continue
            device = self._build(opts, serial)
            result = await device._run_adb(["emu", "avd", "name"], check=False)
            name = result.stdout.splitlines()[0].strip() if result.stdout else ""
            if name == avd_name:
                return serial
        return None

    def _build(
        self, opts: SessionOptions, serial: str, *, emulator_booted: bool = False
    ) -> AndroidDevice:
        client = self.client(opts)
        return AndroidDevice(
            serial,
            client.device(serial=serial),
            adb_host=opts.remote_adb_host or "127.0.0.1",
            adb_port=opts.adb_port,
            emulator_booted=emulator_booted,
        )

    @staticmethod
    def _emulator_binary() -> str:
        found = shutil.which("emulator")
        if found:
            return found
        sdk_root = os.environ.get("ANDROID_HOME") or os.environ.get("ANDROID_SDK_ROOT")
        if sdk_root:
            candidate = Path(sdk_root) / "emulator" / "emulator"
            if candidate.is_file():
                return str(candidate)
        raise tool_not_found_error("emulator")
