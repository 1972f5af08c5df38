"""Tests for the local command layer."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from android_espresso_driver.errors import DriverError
from android_espresso_driver.session.commands import (
    AndroidCommands,
    EspressoCommands,
    LocalCommandTable,
)
from android_espresso_driver.session.context import SessionContext
from android_espresso_driver.session.options import SessionOptions


def _orchestrator(device: Any = None, **opts: Any) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.ctx = SessionContext(
        session_id="s1", opts=SessionOptions(**opts), device=device
    )
    orchestrator.set_context = AsyncMock()
    orchestrator.proxy_command = AsyncMock(return_value="c2NyZWVu")
    return orchestrator


def _device() -> MagicMock:
    device = MagicMock()
    device.focused_activity = AsyncMock(return_value=("com.example.app", ".Main"))
    device.list_webview_packages = AsyncMock(return_value=["com.example.app"])
    device.force_stop = AsyncMock()
    device.start_app = AsyncMock()
    device.is_app_installed = AsyncMock(return_value=True)
    device.uninstall_apk = AsyncMock(return_value=True)
    device.screenshot_png = AsyncMock(return_value=b"\x89PNG")
    device.read_logcat = AsyncMock(return_value=["line one", "line two"])
    device.is_screen_locked = AsyncMock(return_value=False)
    return device


class TestLocalCommandTable:
    """Tests for dispatch."""

    @pytest.mark.asyncio
    async def test_current_activity_and_package(self) -> None:
        """Should answer from the focused window."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        activity = await table.dispatch("GET", "/session/s1/appium/device/current_activity", {})
        package = await table.dispatch("GET", "/session/s1/appium/device/current_package", {})

        assert activity == ".Main"
        assert package == "com.example.app"

    @pytest.mark.asyncio
    async def test_contexts(self) -> None:
        """Should list native plus one context per debuggable web view."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        contexts = await table.dispatch("GET", "/session/s1/contexts", {})
        current = await table.dispatch("GET", "/session/s1/context", {})

        assert contexts == ["NATIVE_APP", "WEBVIEW_com.example.app"]
        assert current == "NATIVE_APP"

    @pytest.mark.asyncio
    async def test_set_context_delegates(self) -> None:
        """Should hand context switches to the orchestrator."""
        orchestrator = _orchestrator(_device())
        table = LocalCommandTable(AndroidCommands(orchestrator))

        await table.dispatch("POST", "/session/s1/context", {"name": "WEBVIEW_com.example.app"})

        orchestrator.set_context.assert_awaited_once_with("WEBVIEW_com.example.app")

    @pytest.mark.asyncio
    async def test_set_context_requires_name(self) -> None:
        """Should reject a body without a name."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/context", {})

        assert exc_info.value.code == "ERR_INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_timeouts_round_trip(self) -> None:
        """Should store timeouts on the session."""
        orchestrator = _orchestrator(_device())
        table = LocalCommandTable(AndroidCommands(orchestrator))

        await table.dispatch("POST", "/session/s1/timeouts", {"implicit": 500, "script": None})
        timeouts = await table.dispatch("GET", "/session/s1/timeouts", {})

        assert timeouts == {"implicit": 500}

    @pytest.mark.asyncio
    async def test_bad_timeout_value(self) -> None:
        """Should turn conversion errors into invalid argument errors."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/timeouts", {"implicit": "soon"})

        assert exc_info.value.code == "ERR_INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_app_lifecycle(self) -> None:
        """Should drive apps by id."""
        device = _device()
        table = LocalCommandTable(
            AndroidCommands(_orchestrator(device, app_package="com.example.app"))
        )

        await table.dispatch("POST", "/session/s1/appium/app/close", {})
        terminated = await table.dispatch(
            "POST", "/session/s1/appium/device/terminate_app", {"appId": "com.other"}
        )
        installed = await table.dispatch(
            "POST", "/session/s1/appium/device/app_installed", {"bundleId": "com.other"}
        )

        assert terminated is True
        assert installed is True
        assert [c.args for c in device.force_stop.await_args_list] == [
            ("com.example.app",),
            ("com.other",),
        ]

    @pytest.mark.asyncio
    async def test_missing_app_id(self) -> None:
        """Should require appId."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/appium/device/activate_app", {})

        assert exc_info.value.code == "ERR_INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_screenshot_from_device(self) -> None:
        """Should base64 encode the device screenshot."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        value = await table.dispatch("GET", "/session/s1/screenshot", {})

        assert value == "iVBORw=="

    @pytest.mark.asyncio
    async def test_screenshot_through_server(self) -> None:
        """Should capture through the on-device server for Espresso sessions."""
        orchestrator = _orchestrator(_device())
        table = LocalCommandTable(EspressoCommands(orchestrator))

        value = await table.dispatch("GET", "/session/s1/screenshot", {})

        assert value == "c2NyZWVu"
        orchestrator.proxy_command.assert_awaited_once_with("/screenshot", "GET")

    @pytest.mark.asyncio
    async def test_logs(self) -> None:
        """Should expose logcat through both log command families."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        types = await table.dispatch("GET", "/session/s1/se/log/types", {})
        entries = await table.dispatch("POST", "/session/s1/log", {"type": "logcat"})

        assert types == ["logcat"]
        assert [entry["message"] for entry in entries] == ["line one", "line two"]

    @pytest.mark.asyncio
    async def test_unsupported_log_type(self) -> None:
        """Should reject unknown log types."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError):
            await table.dispatch("POST", "/session/s1/log", {"type": "bugreport"})

    @pytest.mark.asyncio
    async def test_unknown_local_command(self) -> None:
        """Should answer unknown command for unbound local routes."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/url", {"url": "https://example.com"})

        assert exc_info.value.w3c_error == "unknown command"

    @pytest.mark.asyncio
    async def test_without_device(self) -> None:
        """Should fail device commands before a device is bound."""
        table = LocalCommandTable(AndroidCommands(_orchestrator()))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/appium/device/is_locked", {})

        assert exc_info.value.code == "ERR_DEVICE_UNAVAILABLE"

    def test_find_requires_full_match(self) -> None:
        """Should not bind a handler to a longer path."""
        table = LocalCommandTable(AndroidCommands(_orchestrator()))

        assert table.find("GET", "/session/s1/contexts") is not None
        assert table.find("GET", "/session/s1/contexts/extra") is None


class TestSettingsAndScripts:
    """Tests for settings and mobile: scripts answered locally."""

    @pytest.mark.asyncio
    async def test_settings_round_trip(self) -> None:
        """Should merge updates into the session settings."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        await table.dispatch("POST", "/session/s1/appium/settings", {"settings": {"a": 1}})
        await table.dispatch("POST", "/session/s1/appium/settings", {"settings": {"b": 2}})
        settings = await table.dispatch("GET", "/session/s1/appium/settings", {})

        assert settings == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_settings_forwarded_to_server(self) -> None:
        """Should pass new settings on to the on-device server."""
        orchestrator = _orchestrator(_device())
        table = LocalCommandTable(EspressoCommands(orchestrator))

        await table.dispatch(
            "POST", "/session/s1/appium/settings", {"settings": {"driver": "compose"}}
        )

        orchestrator.proxy_command.assert_awaited_once_with(
            "/appium/settings", "POST", {"settings": {"driver": "compose"}}
        )
        assert orchestrator.ctx.settings == {"driver": "compose"}

    @pytest.mark.asyncio
    async def test_rejected_settings_not_stored(self) -> None:
        """Should keep the old settings when the server refuses an update."""
        orchestrator = _orchestrator(_device())
        orchestrator.proxy_command.side_effect = DriverError(
            code="ERR_SERVER_REQUEST", message="refused"
        )
        table = LocalCommandTable(EspressoCommands(orchestrator))

        with pytest.raises(DriverError):
            await table.dispatch("POST", "/session/s1/appium/settings", {"settings": {"x": 1}})

        assert orchestrator.ctx.settings == {}

    @pytest.mark.asyncio
    async def test_settings_must_be_object(self) -> None:
        """Should reject a settings payload that is not an object."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/appium/settings", {"settings": [1]})

        assert exc_info.value.code == "ERR_INVALID_ARGUMENT"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("suffix", ["/execute", "/execute/sync"])
    async def test_mobile_script_relayed(self, suffix: str) -> None:
        """Should relay mobile: commands to the on-device server."""
        orchestrator = _orchestrator(_device())
        orchestrator.proxy_command.return_value = {"ok": True}
        table = LocalCommandTable(EspressoCommands(orchestrator))

        result = await table.dispatch(
            "POST",
            f"/session/s1{suffix}",
            {"script": "mobile: backdoor", "args": [{"target": "application"}]},
        )

        assert result == {"ok": True}
        orchestrator.proxy_command.assert_awaited_once_with(
            "/appium/execute_mobile/backdoor", "POST", {"target": "application"}
        )

    @pytest.mark.asyncio
    async def test_plain_script_rejected(self) -> None:
        """Should refuse scripts that are not mobile: commands."""
        orchestrator = _orchestrator(_device())
        table = LocalCommandTable(EspressoCommands(orchestrator))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/execute/sync", {"script": "return 1"})

        assert exc_info.value.code == "ERR_INVALID_ARGUMENT"
        orchestrator.proxy_command.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mobile_script_without_server(self) -> None:
        """Should answer unknown command when no device side server exists."""
        table = LocalCommandTable(AndroidCommands(_orchestrator(_device())))

        with pytest.raises(DriverError) as exc_info:
            await table.dispatch("POST", "/session/s1/execute", {"script": "mobile: swipe"})

        assert exc_info.value.w3c_error == "unknown command"
