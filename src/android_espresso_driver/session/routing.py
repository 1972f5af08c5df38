"""Routing policy - decide where each session command is executed."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from android_espresso_driver.session.context import SessionContext


class RouteDecision(Enum):
    """Where a command goes."""

    LOCAL = "local"
    FORWARD_NATIVE = "forward_native"
    FORWARD_SECONDARY = "forward_secondary"


@dataclass(frozen=True)
class ProxyRoute:
    """A (method, path pattern) pair; the pattern is anchored at the path start."""

    method: str
    pattern: re.Pattern[str]

    @classmethod
    def of(cls, method: str, pattern: str) -> ProxyRoute:
        return cls(method, re.compile(pattern))

    def matches(self, method: str, path: str) -> bool:
        return method == self.method and self.pattern.match(path) is not None


def _routes(*pairs: tuple[str, str]) -> tuple[ProxyRoute, ...]:
    return tuple(ProxyRoute.of(method, pattern) for method, pattern in pairs)


# Never forwarded to the on-device server while in a native context.
NATIVE_NO_PROXY = _routes(
    ("GET", r"^/session/(?!.*/)"),
    ("GET", r"^/session/[^/]+/appium/device/current_activity"),
    ("GET", r"^/session/[^/]+/appium/device/current_package"),
    ("GET", r"^/session/[^/]+/appium/device/display_density"),
    ("GET", r"^/session/[^/]+/appium/device/is_keyboard_shown"),
    ("GET", r"^/session/[^/]+/appium/device/system_bars"),
    ("GET", r"^/session/[^/]+/appium/device/system_time"),
    ("GET", r"^/session/[^/]+/appium/settings"),
    ("GET", r"^/session/[^/]+/context"),
    ("GET", r"^/session/[^/]+/contexts"),
    ("GET", r"^/session/[^/]+/ime/[^/]+"),
    ("GET", r"^/session/[^/]+/network_connection"),
    ("GET", r"^/session/[^/]+/timeouts"),
    ("GET", r"^/session/[^/]+/url"),
    ("POST", r"^/session/[^/]+/appium/app/background"),
    ("POST", r"^/session/[^/]+/appium/app/close"),
    ("POST", r"^/session/[^/]+/appium/app/launch"),
    ("POST", r"^/session/[^/]+/appium/app/reset"),
    ("POST", r"^/session/[^/]+/appium/app/strings"),
    ("POST", r"^/session/[^/]+/appium/compare_images"),
    ("POST", r"^/session/[^/]+/appium/device/activate_app"),
    ("POST", r"^/session/[^/]+/appium/device/app_installed"),
    ("POST", r"^/session/[^/]+/appium/device/app_state"),
    ("POST", r"^/session/[^/]+/appium/device/finger_print"),
    ("POST", r"^/session/[^/]+/appium/device/get_clipboard"),
    ("POST", r"^/session/[^/]+/appium/device/install_app"),
    ("POST", r"^/session/[^/]+/appium/device/is_locked"),
    ("POST", r"^/session/[^/]+/appium/device/lock"),
    ("POST", r"^/session/[^/]+/appium/device/pull_file"),
    ("POST", r"^/session/[^/]+/appium/device/pull_folder"),
    ("POST", r"^/session/[^/]+/appium/device/push_file"),
    ("POST", r"^/session/[^/]+/appium/device/remove_app"),
    ("POST", r"^/session/[^/]+/appium/device/start_activity"),
    ("POST", r"^/session/[^/]+/appium/device/terminate_app"),
    ("POST", r"^/session/[^/]+/appium/device/unlock"),
    ("POST", r"^/session/[^/]+/appium/getPerformanceData"),
    ("POST", r"^/session/[^/]+/appium/performanceData/types"),
    ("POST", r"^/session/[^/]+/appium/settings"),
    ("POST", r"^/session/[^/]+/appium/execute_driver"),
    ("POST", r"^/session/[^/]+/appium/start_recording_screen"),
    ("POST", r"^/session/[^/]+/appium/stop_recording_screen"),
    ("POST", r"^/session/[^/]+/context"),
    ("POST", r"^/session/[^/]+/execute"),
    ("POST", r"^/session/[^/]+/execute/async"),
    ("POST", r"^/session/[^/]+/execute/sync"),
    ("POST", r"^/session/[^/]+/execute_async"),
    ("POST", r"^/session/[^/]+/ime/[^/]+"),
    ("POST", r"^/session/[^/]+/location"),
    ("POST", r"^/session/[^/]+/network_connection"),
    ("POST", r"^/session/[^/]+/timeouts"),
    ("POST", r"^/session/[^/]+/url"),
    # Legacy log commands
    ("GET", r"^/session/[^/]+/log/types"),
    ("POST", r"^/session/[^/]+/log"),
    # Selenium 4 log commands
    ("GET", r"^/session/[^/]+/se/log/types"),
    ("POST", r"^/session/[^/]+/se/log"),
)

# Never forwarded to the web view engine while it drives the session.
WEBVIEW_NO_PROXY = _routes(
    ("GET", r"^/session/[^/]+/appium"),
    ("GET", r"^/session/[^/]+/context"),
    ("GET", r"^/session/[^/]+/element/[^/]+/rect"),
    ("GET", r"^/session/[^/]+/orientation"),
    ("POST", r"^/session/[^/]+/appium"),
    ("POST", r"^/session/[^/]+/context"),
    ("POST", r"^/session/[^/]+/orientation"),
    ("POST", r"^/session/[^/]+/touch/multi/perform"),
    ("POST", r"^/session/[^/]+/touch/perform"),
    # mobile: commands in web context
    ("POST", r"^/session/[^/]+/execute$"),
    ("POST", r"^/session/[^/]+/execute/sync"),
    ("GET", r"^/session/[^/]+/log/types"),
    ("POST", r"^/session/[^/]+/log"),
    ("GET", r"^/session/[^/]+/se/log/types"),
    ("POST", r"^/session/[^/]+/se/log"),
)

NATIVE_WEB_SCREENSHOT_ROUTE = ProxyRoute.of("GET", r"^/session/[^/]+/screenshot")


def proxy_avoid_list(ctx: SessionContext) -> tuple[ProxyRoute, ...]:
    """Routes that must not be forwarded for the session's current state."""
    routes = NATIVE_NO_PROXY if ctx.webview_engine is None else WEBVIEW_NO_PROXY
    if ctx.opts.native_web_screenshot:
        routes = (*routes, NATIVE_WEB_SCREENSHOT_ROUTE)
    return routes


def decide(method: str, path: str, ctx: SessionContext) -> RouteDecision:
    """Pick the executor for one command; the first matching route wins."""
    if any(route.matches(method, path) for route in proxy_avoid_list(ctx)):
        return RouteDecision.LOCAL
    if ctx.webview_engine is not None and ctx.is_webview:
        return RouteDecision.FORWARD_SECONDARY
    # Engine present while the context is native still goes to the on-device server
    return RouteDecision.FORWARD_NATIVE


def can_proxy(ctx: SessionContext) -> bool:
    """An existing session can always proxy to the on-device server."""
    return True


def proxy_active(ctx: SessionContext) -> bool:
    return ctx.proxy_active
