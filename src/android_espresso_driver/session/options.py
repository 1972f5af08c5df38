"""Session options - capability normalization and typed runtime options."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from android_espresso_driver.errors import capability_validation_error
from android_espresso_driver.validation import is_chrome_browser, parse_array

logger = structlog.get_logger()

VENDOR_PREFIX = "appium:"

DEFAULT_ADB_PORT = 5037
DEFAULT_INSTALL_TIMEOUT_MS = 90000
DEFAULT_APP_WAIT_DURATION_MS = 20000
DEFAULT_AUTO_WEBVIEW_TIMEOUT_MS = 2000
DEFAULT_SERVER_LAUNCH_TIMEOUT_MS = 45000


def _strip_prefix(caps: dict[str, Any]) -> dict[str, Any]:
    return {
        (key[len(VENDOR_PREFIX):] if key.startswith(VENDOR_PREFIX) else key): value
        for key, value in caps.items()
    }


def normalize_capabilities(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Merge a new-session body into one flat capability mapping.

    Accepts a W3C body (``capabilities.alwaysMatch`` plus the first
    ``firstMatch`` entry), a legacy ``desiredCapabilities`` body or a plain
    mapping of capabilities. Vendor prefixes are stripped.
    """
    if not payload:
        return {}

    w3c = payload.get("capabilities")
    if isinstance(w3c, dict):
        always = _strip_prefix(w3c.get("alwaysMatch") or {})
        first_matches = w3c.get("firstMatch") or [{}]
        first = _strip_prefix(first_matches[0] or {}) if first_matches else {}
        conflicts = sorted(set(always) & set(first))
        if conflicts:
            raise capability_validation_error(
                f"Capabilities {conflicts} are defined in both alwaysMatch and firstMatch",
                {"keys": conflicts},
            )
        return {**always, **first}

    desired = payload.get("desiredCapabilities")
    if isinstance(desired, dict):
        return _strip_prefix(desired)

    return _strip_prefix(payload)


class SessionOptions(BaseModel):
    """Runtime options for one session: client capabilities merged with defaults."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    # App under test
    app: str | None = None
    app_package: str | None = None
    app_activity: str | None = None
    app_wait_package: str | None = None
    app_wait_activity: str | None = None
    app_wait_duration: int = DEFAULT_APP_WAIT_DURATION_MS
    browser_name: str | None = None
    auto_launch: bool = True

    # Reset behaviour
    full_reset: bool = False
    fast_reset: bool = False
    skip_uninstall: bool = False
    dont_stop_app_on_reset: bool = False
    uninstall_other_packages: list[str] | None = None
    no_sign: bool = False

    # Device selection
    udid: str | None = None
    device_name: str | None = None
    platform_version: str | None = None
    avd: str | None = None
    avd_args: str | None = None
    avd_launch_timeout: int = 60000
    avd_ready_timeout: int = 60000
    reboot: bool = False
    skip_unlock: bool = False
    unicode_keyboard: bool = False
    reset_keyboard: bool = False
    ignore_hidden_api_policy_error: bool = False

    # Host communication
    system_port: int | None = None
    adb_port: int = DEFAULT_ADB_PORT
    host: str | None = None
    remote_adb_host: str | None = None
    android_install_timeout: int = DEFAULT_INSTALL_TIMEOUT_MS

    # On-device server
    espresso_server_apk: str | None = None
    espresso_server_launch_timeout: int = DEFAULT_SERVER_LAUNCH_TIMEOUT_MS
    force_espresso_rebuild: bool = False
    skip_server_installation: bool = False
    disable_suppress_accessibility_service: bool = False

    # Signing
    use_keystore: bool = False
    keystore_path: str | None = None
    keystore_password: str | None = None
    key_alias: str | None = None
    key_password: str | None = None

    # Contexts
    auto_webview: bool = False
    auto_webview_timeout: int = DEFAULT_AUTO_WEBVIEW_TIMEOUT_MS
    native_web_screenshot: bool = False

    tmp_dir: str | None = None

    @field_validator("uninstall_other_packages", mode="before")
    @classmethod
    def parse_package_list(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return parse_array(value)

    @field_validator("avd_args", mode="before")
    @classmethod
    def join_avd_args(cls, value: Any) -> str | None:
        if isinstance(value, (list, tuple)):
            return " ".join(str(item) for item in value)
        return value

    @classmethod
    def from_capabilities(cls, caps: dict[str, Any]) -> SessionOptions:
        """Build options from normalized capabilities.

        Raises:
            DriverError: If capabilities are malformed or ask for a browser session
        """
        try:
            opts = cls.model_validate(caps)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False, include_input=False)
            raise capability_validation_error("Invalid capabilities", {"errors": errors}) from exc

        if is_chrome_browser(opts.browser_name):
            if not opts.app:
                raise capability_validation_error(
                    "Chrome browser sessions cannot be run in Espresso because Espresso "
                    "automation doesn't have permission to access Chrome",
                    {"browserName": opts.browser_name},
                )
            logger.warning(
                "browser_name_ignored",
                browser_name=opts.browser_name,
                reason="Espresso automation cannot access Chrome",
            )
        return opts

    @property
    def is_chrome_session(self) -> bool:
        return is_chrome_browser(self.browser_name)

    @property
    def server_host(self) -> str:
        return self.remote_adb_host or self.host or "127.0.0.1"
