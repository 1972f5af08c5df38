"""Validation helpers for capabilities and Android names."""

from __future__ import annotations

import json
import os
import re
from typing import Any

from android_espresso_driver.errors import capability_validation_error

# Package name: starts with letter, segments separated by dots, each segment alphanumeric/underscore
PACKAGE_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*(\.[a-zA-Z][a-zA-Z0-9_]*)+$")

WIPE_DATA_ARG = "-wipe-data"

PREFER_SYSTEM_UNZIP_ENV = "APPIUM_PREFER_SYSTEM_UNZIP"

CHROME_BROWSER_NAMES = frozenset(
    {"chrome", "chromium", "chromebeta", "browser", "chromium-browser", "chromium-webview"}
)


def validate_package(package: str) -> None:
    """Validate Android package name format.

    Raises:
        DriverError: If package name is invalid
    """
    if not PACKAGE_PATTERN.match(package):
        raise capability_validation_error(
            f"Invalid package name: {package}", {"package": package}
        )


def is_package_or_bundle(value: str | None) -> bool:
    return bool(value) and bool(PACKAGE_PATTERN.match(value or ""))


def is_chrome_browser(browser_name: str | None) -> bool:
    return (browser_name or "").lower() in CHROME_BROWSER_NAMES


def qualify_activity_name(activity: str | None, package: str | None) -> str | None:
    """Prefix an activity with its package unless it is already fully qualified.

    '.Main' and 'Main' both become 'com.example.app.Main'; names containing
    a dot past the first character, or wildcards, are returned unchanged.
    """
    if not activity or not package or "*" in activity or "*" in package:
        return activity
    dot_pos = activity.find(".")
    if dot_pos > 0:
        return activity
    separator = "" if dot_pos == 0 else "."
    return f"{package}{separator}{activity}"


def derive_avd_name(device_name: str | None, platform_version: str | None) -> str:
    """Build an AVD identifier from deviceName and platformVersion."""
    if not device_name:
        raise capability_validation_error(
            "avd or deviceName should be specified when reboot option is enabled"
        )
    if not platform_version:
        raise capability_validation_error(
            "avd or platformVersion should be specified when reboot option is enabled"
        )
    avd_device = re.sub(r"[^a-zA-Z0-9_.]", "-", device_name)
    return f"{avd_device}__{platform_version}"


def add_wipe_data_to_avd_args(avd_args: str | None) -> str:
    """Append -wipe-data once; an existing occurrence in any case is kept."""
    if not avd_args:
        return WIPE_DATA_ARG
    if WIPE_DATA_ARG in avd_args.lower():
        return avd_args
    return f"{avd_args} {WIPE_DATA_ARG}"


def parse_array(value: Any) -> list[str]:
    """Parse a capability given as list, JSON array string or comma list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    text = str(value).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise capability_validation_error(
                f"Cannot parse array capability: {text}", {"value": text}
            ) from exc
        return [str(item) for item in parsed]
    return [item.strip() for item in text.split(",") if item.strip()]


def prefer_system_unzip() -> bool:
    """Return True when the environment asks for the platform unzip binary."""
    raw = os.environ.get(PREFER_SYSTEM_UNZIP_ENV, "")
    if not raw.strip():
        return False
    return raw.strip().lower() not in {"0", "false"}
