"""Tests for validation helpers."""

from __future__ import annotations

import pytest

from android_espresso_driver.errors import DriverError
from android_espresso_driver.validation import (
    add_wipe_data_to_avd_args,
    derive_avd_name,
    is_chrome_browser,
    is_package_or_bundle,
    parse_array,
    prefer_system_unzip,
    qualify_activity_name,
    validate_package,
)


class TestValidatePackage:
    """Tests for validate_package."""

    def test_valid_package(self) -> None:
        """Should accept valid package names."""
        validate_package("com.example.app")
        validate_package("com.example.app_2")

    def test_invalid_package(self) -> None:
        """Should reject invalid package names."""
        with pytest.raises(DriverError):
            validate_package("bad package")
        with pytest.raises(DriverError):
            validate_package("single")

    def test_is_package_or_bundle(self) -> None:
        """Should recognise package identifiers."""
        assert is_package_or_bundle("com.example.app")
        assert not is_package_or_bundle("/tmp/app.apk")
        assert not is_package_or_bundle(None)


class TestQualifyActivityName:
    """Tests for qualify_activity_name."""

    def test_leading_dot(self) -> None:
        """Should prefix relative names starting with a dot."""
        assert qualify_activity_name(".Main", "com.example.app") == "com.example.app.Main"

    def test_bare_name(self) -> None:
        """Should prefix bare names with a separating dot."""
        assert qualify_activity_name("Main", "com.example.app") == "com.example.app.Main"

    def test_fully_qualified_unchanged(self) -> None:
        """Should keep fully qualified names."""
        assert qualify_activity_name("org.other.Main", "com.example.app") == "org.other.Main"

    def test_wildcards_unchanged(self) -> None:
        """Should keep wildcard patterns."""
        assert qualify_activity_name("*", "com.example.app") == "*"
        assert qualify_activity_name(".Main", "com.*") == ".Main"

    def test_missing_values(self) -> None:
        """Should pass through missing values."""
        assert qualify_activity_name(None, "com.example.app") is None
        assert qualify_activity_name(".Main", None) == ".Main"


class TestAvdHelpers:
    """Tests for AVD helpers."""

    def test_derive_avd_name(self) -> None:
        """Should sanitise the device name."""
        assert derive_avd_name("Pixel 4 XL", "11") == "Pixel-4-XL__11"

    def test_derive_requires_both(self) -> None:
        """Should require deviceName and platformVersion."""
        with pytest.raises(DriverError):
            derive_avd_name(None, "11")
        with pytest.raises(DriverError):
            derive_avd_name("Pixel", None)

    def test_wipe_data_is_idempotent(self) -> None:
        """Should add -wipe-data once, whatever its case."""
        assert add_wipe_data_to_avd_args(None) == "-wipe-data"
        assert add_wipe_data_to_avd_args("-no-window") == "-no-window -wipe-data"
        assert add_wipe_data_to_avd_args("-WIPE-DATA -no-audio") == "-WIPE-DATA -no-audio"
        once = add_wipe_data_to_avd_args("-no-window")
        assert add_wipe_data_to_avd_args(once) == once


class TestParseArray:
    """Tests for parse_array."""

    def test_forms(self) -> None:
        """Should parse lists, JSON arrays and comma lists."""
        assert parse_array(["a", "b"]) == ["a", "b"]
        assert parse_array('["a","b"]') == ["a", "b"]
        assert parse_array("a, b,") == ["a", "b"]
        assert parse_array(None) == []

    def test_bad_json(self) -> None:
        """Should reject malformed JSON arrays."""
        with pytest.raises(DriverError):
            parse_array("[a, b")


class TestEnvironment:
    """Tests for environment driven switches."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("1", True), ("true", True), ("0", False), ("FALSE", False), ("", False)],
    )
    def test_prefer_system_unzip(
        self, monkeypatch: pytest.MonkeyPatch, value: str, expected: bool
    ) -> None:
        """Should treat empty, 0 and false as disabled."""
        monkeypatch.setenv("APPIUM_PREFER_SYSTEM_UNZIP", value)

        assert prefer_system_unzip() is expected

    def test_prefer_system_unzip_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should be disabled when absent."""
        monkeypatch.delenv("APPIUM_PREFER_SYSTEM_UNZIP", raising=False)

        assert prefer_system_unzip() is False

    def test_chrome_browser_names(self) -> None:
        """Should match browser names case-insensitively."""
        assert is_chrome_browser("Chrome")
        assert is_chrome_browser("chromium-webview")
        assert not is_chrome_browser("Safari")
        assert not is_chrome_browser(None)
