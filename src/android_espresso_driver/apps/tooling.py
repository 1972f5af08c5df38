"""APK tooling - signing, bundle conversion and manifest reading on the host."""

from __future__ import annotations

import asyncio
import os
import re
import shutil
import subprocess
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

import structlog

from android_espresso_driver.errors import (
    DriverError,
    signing_failed_error,
    tool_command_error,
    tool_not_found_error,
)

logger = structlog.get_logger()

DEFAULT_KEYSTORE = Path.home() / ".android" / "debug.keystore"
DEFAULT_KEYSTORE_PASSWORD = "android"
DEFAULT_KEY_ALIAS = "androiddebugkey"
UNIVERSAL_APK_DIR_PREFIX = "universal-apk-"

_PACKAGE_RE = re.compile(r"package: name='([^']+)'")
_LAUNCHABLE_RE = re.compile(r"launchable-activity: name='([^']+)'")
_SIGNER_DIGEST_RE = re.compile(r"certificate SHA-256 digest:\s*([0-9a-fA-F]+)")
_KEYTOOL_DIGEST_RE = re.compile(r"SHA256:\s*([0-9A-Fa-f:]+)")


@dataclass(frozen=True)
class KeystoreConfig:
    """Key material used to sign application packages."""

    path: Path
    password: str
    alias: str
    key_password: str | None = None

    @classmethod
    def default(cls) -> KeystoreConfig:
        return cls(
            path=DEFAULT_KEYSTORE,
            password=DEFAULT_KEYSTORE_PASSWORD,
            alias=DEFAULT_KEY_ALIAS,
        )


@dataclass(frozen=True)
class LaunchInfo:
    app_package: str
    app_activity: str | None


class ApkTooling:
    """Runs Android SDK tools against packages on the host."""

    def __init__(self, keystore: KeystoreConfig | None = None) -> None:
        self.keystore = keystore or KeystoreConfig.default()

    def with_keystore(self, keystore: KeystoreConfig | None) -> ApkTooling:
        """Return tooling bound to a session's keystore, or self if none given."""
        if keystore is None:
            return self
        return ApkTooling(keystore)

    async def check_apk_cert(self, apk_path: Path, package: str | None) -> bool:
        """Check the package is signed, and with the configured key when one is known."""
        result = await self._run(
            [self._build_tool("apksigner"), "verify", "--print-certs", str(apk_path)],
            check=False,
        )
        if result.returncode != 0:
            logger.info("apk_not_signed", path=str(apk_path), package=package)
            return False

        expected = await self._keystore_digest()
        if expected is None:
            return True
        actual = {match.lower() for match in _SIGNER_DIGEST_RE.findall(result.stdout)}
        matches = expected in actual
        logger.info("apk_cert_checked", path=str(apk_path), package=package, matches=matches)
        return matches

    async def sign(self, apk_path: Path, package: str | None) -> None:
        """Sign a package in place with the configured keystore."""
        ks = self.keystore
        if not ks.path.is_file():
            raise signing_failed_error(str(apk_path), f"keystore not found at {ks.path}")
        args = [
            self._build_tool("apksigner"),
            "sign",
            "--ks",
            str(ks.path),
            "--ks-pass",
            f"pass:{ks.password}",
            "--ks-key-alias",
            ks.alias,
        ]
        if ks.key_password:
            args.extend(["--key-pass", f"pass:{ks.key_password}"])
        args.append(str(apk_path))
        try:
            await self._run(args)
        except DriverError as exc:
            raise signing_failed_error(str(apk_path), exc.message) from exc
        logger.info("apk_signed", path=str(apk_path), package=package)

    async def extract_universal_apk(self, aab_path: Path) -> Path:
        """Convert an .aab bundle into a universal .apk inside a fresh temp dir."""
        out_dir = Path(tempfile.mkdtemp(prefix=UNIVERSAL_APK_DIR_PREFIX))
        apks_path = out_dir / f"{aab_path.stem}.apks"
        ks = self.keystore
        args = [
            *self._bundletool(),
            "build-apks",
            f"--bundle={aab_path}",
            f"--output={apks_path}",
            "--mode=universal",
        ]
        if ks.path.is_file():
            args.extend(
                [
                    f"--ks={ks.path}",
                    f"--ks-pass=pass:{ks.password}",
                    f"--ks-key-alias={ks.alias}",
                ]
            )
            if ks.key_password:
                args.append(f"--key-pass=pass:{ks.key_password}")
        await self._run(args)

        apk_path = out_dir / f"{aab_path.stem}.apk"

        def _unpack() -> None:
            with zipfile.ZipFile(apks_path) as archive:
                with archive.open("universal.apk") as src, apk_path.open("wb") as dst:
                    shutil.copyfileobj(src, dst)

        try:
            await asyncio.to_thread(_unpack)
        except (KeyError, zipfile.BadZipFile, OSError) as exc:
            raise tool_command_error("bundletool", f"no universal.apk produced: {exc}") from exc
        finally:
            apks_path.unlink(missing_ok=True)

        logger.info("universal_apk_extracted", source=str(aab_path), path=str(apk_path))
        return apk_path

    async def read_launch_info(self, apk_path: Path) -> LaunchInfo | None:
        """Read package and launchable activity from the manifest."""
        result = await self._run([self._build_tool("aapt"), "dump", "badging", str(apk_path)])
        package_match = _PACKAGE_RE.search(result.stdout)
        if not package_match:
            return None
        activity_match = _LAUNCHABLE_RE.search(result.stdout)
        return LaunchInfo(
            app_package=package_match.group(1),
            app_activity=activity_match.group(1) if activity_match else None,
        )

    async def _keystore_digest(self) -> str | None:
        ks = self.keystore
        keytool = shutil.which("keytool")
        if not keytool or not ks.path.is_file():
            return None
        result = await self._run(
            [
                keytool,
                "-list",
                "-v",
                "-keystore",
                str(ks.path),
                "-alias",
                ks.alias,
                "-storepass",
                ks.password,
            ],
            check=False,
        )
        match = _KEYTOOL_DIGEST_RE.search(result.stdout)
        if not match:
            return None
        return match.group(1).replace(":", "").lower()

    @staticmethod
    def _build_tool(name: str) -> str:
        """Locate an SDK build tool on PATH or in the newest build-tools dir."""
        found = shutil.which(name)
        if found:
            return found
        sdk_root = os.environ.get("ANDROID_HOME") or os.environ.get("ANDROID_SDK_ROOT")
        if sdk_root:
            build_tools = Path(sdk_root) / "build-tools"
            for version_dir in sorted(build_tools.glob("*"), reverse=True):
                candidate = version_dir / name
                if candidate.is_file():
                    return str(candidate)
        raise tool_not_found_error(name)

    @staticmethod
    def _bundletool() -> list[str]:
        launcher = shutil.which("bundletool")
        if launcher:
            return [launcher]
        jar = os.environ.get("BUNDLETOOL_JAR")
        java = shutil.which("java")
        if jar and java and Path(jar).is_file():
            return [java, "-jar", jar]
        raise tool_not_found_error("bundletool")

    @staticmethod
    async def _run(args: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        def _call() -> subprocess.CompletedProcess[str]:
            return subprocess.run(args, check=check, capture_output=True, text=True)

        tool = Path(args[0]).name
        try:
            return await asyncio.to_thread(_call)
        except FileNotFoundError as exc:
            raise tool_not_found_error(tool) from exc
        except subprocess.CalledProcessError as exc:
            reason = (exc.stderr or exc.stdout or str(exc)).strip()
            raise tool_command_error(tool, reason) from exc
