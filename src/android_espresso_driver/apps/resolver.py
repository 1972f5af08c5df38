"""App artifact resolver - turns an app reference into one installable package."""

from __future__ import annotations

import asyncio
import hashlib
import shutil
import subprocess
import tempfile
import uuid
import zipfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

import httpx
import structlog

from android_espresso_driver.apps.tooling import (
    UNIVERSAL_APK_DIR_PREFIX,
    ApkTooling,
    KeystoreConfig,
)
from android_espresso_driver.db.models import STATE_DIR, Database
from android_espresso_driver.errors import (
    DriverError,
    app_download_error,
    app_extraction_error,
    app_not_found_error,
    no_supported_package_error,
    signing_failed_error,
)
from android_espresso_driver.validation import prefer_system_unzip

logger = structlog.get_logger()

APK_EXT = ".apk"
AAB_EXT = ".aab"
SUPPORTED_EXTENSIONS = (APK_EXT, AAB_EXT)

APK_MIME_TYPE = "application/vnd.android.package-archive"
_HASH_CHUNK = 1024 * 1024

UNZIP_DIR_PREFIX = "app-"
TEMP_DIR_PREFIXES = (UNZIP_DIR_PREFIX, UNIVERSAL_APK_DIR_PREFIX)


def has_apk_ext(path: Path | str) -> bool:
    return str(path).lower().endswith(APK_EXT)


def has_aab_ext(path: Path | str) -> bool:
    return str(path).lower().endswith(AAB_EXT)


def is_url(app: str) -> bool:
    return urlparse(app).scheme in {"http", "https"}


def file_hash(path: Path) -> str:
    """SHA-256 of a file's content."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def find_shallowest_package(root: Path) -> Path | None:
    """Return the supported package with the fewest path segments under root."""
    candidates = [
        path
        for path in root.rglob("*")
        if path.is_file() and path.name.lower().endswith(SUPPORTED_EXTENSIONS)
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda p: (len(p.relative_to(root).parts), str(p.relative_to(root))))
    return candidates[0]


def discard_cached_package(path: Path) -> None:
    """Remove a cached package and the temp directory it was unpacked into.

    Only directories created by the resolver or the bundle converter are
    removed; a package in the downloads directory is removed on its own.
    """
    path.unlink(missing_ok=True)
    temp_root = Path(tempfile.gettempdir())
    for parent in path.parents:
        if parent.parent == temp_root and parent.name.startswith(TEMP_DIR_PREFIXES):
            shutil.rmtree(parent, ignore_errors=True)
            break
    logger.debug("app_cache_discarded", path=str(path))


class AppArtifactResolver:
    """Resolves, caches and signs application packages for sessions."""

    def __init__(
        self,
        database: Database,
        tooling: ApkTooling | None = None,
        *,
        download_dir: Path | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        download_timeout: float = 120.0,
    ) -> None:
        self._db = database
        self._tooling = tooling or ApkTooling()
        self.download_dir = download_dir or (STATE_DIR / "downloads")
        self._http_transport = http_transport
        self._download_timeout = download_timeout
        self._hash_locks: dict[str, asyncio.Lock] = {}
        self._hash_lock_users: dict[str, int] = {}

    async def resolve(
        self,
        app: str,
        *,
        app_package: str | None = None,
        no_sign: bool = False,
        keystore: KeystoreConfig | None = None,
    ) -> Path:
        """Resolve an app reference (path or URL) into an installable package path."""
        from_url = is_url(app)
        if from_url:
            app_path = await self._download(app)
        else:
            app_path = Path(app).expanduser()
            if not app_path.is_file():
                raise app_not_found_error(str(app_path))

        resolved = await self.post_process(
            app,
            app_path,
            from_url=from_url,
            app_package=app_package,
            no_sign=no_sign,
            tooling=self._tooling.with_keystore(keystore),
        )
        final = resolved or app_path
        logger.info("app_resolved", app=app, path=str(final), cached=resolved is not None)
        return final

    async def post_process(
        self,
        source: str,
        app_path: Path,
        *,
        from_url: bool,
        app_package: str | None,
        no_sign: bool,
        tooling: ApkTooling | None = None,
    ) -> Path | None:
        """Apply the extraction, caching and signing policy to a local file.

        Returns the path to use from now on, or None when the original path
        should be used unmodified and not cached.
        """
        tooling = tooling or self._tooling
        try:
            package_hash = await asyncio.to_thread(file_hash, app_path)
        except OSError as exc:
            raise app_extraction_error(str(app_path), f"cannot hash: {exc}") from exc

        async with self._hash_lock(package_hash):
            is_apk = has_apk_ext(app_path)
            # Only local .apk files that are available in-place are not cached
            should_cache = not is_apk or from_url

            cached = await self._db.get_app_cache(source)
            if cached is not None:
                if cached.is_valid_for(package_hash):
                    logger.info("app_cache_hit", source=source, path=cached.full_path)
                    if from_url and Path(cached.full_path) != app_path:
                        app_path.unlink(missing_ok=True)
                    return Path(cached.full_path) if should_cache else None
                logger.info("app_cache_stale", source=source, path=cached.full_path)
                await self._db.delete_app_cache(source)
                if Path(cached.full_path) != app_path:
                    await asyncio.to_thread(discard_cached_package, Path(cached.full_path))

            if not should_cache:
                # Local .apk: signed in place
                await self._presign(tooling, app_path, app_package, no_sign)
                return None

            path_in_cache = await self._materialize(tooling, app_path, from_url=from_url)
            await self._presign(tooling, path_in_cache, app_package, no_sign)
            await self._db.save_app_cache(source, package_hash, str(path_in_cache))
            return path_in_cache

    async def unzip_app(self, app_path: Path) -> Path:
        """Extract an archive and return its shallowest supported package.

        Raises:
            DriverError: If the archive is invalid or holds no supported package
        """
        tmp_root = Path(tempfile.mkdtemp(prefix=UNZIP_DIR_PREFIX))
        use_system_unzip = prefer_system_unzip()
        try:
            await asyncio.to_thread(self._extract_all, app_path, tmp_root, use_system_unzip)
        except (zipfile.BadZipFile, subprocess.CalledProcessError, OSError) as exc:
            shutil.rmtree(tmp_root, ignore_errors=True)
            raise app_extraction_error(str(app_path), str(exc)) from exc

        package = await asyncio.to_thread(find_shallowest_package, tmp_root)
        if package is None:
            shutil.rmtree(tmp_root, ignore_errors=True)
            raise no_supported_package_error(str(app_path), SUPPORTED_EXTENSIONS)
        logger.debug("app_unzipped", source=str(app_path), path=str(package))
        return package

    async def _materialize(self, tooling: ApkTooling, app_path: Path, *, from_url: bool) -> Path:
        """Unpack containers and convert bundles into a single .apk."""
        is_apk = has_apk_ext(app_path)
        unzipped: Path | None = None
        try:
            if not (is_apk or has_aab_ext(app_path)):
                unzipped = await self.unzip_app(app_path)
            target = unzipped or app_path
            if has_apk_ext(target):
                return target
            return await tooling.extract_universal_apk(target)
        finally:
            if not is_apk and from_url:
                app_path.unlink(missing_ok=True)
            if unzipped is not None and has_aab_ext(unzipped):
                unzipped.unlink(missing_ok=True)

    async def _presign(
        self,
        tooling: ApkTooling,
        apk_path: Path,
        app_package: str | None,
        no_sign: bool,
    ) -> None:
        if no_sign:
            logger.info(
                "app_signing_skipped",
                path=str(apk_path),
                reason="noSign capability is set; an improperly signed app fails server startup",
            )
            return
        try:
            if not await tooling.check_apk_cert(apk_path, app_package):
                await tooling.sign(apk_path, app_package)
        except DriverError as exc:
            if exc.code == "ERR_SIGNING_FAILED":
                raise
            raise signing_failed_error(str(apk_path), exc.message) from exc

    @asynccontextmanager
    async def _hash_lock(self, package_hash: str) -> AsyncIterator[None]:
        """Serialize work on one content hash; the lock is dropped with its last user."""
        lock = self._hash_locks.setdefault(package_hash, asyncio.Lock())
        self._hash_lock_users[package_hash] = self._hash_lock_users.get(package_hash, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._hash_lock_users[package_hash] -= 1
            if not self._hash_lock_users[package_hash]:
                del self._hash_lock_users[package_hash]
                del self._hash_locks[package_hash]

    @staticmethod
    def _extract_all(archive: Path, dest: Path, use_system_unzip: bool) -> None:
        unzip = shutil.which("unzip") if use_system_unzip else None
        if unzip:
            subprocess.run(
                [unzip, "-q", "-o", str(archive), "-d", str(dest)],
                check=True,
                capture_output=True,
            )
            return
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)

    async def _download(self, url: str) -> Path:
        self.download_dir.mkdir(parents=True, exist_ok=True)
        suffix = Path(urlparse(url).path).suffix
        target: Path | None = None
        try:
            async with httpx.AsyncClient(
                transport=self._http_transport,
                timeout=self._download_timeout,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    if not suffix:
                        content_type = response.headers.get("content-type", "")
                        suffix = APK_EXT if APK_MIME_TYPE in content_type else ".zip"
                    target = self.download_dir / f"{uuid.uuid4().hex}{suffix}"
                    with target.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
        except httpx.HTTPError as exc:
            if target is not None:
                target.unlink(missing_ok=True)
            raise app_download_error(url, str(exc)) from exc
        logger.info("app_downloaded", url=url, path=str(target))
        return target
