"""
plugin_fetcher.py
=================
Turns a resolved download URL into a plugin JAR on disk.

Steps for one download:
  1. Pick the install path (plugins dir, update folder or custom dir)
  2. Stream the body to ``<plugins>/<name>.zip``
  3. Probe the temp file: a ZIP that is not itself a plugin JAR is a
     container, anything else is the binary
  4. Container → copy out the first usable ``.jar`` entry to ``<dest>.temp``
     Binary    → move the temp file to ``<dest>.temp``
  5. Reject anything that does not open as a JAR; the old plugin stays
  6. Snapshot the previous JAR, rename the new one over it, then tell the
     rollback manager where it landed

A Jenkins workspace archive (``*zip*/archive.zip``) always goes through the
container branch.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from http_client import HttpStatusError, download_file
from plugin_validator import extract_plugin_meta, looks_like_plugin_jar, validate_jar
from rollback_manager import RollbackManager

logger = logging.getLogger(__name__)

# Entries whose name contains any of these are never installed.
JAR_EXCLUDES = ("javadoc", "sources", "api/")

# Proxies that do not apply an update/ folder themselves.
MANUAL_UPDATE_PLATFORMS = frozenset({"velocity", "waterfall", "bungeecord", "bungee"})


# ──────────────────────────────────────────────
#  Result Dataclass
# ──────────────────────────────────────────────

class Outcome:
    """Terminal outcome labels for one plugin entry."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not-found"
    DOWNLOAD_FAILED = "download-failed"
    BUILD_FAILED = "build-failed"
    INVALID_LOCATOR = "invalid-locator"


@dataclass
class Result:
    """Unified result for fetch, build and update operations."""

    success: bool
    message: str
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **details: Any) -> "Result":
        return cls(success=True, message=message, details=details)

    @classmethod
    def fail(cls, message: str, error: Optional[str] = None, **details: Any) -> "Result":
        return cls(success=False, message=message, error=error, details=details)

    @property
    def outcome(self) -> str:
        default = Outcome.UPDATED if self.success else Outcome.DOWNLOAD_FAILED
        return self.details.get("outcome", default)


def is_usable_jar_entry(info: zipfile.ZipInfo) -> bool:
    name = info.filename.lower()
    if info.is_dir() or not name.endswith(".jar"):
        return False
    return not any(token in name for token in JAR_EXCLUDES)


def _md5_stream(fh) -> str:
    digest = hashlib.md5()
    for chunk in iter(lambda: fh.read(65536), b""):
        digest.update(chunk)
    return digest.hexdigest()


def _md5_file(path: Path) -> str:
    with open(path, "rb") as fh:
        return _md5_stream(fh)


# ──────────────────────────────────────────────
#  Fetcher
# ──────────────────────────────────────────────

class PluginFetcher:
    """
    Downloads and installs plugin JARs.

    Args:
        plugins_dir:       Active plugins directory
        update_dir:        Staging directory (default: <plugins_dir>/update)
        use_update_folder: Allow staging into update_dir
        token:             GitHub token, sent only to the API host
        rollback:          Optional RollbackManager for snapshots
        ignore_duplicates: Skip installs whose bytes match the current JAR
        max_retries:       Retries on 403/429/5xx
    """

    def __init__(
        self,
        plugins_dir: str | Path = "plugins",
        *,
        update_dir: Optional[str | Path] = None,
        use_update_folder: bool = True,
        token: Optional[str] = None,
        rollback: Optional[RollbackManager] = None,
        ignore_duplicates: bool = True,
        max_retries: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.plugins_dir = Path(plugins_dir)
        self.update_dir = Path(update_dir) if update_dir else self.plugins_dir / "update"
        self.use_update_folder = use_update_folder
        self.token = token
        self.rollback = rollback
        self.ignore_duplicates = ignore_duplicates
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    # ================================================================
    #  PATHS
    # ================================================================

    def decide_install_path(self, name: str, custom_path: Optional[str] = None) -> Path:
        """
        Where ``<name>.jar`` should be written.

        A custom directory wins. Otherwise the update folder is used when it
        exists and already holds a file containing the name; everything else
        goes straight into the plugins directory.
        """
        file_name = f"{name}.jar"
        if custom_path:
            return Path(custom_path) / file_name

        if self.use_update_folder and self.update_dir.is_dir():
            try:
                staged = any(name in child.name for child in self.update_dir.iterdir())
            except OSError:
                staged = False
            if staged:
                return self.update_dir / file_name

        return self.plugins_dir / file_name

    def temp_path(self, name: str) -> Path:
        return self.plugins_dir / f"{name}.zip"

    # ================================================================
    #  FETCH
    # ================================================================

    async def fetch(
        self,
        url: str,
        name: str,
        session: aiohttp.ClientSession,
        *,
        custom_path: Optional[str] = None,
    ) -> Result:
        """Download ``url`` and install it as ``<name>.jar``."""
        return await self._fetch(url, name, session, custom_path, archive=False)

    async def fetch_jenkins_archive(
        self,
        url: str,
        name: str,
        session: aiohttp.ClientSession,
        *,
        custom_path: Optional[str] = None,
    ) -> Result:
        """Download a whole-workspace ZIP and install the first usable JAR in it."""
        return await self._fetch(url, name, session, custom_path, archive=True)

    async def _fetch(
        self,
        url: str,
        name: str,
        session: aiohttp.ClientSession,
        custom_path: Optional[str],
        *,
        archive: bool,
    ) -> Result:
        dest = self.decide_install_path(name, custom_path)
        tmp = self.temp_path(name)
        logger.debug("Fetching %s -> %s (via %s)", url, dest, tmp)

        try:
            size = await download_file(
                session, url, tmp,
                token=self.token,
                max_retries=self.max_retries,
                backoff_base=self.backoff_base,
                backoff_max=self.backoff_max,
            )
        except HttpStatusError as exc:
            tmp.unlink(missing_ok=True)
            return Result.fail(
                f"Download failed for {name}: HTTP {exc.status}",
                error=str(exc), outcome=Outcome.DOWNLOAD_FAILED, url=url,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            tmp.unlink(missing_ok=True)
            return Result.fail(
                f"Download failed for {name}: {exc or type(exc).__name__}",
                error=str(exc), outcome=Outcome.DOWNLOAD_FAILED, url=url,
            )

        if size == 0:
            tmp.unlink(missing_ok=True)
            return Result.fail(
                f"Download failed for {name}: empty response",
                outcome=Outcome.DOWNLOAD_FAILED, url=url,
            )

        return await asyncio.to_thread(self.install_from_temp, tmp, dest, name, archive=archive)

    # ================================================================
    #  INSTALL
    # ================================================================

    def install_from_temp(self, tmp: Path, dest: Path, name: str, *, archive: bool = False) -> Result:
        """Install a downloaded temp file, extracting from a container if needed."""
        is_container = zipfile.is_zipfile(tmp) and (archive or not looks_like_plugin_jar(tmp))

        try:
            if is_container:
                result = self._install_from_container(tmp, dest, name)
            else:
                result = self._install_binary(tmp, dest, name)
        except (OSError, shutil.Error, zipfile.BadZipFile) as exc:
            logger.error("Failed to install %s: %s", name, exc)
            return Result.fail(
                f"Install failed for {name}", error=str(exc),
                outcome=Outcome.DOWNLOAD_FAILED,
            )

        if result.success and result.outcome == Outcome.UPDATED:
            self._after_install(name, dest)
        return result

    def _install_from_container(self, tmp: Path, dest: Path, name: str) -> Result:
        staged = self.staging_path(dest)
        try:
            with zipfile.ZipFile(tmp, "r") as zf:
                entry = next((i for i in zf.infolist() if is_usable_jar_entry(i)), None)
                if entry is None:
                    logger.warning("No usable .jar inside the download for %s; left %s in place", name, tmp)
                    return Result.fail(
                        f"No usable artifact for {name}",
                        error="Archive contains no installable .jar",
                        outcome=Outcome.DOWNLOAD_FAILED, temp=str(tmp),
                    )

                identical = self._entry_matches(zf, entry, dest)
                if not identical:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(entry) as src, open(staged, "wb") as out:
                        shutil.copyfileobj(src, out)

            tmp.unlink(missing_ok=True)
            if identical:
                return self._unchanged(name, dest)

            rejected = self._reject_invalid(staged, name)
            if rejected is not None:
                return rejected
            self._snapshot(name, dest)
            os.replace(staged, dest)
        finally:
            staged.unlink(missing_ok=True)

        logger.debug("Extracted %s from archive into %s", entry.filename, dest)
        return Result.ok(
            f"Installed {name}", outcome=Outcome.UPDATED,
            path=str(dest), entry=entry.filename, size=entry.file_size,
        )

    def _install_binary(self, tmp: Path, dest: Path, name: str) -> Result:
        if self._file_matches(tmp, dest):
            tmp.unlink(missing_ok=True)
            return self._unchanged(name, dest)

        rejected = self._reject_invalid(tmp, name)
        if rejected is not None:
            tmp.unlink(missing_ok=True)
            return rejected

        self._replace(tmp, dest, name, move=True)
        return Result.ok(
            f"Installed {name}", outcome=Outcome.UPDATED,
            path=str(dest), size=dest.stat().st_size,
        )

    def install_file(self, source: Path, name: str, *, custom_path: Optional[str] = None) -> Result:
        """Install an already-built JAR (used by the build fallback)."""
        dest = self.decide_install_path(name, custom_path)
        try:
            if self._file_matches(source, dest):
                return self._unchanged(name, dest)
            rejected = self._reject_invalid(source, name, outcome=Outcome.BUILD_FAILED)
            if rejected is not None:
                return rejected
            self._replace(source, dest, name, move=False)
        except (OSError, shutil.Error) as exc:
            logger.error("Failed to install built jar for %s: %s", name, exc)
            return Result.fail(
                f"Install failed for {name}", error=str(exc),
                outcome=Outcome.BUILD_FAILED,
            )
        self._after_install(name, dest)
        return Result.ok(
            f"Installed {name}", outcome=Outcome.UPDATED,
            path=str(dest), size=dest.stat().st_size,
        )

    # ── Helpers ───────────────────────

    @staticmethod
    def staging_path(dest: Path) -> Path:
        """Sibling of ``dest`` that new bytes are written to before the swap."""
        return dest.with_name(dest.name + ".temp")

    def _replace(self, source: Path, dest: Path, name: str, *, move: bool) -> None:
        """
        Put ``source`` in place of ``dest``.

        The bytes land next to ``dest`` first so the final step is a rename on
        one filesystem; the old JAR is only snapshotted and replaced once the
        new one is complete.
        """
        staged = self.staging_path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            if move:
                shutil.move(str(source), str(staged))
            else:
                shutil.copy2(source, staged)
            self._snapshot(name, dest)
            os.replace(staged, dest)
        finally:
            staged.unlink(missing_ok=True)

    def _reject_invalid(
        self, candidate: Path, name: str, *, outcome: str = Outcome.DOWNLOAD_FAILED,
    ) -> Optional[Result]:
        report = validate_jar(candidate)
        if report.is_valid:
            return None
        logger.warning("Downloaded file for %s is not a valid JAR: %s", name, report.summary())
        return Result.fail(
            f"Downloaded file for {name} is not a valid JAR",
            error=report.summary(), outcome=outcome,
        )

    def _unchanged(self, name: str, dest: Path) -> Result:
        logger.debug("%s is already up to date", name)
        return Result.ok(f"{name} is already up to date", outcome=Outcome.UNCHANGED, path=str(dest))

    def _file_matches(self, candidate: Path, dest: Path) -> bool:
        if not self.ignore_duplicates or not dest.is_file():
            return False
        if candidate.stat().st_size != dest.stat().st_size:
            return False
        return _md5_file(candidate) == _md5_file(dest)

    def _entry_matches(self, zf: zipfile.ZipFile, entry: zipfile.ZipInfo, dest: Path) -> bool:
        if not self.ignore_duplicates or not dest.is_file():
            return False
        if entry.file_size != dest.stat().st_size:
            return False
        with zf.open(entry) as fh:
            return _md5_stream(fh) == _md5_file(dest)

    def _snapshot(self, name: str, dest: Path) -> None:
        if self.rollback is not None:
            self.rollback.prepare_backup(name, dest)

    def _after_install(self, name: str, dest: Path) -> None:
        report = validate_jar(dest)
        if report.issues:
            logger.warning("Installed %s with warnings: %s", dest.name, report.summary())

        if self.rollback is None:
            return
        self.rollback.mark_installed(name, dest)
        meta = extract_plugin_meta(dest)
        if meta is not None and meta.name != "Unknown":
            self.rollback.register_alias(meta.name, name)

    # ================================================================
    #  STAGED UPDATES
    # ================================================================

    def move_staged_updates(self, platform: str) -> int:
        """
        Move JARs from the update folder into the plugins directory.

        Only proxies need this; Bukkit-style servers apply update/ on boot.
        Returns the number of JARs moved.
        """
        if platform.lower() not in MANUAL_UPDATE_PLATFORMS or not self.update_dir.is_dir():
            return 0

        moved = 0
        for jar in sorted(self.update_dir.glob("*.jar")):
            target = self.plugins_dir / jar.name
            try:
                os.replace(jar, target)
                moved += 1
                logger.info("Updated %s from update folder.", jar.name)
            except OSError as exc:
                logger.warning("Failed to move staged update %s -> %s: %s", jar, target, exc)
        return moved
