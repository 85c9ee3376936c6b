"""
github_build.py
===============
Builds a plugin from GitHub sources when no prebuilt JAR is published.

Order of attempts:
  1. Resolve the repository's default branch (falls back to ``master``)
  2. Latest release asset, one more time
  3. codeload snapshot → unpack → build with, in order:
       gradlew  build -x test
       mvnw     -q -DskipTests package
       gradle   build -x test          (system, if build.gradle[.kts] exists)
       mvn      -q -DskipTests package (system, if pom.xml exists)
     then pick the largest JAR that is not sources/javadoc/tests
  4. JitPack remote build, polling its status API

Build output is streamed to the log line by line with a ``[BUILD]`` prefix.
The temporary working directory is always removed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import re
import shutil
import subprocess
import tempfile
import threading
import zipfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Tuple

import aiohttp
import psutil

from api_models import GitHubRelease, GitHubRepoInfo, JitPackStatus, ResolutionError
from http_client import HttpStatusError, build_headers, download_file, fetch_json

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
CODELOAD = "https://codeload.github.com"
JITPACK = "https://jitpack.io"

MIN_JAR_SIZE = 10 * 1024
BUILD_TIMEOUT = 20 * 60
BUILT_JAR_EXCLUDES = ("sources", "javadoc", "tests")
WRAPPER_JARS = frozenset({"gradle-wrapper.jar", "maven-wrapper.jar"})

GRADLE_ARGS = ["build", "-x", "test"]
MAVEN_ARGS = ["-q", "-DskipTests", "package"]

_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, HttpStatusError)


# ──────────────────────────────────────────────
#  Repository Reference
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class Repo:
    """GitHub repository coordinates."""

    owner: str
    name: str
    branch: str = "master"

    @classmethod
    def parse(cls, url: str) -> "Repo":
        path = re.split(r"[?#\[]", url, maxsplit=1)[0]
        path = re.sub(r"^https?://", "", path)
        parts = [p for p in path.split("/") if p]
        owner = parts[1] if len(parts) > 1 else ""
        name = parts[2] if len(parts) > 2 else ""
        if name.endswith(".git"):
            name = name[:-4]
        return cls(owner=owner, name=name)

    def with_branch(self, branch: str) -> "Repo":
        return replace(self, branch=branch)

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def snapshot_url(self) -> str:
        return f"{CODELOAD}/{self.owner}/{self.name}/zip/refs/heads/{self.branch}"

    def jitpack_versions(self) -> List[str]:
        """The resolved branch, then the other of master/main."""
        other = "main" if self.branch == "master" else "master"
        return [f"{self.branch}-SNAPSHOT", f"{other}-SNAPSHOT"]


@dataclass(frozen=True)
class BuildTool:
    """One way of building an unpacked project."""

    label: str
    command: Tuple[str, ...]


# ──────────────────────────────────────────────
#  JitPack
# ──────────────────────────────────────────────

class JitPackClient:
    """Finds (and if needed triggers) a JitPack build of a GitHub repo."""

    def __init__(self, *, poll_attempts: int = 10, poll_delay: float = 3.0) -> None:
        self.poll_attempts = poll_attempts
        self.poll_delay = poll_delay

    @staticmethod
    def status_url(repo: Repo, version: str) -> str:
        return f"{JITPACK}/api/builds/com.github/{repo.owner}/{repo.name}/{version}"

    @staticmethod
    def conventional_path(repo: Repo, version: str) -> str:
        return f"/com/github/{repo.owner}/{repo.name}/{version}/{repo.name}-{version}.jar"

    async def _status(self, session: aiohttp.ClientSession, url: str) -> tuple[int, Optional[JitPackStatus]]:
        async with session.get(url, headers=build_headers(url)) as resp:
            if resp.status != 200:
                return resp.status, None
            return 200, JitPackStatus.from_json(await resp.json(content_type=None))

    async def _trigger(self, session: aiohttp.ClientSession, repo: Repo, version: str) -> bool:
        url = JITPACK + self.conventional_path(repo, version)
        logger.info("Triggering JitPack build: %s", url)
        try:
            async with session.get(url, headers=build_headers(url)) as resp:
                await resp.read()
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("JitPack trigger failed for %s: %s", url, exc)
            return False

    async def jar_url(self, repo: Repo, version: str, session: aiohttp.ClientSession) -> Optional[str]:
        """
        JAR URL of a finished JitPack build of ``version``.

        A 404 from the status API triggers a build and polls until it turns
        200 or the attempts run out.
        """
        api = self.status_url(repo, version)
        try:
            code, status = await self._status(session, api)
            if code == 404:
                if not await self._trigger(session, repo, version):
                    return None
                for _ in range(self.poll_attempts):
                    await asyncio.sleep(self.poll_delay)
                    code, status = await self._status(session, api)
                    if code == 200:
                        break
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.debug("JitPack status check failed for %s: %s", api, exc)
            return None

        if code != 200:
            logger.debug("JitPack status for %s %s: HTTP %d", repo.slug, version, code)
            return None

        path = (status.jar_path if status else None) or self.conventional_path(repo, version)
        if not path.startswith("/"):
            path = "/" + path
        return JITPACK + path


# ──────────────────────────────────────────────
#  Builder
# ──────────────────────────────────────────────

class GitHubBuilder:
    """
    Produces a JAR for a GitHub repository without a usable release asset.

    Args:
        token:          GitHub token for API calls
        build_timeout:  Seconds before a build process is killed
        min_jar_size:   Downloads at or below this size are rejected
        jitpack:        JitPack client (polling settings)
    """

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        build_timeout: float = BUILD_TIMEOUT,
        min_jar_size: int = MIN_JAR_SIZE,
        jitpack: Optional[JitPackClient] = None,
    ) -> None:
        self.token = token
        self.build_timeout = build_timeout
        self.min_jar_size = min_jar_size
        self.jitpack = jitpack or JitPackClient()
        self._windows = platform.system() == "Windows"

    async def build(self, repo_url: str, out_jar: Path, session: aiohttp.ClientSession) -> bool:
        """Place a JAR for ``repo_url`` at ``out_jar``. Returns True on success."""
        lowered = repo_url.lower()
        if not lowered.startswith(("https://github.com/", "http://github.com/")):
            logger.warning("Invalid GitHub repository URL: %s", repo_url)
            return False

        repo = Repo.parse(repo_url)
        if not repo.owner or not repo.name:
            logger.warning("Could not parse owner/repo from %s", repo_url)
            return False

        branch = await self.fetch_default_branch(repo, session)
        if branch:
            repo = repo.with_branch(branch)

        if await self.try_latest_release(repo, out_jar, session):
            return True

        work = Path(tempfile.mkdtemp(prefix="aup-github-"))
        try:
            if await self._build_from_snapshot(repo, work, out_jar, session):
                return True
            if await self.try_jitpack(repo, out_jar, session):
                return True
            logger.warning("No jar produced for %s", repo_url)
            return False
        finally:
            shutil.rmtree(work, ignore_errors=True)

    # ================================================================
    #  GITHUB API
    # ================================================================

    async def fetch_default_branch(self, repo: Repo, session: aiohttp.ClientSession) -> Optional[str]:
        url = f"{GITHUB_API}/repos/{repo.owner}/{repo.name}"
        try:
            info = GitHubRepoInfo.from_json(await fetch_json(session, url, token=self.token))
        except (*_NETWORK_ERRORS, ResolutionError, ValueError) as exc:
            logger.debug("Default branch lookup failed for %s: %s", repo.slug, exc)
            return None
        if not info.default_branch:
            return None
        logger.debug("Default branch for %s = %s", repo.slug, info.default_branch)
        return info.default_branch

    async def try_latest_release(self, repo: Repo, out_jar: Path, session: aiohttp.ClientSession) -> bool:
        url = f"{GITHUB_API}/repos/{repo.owner}/{repo.name}/releases/latest"
        try:
            release = GitHubRelease.from_json(await fetch_json(session, url, token=self.token))
        except (*_NETWORK_ERRORS, ResolutionError, ValueError) as exc:
            logger.debug("No latest release for %s: %s", repo.slug, exc)
            return False

        asset = next((a for a in release.assets if a.is_jar), None)
        if asset is None:
            logger.debug("No .jar asset in latest release for %s", repo.slug)
            return False

        logger.info("Downloading GitHub release asset: %s", asset.browser_download_url)
        return await self._download_checked(asset.browser_download_url, out_jar, session)

    async def _download_checked(self, url: str, out_jar: Path, session: aiohttp.ClientSession) -> bool:
        """Download to ``out_jar`` and keep it only if it passes the size check."""
        try:
            size = await download_file(session, url, out_jar)
        except (*_NETWORK_ERRORS, OSError) as exc:
            logger.debug("Download of %s failed: %s", url, exc)
            out_jar.unlink(missing_ok=True)
            return False
        if size <= self.min_jar_size:
            logger.debug("Rejected %s: only %d bytes", url, size)
            out_jar.unlink(missing_ok=True)
            return False
        return True

    # ================================================================
    #  SOURCE BUILD
    # ================================================================

    async def _build_from_snapshot(
        self, repo: Repo, work: Path, out_jar: Path, session: aiohttp.ClientSession,
    ) -> bool:
        archive = work / "src.zip"
        try:
            await download_file(session, repo.snapshot_url, archive)
        except (*_NETWORK_ERRORS, OSError) as exc:
            logger.warning("Could not download sources for %s@%s: %s", repo.slug, repo.branch, exc)
            return False

        try:
            project = await asyncio.to_thread(self.unpack, archive, work / "repo", repo)
        except (OSError, zipfile.BadZipFile) as exc:
            logger.warning("Could not unpack sources for %s: %s", repo.slug, exc)
            return False

        return await asyncio.to_thread(self.build_project, project, out_jar)

    @staticmethod
    def unpack(archive: Path, dest: Path, repo: Repo) -> Path:
        """Extract a codeload ZIP and return the project root inside it."""
        dest.mkdir(parents=True, exist_ok=True)
        root = dest.resolve()
        with zipfile.ZipFile(archive, "r") as zf:
            for member in zf.namelist():
                target = (root / member).resolve()
                if root != target and root not in target.parents:
                    raise OSError(f"Unsafe path in archive: {member}")
            zf.extractall(root)

        expected = root / f"{repo.name}-{repo.branch}"
        if expected.is_dir():
            return expected
        children = [c for c in root.iterdir() if c.is_dir()]
        return children[0] if len(children) == 1 else root

    def build_candidates(self, project: Path) -> List[BuildTool]:
        """Build tools available for ``project``, in the order they are tried."""
        gradlew = project / ("gradlew.bat" if self._windows else "gradlew")
        mvnw = project / ("mvnw.cmd" if self._windows else "mvnw")
        tools: List[BuildTool] = []

        if gradlew.is_file():
            tools.append(BuildTool("Gradle wrapper", (str(gradlew), *GRADLE_ARGS)))
        if mvnw.is_file():
            tools.append(BuildTool("Maven wrapper", (str(mvnw), *MAVEN_ARGS)))
        if (project / "build.gradle").is_file() or (project / "build.gradle.kts").is_file():
            gradle = shutil.which("gradle")
            if gradle:
                tools.append(BuildTool("system Gradle", (gradle, *GRADLE_ARGS)))
        if (project / "pom.xml").is_file():
            mvn = shutil.which("mvn")
            if mvn:
                tools.append(BuildTool("system Maven", (mvn, *MAVEN_ARGS)))
        return tools

    def build_project(self, project: Path, out_jar: Path) -> bool:
        """Try each build tool until one exits cleanly and leaves a JAR behind."""
        tools = self.build_candidates(project)
        if not tools:
            logger.warning("No Gradle or Maven build found in %s", project.name)
            return False

        for tool in tools:
            logger.info("Building %s with %s", project.name, tool.label)
            if not self.run_build(project, tool):
                continue
            built = self.select_built_jar(project)
            if built is None:
                logger.warning("%s finished but produced no jar", tool.label)
                continue
            logger.info("Built jar selected: %s", built)
            try:
                out_jar.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(built, out_jar)
            except (OSError, shutil.Error) as exc:
                logger.warning("Copy of built jar failed: %s", exc)
                return False
            return True
        return False

    def run_build(self, project: Path, tool: BuildTool) -> bool:
        """Run one build command, streaming its output, bounded by build_timeout."""
        command = list(tool.command)
        executable = Path(command[0])
        if self._windows:
            command = ["cmd", "/c", *command]
        elif executable.is_file() and project in executable.parents:
            try:
                executable.chmod(executable.stat().st_mode | 0o111)
            except OSError:
                logger.debug("Could not mark %s executable", executable)

        try:
            proc = subprocess.Popen(
                command,
                cwd=str(project),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("Build failed to start (%s): %s", tool.label, exc)
            return False

        reader = self._start_output_reader(proc)
        try:
            code = proc.wait(timeout=self.build_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Build timed out after %ds, killing %s", self.build_timeout, tool.label)
            self._kill_tree(proc)
            return False
        finally:
            reader.join(timeout=5)

        if code != 0:
            logger.warning("Build exited with code %d (%s)", code, tool.label)
            return False
        return True

    @staticmethod
    def _start_output_reader(proc: subprocess.Popen) -> threading.Thread:
        def _reader():
            try:
                for raw_line in iter(proc.stdout.readline, b""):
                    line = raw_line.decode("utf-8", errors="replace").rstrip()
                    if line.strip():
                        logger.info("[BUILD] %s", line)
            except (OSError, ValueError) as exc:
                logger.debug("Build output reader ended: %s", exc)

        thread = threading.Thread(target=_reader, daemon=True, name="build-output-reader")
        thread.start()
        return thread

    @staticmethod
    def _kill_tree(proc: subprocess.Popen) -> None:
        """Kill the build process and every child it spawned (Gradle daemons included)."""
        try:
            parent = psutil.Process(proc.pid)
            children = parent.children(recursive=True)
            for child in children:
                child.kill()
            parent.kill()
            psutil.wait_procs([parent] + children, timeout=5)
        except (psutil.NoSuchProcess, psutil.AccessDenied, ProcessLookupError):
            pass
        if proc.poll() is None:
            proc.kill()

    @staticmethod
    def select_built_jar(project: Path) -> Optional[Path]:
        """Largest ``.jar`` under ``project`` that is not a sources/javadoc/tests JAR."""
        best: Optional[Path] = None
        best_size = -1
        for root, _dirs, files in os.walk(project):
            for file_name in files:
                lowered = file_name.lower()
                if not lowered.endswith(".jar") or lowered in WRAPPER_JARS:
                    continue
                if any(token in lowered for token in BUILT_JAR_EXCLUDES):
                    continue
                path = Path(root) / file_name
                size = path.stat().st_size
                if size > best_size:
                    best, best_size = path, size
        return best

    # ================================================================
    #  JITPACK
    # ================================================================

    async def try_jitpack(self, repo: Repo, out_jar: Path, session: aiohttp.ClientSession) -> bool:
        for version in repo.jitpack_versions():
            url = await self.jitpack.jar_url(repo, version, session)
            if url is None:
                continue
            logger.info("Trying JitPack jar: %s", url)
            if await self._download_checked(url, out_jar, session):
                return True
        logger.info("JitPack fallback failed for %s", repo.slug)
        return False
